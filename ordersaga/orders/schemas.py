"""Pydantic schemas for orders.

This module exposes the request schema used by the orders API. Wire names
are camelCase; Python attributes are snake_case.
"""

import re
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

PRODUCT_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")


class OrderItemIn(BaseModel):
    """Input schema for a single order line item.

    Attributes:
        product_id: Product identifier (``productId`` on the wire).
        quantity: Positive integer indicating units requested.
        unit_price: Non-negative unit price (``unitPrice``).
    """

    model_config = ConfigDict(populate_by_name=True)

    product_id: str = Field(alias="productId")
    quantity: int = Field(gt=0)
    unit_price: float = Field(default=0.0, ge=0, alias="unitPrice")

    @field_validator("product_id")
    @classmethod
    def validate_product_id(cls, v: str) -> str:
        if not PRODUCT_ID_RE.match(v):
            raise ValueError("Invalid productId format")
        return v


class CreateOrderDTO(BaseModel):
    """Schema for creating an order.

    Attributes:
        items: Non-empty list of ``OrderItemIn``.
        shipping_address: Address as sent by the client; stored as is.
        payment_method: Payment method label (e.g. ``credit_card``).
    """

    model_config = ConfigDict(populate_by_name=True)

    items: list[OrderItemIn] = Field(min_length=1)
    shipping_address: Any = Field(default=None, alias="shippingAddress")
    payment_method: str = Field(alias="paymentMethod", min_length=1, max_length=64)
