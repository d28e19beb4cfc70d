"""Idempotency utilities for safely handling duplicate order requests.

This module stores and retrieves ``Idempotency-Key`` records to
de-duplicate client retries of ``POST /orders``. It supports claiming a
key, detecting conflicts when the same key is used with a different
payload, and finalizing a stored response so later retries can
short-circuit without running another saga.

Store layout:
    ``idempotency:<key>`` -> {"requestHash", "status", "body", "orderId"}

``status`` is 0 while the first request is still running.
"""

import hashlib
import json
from dataclasses import dataclass
from typing import Any, Optional

from ..errors import IdempotencyConflictError, IdempotencyInProgressError
from ..store import KeyValueStore

IDEMPOTENCY_PREFIX = "idempotency:"
IN_PROGRESS = 0


def _hash(payload: Any) -> str:
    """Stable SHA-256 of a JSON-serializable payload (sorted keys, compact separators)."""
    body = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(body.encode("utf-8")).hexdigest()


@dataclass
class IdempotencyRecord:
    key: str
    request_hash: str
    status: int = IN_PROGRESS
    body: Optional[dict] = None
    order_id: Optional[str] = None

    @property
    def finished(self) -> bool:
        return self.status != IN_PROGRESS

    def to_dict(self) -> dict:
        return {"requestHash": self.request_hash, "status": self.status, "body": self.body, "orderId": self.order_id}


class IdempotencyStore:
    """Claim/finalize records for client supplied idempotency keys."""

    def __init__(self, store: KeyValueStore):
        self.store = store

    async def get_or_create(self, key: str, payload: Any) -> tuple[bool, IdempotencyRecord]:
        """Get-or-create the record for ``key``.

        Behavior:
            - New key: store an in-progress record and return ``(False, rec)``;
              the caller runs the request and calls ``finalize``.
            - Known key, same payload, finished: return ``(True, rec)`` for replay.
            - Known key, different payload: raise ``IdempotencyConflictError``.
            - Known key, same payload still running: raise
              ``IdempotencyInProgressError``.

        Args:
            key: Client provided idempotency key.
            payload: Request body used to compute the request hash.

        Returns:
            tuple[bool, IdempotencyRecord]: ``(existing, rec)``.
        """
        h = _hash(payload)
        async with self.store.lock(f"{IDEMPOTENCY_PREFIX}{key}"):
            raw = await self.store.get(f"{IDEMPOTENCY_PREFIX}{key}")
            if raw is None:
                rec = IdempotencyRecord(key, h)
                await self.store.put(f"{IDEMPOTENCY_PREFIX}{key}", rec.to_dict())
                return False, rec
        rec = IdempotencyRecord(key, raw["requestHash"], raw["status"], raw.get("body"), raw.get("orderId"))
        if rec.request_hash != h:
            raise IdempotencyConflictError("Idempotency key was already used with a different payload")
        if not rec.finished:
            raise IdempotencyInProgressError("Retry once the first request has finished")
        return True, rec

    async def finalize(self, rec: IdempotencyRecord, status_code: int, body: dict, order_id: Optional[str] = None) -> None:
        """Persist the final response so retries replay it."""
        rec.status = status_code
        rec.body = body
        if order_id is not None:
            rec.order_id = order_id
        await self.store.put(f"{IDEMPOTENCY_PREFIX}{rec.key}", rec.to_dict())
