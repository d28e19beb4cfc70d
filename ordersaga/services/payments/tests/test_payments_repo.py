"""Unit tests for the payment authorizer: first-writer-wins ledger,
scripted faults, in-flight joining and refunds."""

import asyncio

import pytest

from ordersaga.errors import IdempotencyConflictError, PaymentServiceUnavailableError
from ordersaga.services.payments.repo import (
    FaultDecision,
    PaymentAuthorizer,
    PaymentStatus,
    RandomFaults,
    ScriptedFaults,
)


@pytest.mark.asyncio
async def test_authorize_is_idempotent(authorizer):
    first = await authorizer.authorize("o-1", 1299.0, "credit_card", "u-1")
    second = await authorizer.authorize("o-1", 1299.0, "credit_card", "u-1")
    assert first.status is PaymentStatus.AUTHORIZED
    assert (second.payment_id, second.status) == (first.payment_id, first.status)


@pytest.mark.asyncio
async def test_decline_is_recorded_and_replayed(store):
    faults = ScriptedFaults([FaultDecision(decline=True)])
    authorizer = PaymentAuthorizer(store, faults)
    first = await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    second = await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    assert first.status is PaymentStatus.DECLINED
    assert second.payment_id == first.payment_id
    assert faults.calls == ["o-1"]


@pytest.mark.asyncio
async def test_unavailable_records_nothing(store):
    faults = ScriptedFaults([FaultDecision(unavailable=True)])
    authorizer = PaymentAuthorizer(store, faults)
    with pytest.raises(PaymentServiceUnavailableError):
        await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    assert await authorizer.for_order("o-1") is None

    payment = await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    assert payment.status is PaymentStatus.AUTHORIZED
    assert faults.calls == ["o-1", "o-1"]


@pytest.mark.asyncio
async def test_different_terms_conflict(authorizer):
    await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    with pytest.raises(IdempotencyConflictError):
        await authorizer.authorize("o-1", 11.0, "credit_card", "u-1")
    with pytest.raises(IdempotencyConflictError):
        await authorizer.authorize("o-1", 10.0, "paypal", "u-1")


@pytest.mark.asyncio
async def test_concurrent_attempts_share_one_authorization(store):
    faults = ScriptedFaults(default=FaultDecision(latency=0.05))
    authorizer = PaymentAuthorizer(store, faults)
    a, b = await asyncio.gather(
        authorizer.authorize("o-1", 10.0, "credit_card", "u-1"),
        authorizer.authorize("o-1", 10.0, "credit_card", "u-1"),
    )
    assert a.payment_id == b.payment_id
    assert faults.calls == ["o-1"]


@pytest.mark.asyncio
async def test_cancelled_caller_does_not_abort_authorization(store):
    faults = ScriptedFaults(default=FaultDecision(latency=0.05))
    authorizer = PaymentAuthorizer(store, faults)
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(authorizer.authorize("o-1", 10.0, "credit_card", "u-1"), timeout=0.01)

    # the retry joins the attempt still in flight
    payment = await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    assert payment.status is PaymentStatus.AUTHORIZED
    assert faults.calls == ["o-1"]


@pytest.mark.asyncio
async def test_refund_transitions(authorizer, store):
    payment = await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    refunded = await authorizer.refund("o-1")
    assert refunded.status is PaymentStatus.REFUNDED and refunded.refunded_at
    again = await authorizer.refund("o-1")
    assert again.status is PaymentStatus.REFUNDED
    assert (await authorizer.get(payment.payment_id)).status is PaymentStatus.REFUNDED

    declined = PaymentAuthorizer(store, ScriptedFaults([FaultDecision(decline=True)]))
    await declined.authorize("o-2", 10.0, "credit_card", "u-1")
    assert (await declined.refund("o-2")).status is PaymentStatus.DECLINED
    assert await declined.refund("o-missing") is None


@pytest.mark.asyncio
async def test_payment_metrics(authorizer, sink):
    await authorizer.authorize("o-1", 120.0, "credit_card", "u-1")
    assert sink.samples("payments_total") == [
        (1.0, {"status": "authorized", "method": "credit_card", "amount_range": "medium"})
    ]


def test_random_faults_validates_arguments():
    with pytest.raises(ValueError):
        RandomFaults(failure_rate=1.5)
    with pytest.raises(ValueError):
        RandomFaults(min_latency=3, max_latency=1)


def test_random_faults_is_seedable():
    a = RandomFaults(0.5, 0.0, 1.0, seed=7)
    b = RandomFaults(0.5, 0.0, 1.0, seed=7)
    assert [a.decide("o", 1, "m") for _ in range(5)] == [b.decide("o", 1, "m") for _ in range(5)]


@pytest.mark.asyncio
async def test_refund_waits_for_authorization_in_flight(store):
    authorizer = PaymentAuthorizer(store, ScriptedFaults(default=FaultDecision(latency=0.05)))
    with pytest.raises(asyncio.TimeoutError):
        await asyncio.wait_for(authorizer.authorize("o-1", 10.0, "credit_card", "u-1"), timeout=0.01)

    refunded = await authorizer.refund("o-1")
    assert refunded.status is PaymentStatus.REFUNDED
    assert (await authorizer.for_order("o-1")).status is PaymentStatus.REFUNDED


@pytest.mark.asyncio
async def test_refund_without_payment_voids_the_order(authorizer, faults, sink):
    assert await authorizer.refund("o-1") is None
    assert await authorizer.refund("o-1") is None
    assert sink.names().count("Payment voided before authorization") == 1

    with pytest.raises(IdempotencyConflictError):
        await authorizer.authorize("o-1", 10.0, "credit_card", "u-1")
    assert await authorizer.for_order("o-1") is None
    assert faults.calls == []
