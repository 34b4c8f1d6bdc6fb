import pytest

from checkout.models import PaymentState
from checkout.store import CallbackOutcome


def paid(key="ws_CO_X1", **overrides):
    fields = dict(
        correlation_key=key,
        state=PaymentState.PAID,
        result_code="0",
        result_desc="The service request is processed successfully.",
        amount=500.0,
        receipt_number="R1",
        payer_phone="254711000111",
    )
    fields.update(overrides)
    return CallbackOutcome(**fields)


def failed(key="ws_CO_X1"):
    return CallbackOutcome(
        correlation_key=key,
        state=PaymentState.FAILED,
        result_code="1032",
        result_desc="Request cancelled by user",
    )


@pytest.mark.asyncio
async def test_missing_status_reads_as_none(store):
    assert await store.get_status("never-seen") is None


@pytest.mark.asyncio
async def test_upsert_inserts_then_overwrites(store):
    await store.upsert_status(paid())
    await store.upsert_status(paid(receipt_number="R1", raw_callback="{}"))

    status = await store.get_status("ws_CO_X1")
    assert status.state == PaymentState.PAID
    assert status.receipt_number == "R1"
    assert status.raw_callback == "{}"
    assert status.fulfilled is False


@pytest.mark.asyncio
async def test_claim_fulfillment_succeeds_exactly_once(store):
    await store.upsert_status(paid())

    assert await store.claim_fulfillment("ws_CO_X1") is True
    assert await store.claim_fulfillment("ws_CO_X1") is False

    await store.upsert_status(paid())
    assert (await store.get_status("ws_CO_X1")).fulfilled is True
    assert await store.claim_fulfillment("ws_CO_X1") is False


@pytest.mark.asyncio
async def test_claim_fulfillment_refused_for_failed_payment(store):
    await store.upsert_status(failed())
    assert await store.claim_fulfillment("ws_CO_X1") is False


@pytest.mark.asyncio
async def test_paid_is_never_downgraded(store):
    await store.upsert_status(paid())
    await store.claim_fulfillment("ws_CO_X1")

    await store.upsert_status(failed())

    status = await store.get_status("ws_CO_X1")
    assert status.state == PaymentState.PAID
    assert status.result_code == "0"
    assert status.fulfilled is True


@pytest.mark.asyncio
async def test_failed_payment_can_become_paid(store):
    await store.upsert_status(failed())
    await store.upsert_status(paid())

    status = await store.get_status("ws_CO_X1")
    assert status.state == PaymentState.PAID
    assert await store.claim_fulfillment("ws_CO_X1") is True
