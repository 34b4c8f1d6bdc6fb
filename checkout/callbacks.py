import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, Optional, Union

from pydantic import ValidationError

from checkout.errors import MalformedCallback
from checkout.models import PaymentState
from checkout.schemas import CallbackEnvelope, CallbackItem
from checkout.store import CallbackOutcome, CorrelationStore

logger = logging.getLogger(__name__)

RECEIPT_FIELDS = ("MpesaReceiptNumber", "ReceiptNumber", "TransactionReceipt")


@dataclass(frozen=True)
class IngestResult:
    correlation_key: Optional[str]
    state: Optional[PaymentState]
    fulfillment_triggered: bool = False


def metadata_value(items: Iterable[CallbackItem], *names: str) -> Any:
    """Value of the first metadata item named in ``names``; None means unknown."""
    for item in items:
        if item.Name in names:
            return item.Value
    return None


def _as_float(value) -> Optional[float]:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _as_timestamp(value) -> Optional[datetime]:
    # TransactionDate arrives as a YYYYMMDDHHMMSS number, sometimes as a float.
    try:
        if isinstance(value, float):
            value = int(value)
        return datetime.strptime(str(value), "%Y%m%d%H%M%S")
    except (TypeError, ValueError, OverflowError):
        return None


def _as_text(value) -> Optional[str]:
    if value is None or isinstance(value, (dict, list)):
        return None
    return str(value)


def _is_success(result_code) -> bool:
    try:
        return int(result_code) == 0
    except (TypeError, ValueError):
        return False


def parse_callback(raw_body: Union[bytes, str, dict]) -> CallbackOutcome:
    if isinstance(raw_body, (bytes, str)):
        raw_text = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else raw_body
        try:
            data = json.loads(raw_text)
        except (ValueError, RecursionError) as e:
            raise MalformedCallback(f"Callback body is not JSON: {e}") from e
    else:
        data = raw_body
        raw_text = json.dumps(raw_body, default=str)

    try:
        envelope = CallbackEnvelope.model_validate(data)
    except ValidationError as e:
        raise MalformedCallback(f"Callback envelope missing Body.stkCallback: {e.error_count()} errors") from e

    callback = envelope.Body.stkCallback
    items = callback.CallbackMetadata.Item if callback.CallbackMetadata else []
    state = PaymentState.PAID if _is_success(callback.ResultCode) else PaymentState.FAILED

    payer_phone = metadata_value(items, "PhoneNumber")
    receipt = metadata_value(items, *RECEIPT_FIELDS)
    return CallbackOutcome(
        correlation_key=callback.CheckoutRequestID,
        merchant_request_id=callback.MerchantRequestID,
        state=state,
        result_code=str(callback.ResultCode),
        result_desc=callback.ResultDesc,
        amount=_as_float(metadata_value(items, "Amount")),
        receipt_number=_as_text(receipt),
        payer_phone=_as_text(payer_phone),
        transaction_timestamp=_as_timestamp(metadata_value(items, "TransactionDate")),
        raw_callback=raw_text,
    )


class CallbackIngestor:
    """Consumes gateway result callbacks.

    :meth:`ingest` never raises: the gateway treats any non-success reply as
    a delivery failure and redelivers, so every internal error is logged and
    swallowed here. Fulfillment is handed to ``dispatcher`` only after the
    ``fulfilled`` claim has committed.
    """

    def __init__(self, store: CorrelationStore, dispatcher):
        self.store = store
        self.dispatcher = dispatcher

    async def ingest(self, raw_body) -> IngestResult:
        try:
            outcome = parse_callback(raw_body)
        except MalformedCallback as e:
            logger.warning("Ignoring malformed callback: %s", e)
            return IngestResult(correlation_key=None, state=None)
        except Exception:
            logger.exception("Failed to parse callback body")
            return IngestResult(correlation_key=None, state=None)

        key = outcome.correlation_key
        logger.info(
            "Callback for %s: result code %s (%s)", key, outcome.result_code, outcome.result_desc
        )
        try:
            if await self.store.get_request(key) is None:
                logger.warning("Callback for unknown correlation key %s, recording anyway", key)

            status = await self.store.upsert_status(outcome)

            if status.state != PaymentState.PAID:
                await self.dispatcher.payment_failed(outcome)
                return IngestResult(correlation_key=key, state=status.state)

            if not await self.store.claim_fulfillment(key):
                logger.info("Payment %s already fulfilled, not re-triggering", key)
                return IngestResult(correlation_key=key, state=status.state)
        except Exception:
            logger.exception("Failed to process callback for %s", key)
            return IngestResult(correlation_key=key, state=None)

        try:
            await self.dispatcher.payment_confirmed(key)
        except Exception:
            # The claim is committed; losing this fulfillment beats running it twice.
            logger.exception("Fulfillment hand-off for %s failed after claim", key)
        return IngestResult(correlation_key=key, state=PaymentState.PAID, fulfillment_triggered=True)
