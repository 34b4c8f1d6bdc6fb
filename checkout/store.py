import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError

from checkout.models import PaymentRequest, PaymentState, PaymentStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CallbackOutcome:
    """The fields one gateway callback contributes to a status record."""

    correlation_key: str
    state: PaymentState
    result_code: Optional[str]
    result_desc: Optional[str]
    merchant_request_id: Optional[str] = None
    amount: Optional[float] = None
    receipt_number: Optional[str] = None
    payer_phone: Optional[str] = None
    transaction_timestamp: Optional[datetime] = None
    raw_callback: Optional[str] = None


class CorrelationStore:
    """Payment requests and statuses keyed by the gateway's CheckoutRequestID.

    All writes for a key are single-row primary-key operations, so the
    database serialises them per key; no multi-key transaction is needed.
    """

    def __init__(self, session_factory):
        self._sessions = session_factory

    async def record_request(self, request: PaymentRequest) -> PaymentRequest:
        async with self._sessions() as session:
            session.add(request)
            await session.commit()
        logger.info("Recorded payment request %s", request.correlation_key)
        return request

    async def get_request(self, correlation_key: str) -> Optional[PaymentRequest]:
        async with self._sessions() as session:
            return await session.get(PaymentRequest, correlation_key)

    async def get_status(self, correlation_key: str) -> Optional[PaymentStatus]:
        async with self._sessions() as session:
            return await session.get(PaymentStatus, correlation_key)

    async def upsert_status(self, outcome: CallbackOutcome) -> PaymentStatus:
        """Insert or overwrite the status record for ``outcome.correlation_key``.

        ``PAID`` is sticky: a later non-success outcome for a paid key only
        refreshes the audit fields. ``fulfilled`` is never touched here; see
        :meth:`claim_fulfillment`.
        """
        try:
            return await self._write_status(outcome)
        except IntegrityError:
            # A concurrent delivery inserted the row first; apply ours as an update.
            logger.info("Concurrent insert for %s, retrying as update", outcome.correlation_key)
            return await self._write_status(outcome)

    async def _write_status(self, outcome: CallbackOutcome) -> PaymentStatus:
        async with self._sessions() as session:
            status = await session.get(PaymentStatus, outcome.correlation_key)
            if status is None:
                status = PaymentStatus(correlation_key=outcome.correlation_key, fulfilled=False)
                session.add(status)
            elif status.state == PaymentState.PAID and outcome.state != PaymentState.PAID:
                logger.warning(
                    "Ignoring %s outcome for already paid %s (result code %s)",
                    outcome.state.value, outcome.correlation_key, outcome.result_code,
                )
                status.raw_callback = outcome.raw_callback
                status.updated_at = utcnow()
                await session.commit()
                return status

            status.state = outcome.state
            status.result_code = outcome.result_code
            status.result_desc = outcome.result_desc
            status.raw_callback = outcome.raw_callback
            status.updated_at = utcnow()
            if outcome.merchant_request_id:
                status.merchant_request_id = outcome.merchant_request_id
            if outcome.state == PaymentState.PAID:
                status.amount = outcome.amount
                status.receipt_number = outcome.receipt_number
                status.payer_phone = outcome.payer_phone
                status.transaction_timestamp = outcome.transaction_timestamp
            await session.commit()
            return status

    async def claim_fulfillment(self, correlation_key: str) -> bool:
        """Atomically flip ``fulfilled`` from false to true for a paid key.

        Returns True for exactly one caller per key. Every other caller,
        including a duplicate callback racing the first one, gets False.
        """
        async with self._sessions() as session:
            result = await session.execute(
                update(PaymentStatus)
                .where(
                    PaymentStatus.correlation_key == correlation_key,
                    PaymentStatus.state == PaymentState.PAID,
                    PaymentStatus.fulfilled.is_(False),
                )
                .values(fulfilled=True, updated_at=utcnow())
            )
            await session.commit()
        claimed = result.rowcount == 1
        logger.info("Fulfillment claim for %s: %s", correlation_key, "won" if claimed else "already taken")
        return claimed
