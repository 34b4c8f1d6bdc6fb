from checkout.models import PaymentState
from checkout.store import CorrelationStore


class StatusQueryService:
    """Answers polling clients. Never writes."""

    def __init__(self, store: CorrelationStore):
        self.store = store

    async def query(self, correlation_key: str) -> PaymentState:
        # Unknown and not-yet-recorded keys both read as pending.
        status = await self.store.get_status(correlation_key)
        if status is None:
            return PaymentState.PENDING
        return status.state
