from sqlalchemy.orm import Session

from spin_agent.logging_config import get_logger
from spin_agent.models import Message
from spin_agent.services.errors import StoreUnavailableError
from spin_agent.services.state_store import StateStore, dedupe_key

logger = get_logger("dedup_service")


def is_known_message(db: Session, provider_message_id: str) -> bool:
    return (
        db.query(Message.id).filter(Message.provider_message_id == provider_message_id).first()
        is not None
    )


class IdempotencyGuard:
    """Short-circuits provider redeliveries of the same inbound message.

    The state store marker (SET NX) decides concurrent races; the durable
    ``messages`` table covers markers that expired or were lost.
    """

    def __init__(self, store: StateStore, ttl_seconds: int = 600):
        self.store = store
        self.ttl_seconds = ttl_seconds

    async def is_duplicate(self, db: Session, provider_message_id: str) -> bool:
        try:
            created = await self.store.set_if_absent(
                dedupe_key(provider_message_id), "1", ttl_ms=self.ttl_seconds * 1000
            )
        except StoreUnavailableError:
            logger.warning(
                "Dedupe marker unavailable, using durable check only",
                extra={"context": {"provider_message_id": provider_message_id}},
            )
            return is_known_message(db, provider_message_id)

        if not created:
            logger.info(
                "Duplicate message skipped",
                extra={"context": {"provider_message_id": provider_message_id, "source": "marker"}},
            )
            return True

        if is_known_message(db, provider_message_id):
            logger.info(
                "Duplicate message skipped",
                extra={"context": {"provider_message_id": provider_message_id, "source": "durable"}},
            )
            return True
        return False

    async def forget(self, provider_message_id: str) -> None:
        """Drop the marker so a retry of an aborted ingestion is not treated as a duplicate."""
        try:
            await self.store.delete(dedupe_key(provider_message_id))
        except StoreUnavailableError as exc:
            logger.error(
                "Failed to drop dedupe marker",
                extra={"context": {"provider_message_id": provider_message_id, "error": str(exc)}},
            )
