import uuid
from typing import Optional

from spin_agent.logging_config import get_logger
from spin_agent.services.state_store import SessionKeys, StateStore

logger = get_logger("lock_service")


class ConversationLock:
    """Mutual exclusion around drain → infer → dispatch for one conversation.

    The TTL bounds how long a stuck holder can block later runs.
    """

    def __init__(self, store: StateStore, session_id: str, ttl_seconds: int = 90):
        self.store = store
        self.session_id = str(session_id)
        self.ttl_seconds = ttl_seconds
        self._key = SessionKeys(self.session_id).lock
        self._token: Optional[str] = None

    @property
    def held(self) -> bool:
        return self._token is not None

    async def acquire(self) -> bool:
        token = uuid.uuid4().hex
        acquired = await self.store.set_if_absent(self._key, token, ttl_ms=self.ttl_seconds * 1000)
        if acquired:
            self._token = token
        else:
            logger.info("Lock busy", extra={"context": {"session_id": self.session_id}})
        return acquired

    async def release(self) -> bool:
        if self._token is None:
            return False
        token, self._token = self._token, None
        released = await self.store.delete_if_equals(self._key, token)
        if not released:
            logger.warning(
                "Lock expired before release",
                extra={"context": {"session_id": self.session_id}},
            )
        return released
