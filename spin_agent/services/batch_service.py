"""Coalesces bursts of inbound messages into one batch per window."""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

from spin_agent.logging_config import get_logger
from spin_agent.services.clock import Clock, from_epoch_ms, now_ms, system_clock
from spin_agent.services.scheduler_service import BatchScheduler
from spin_agent.services.state_store import SessionKeys, StateStore

logger = get_logger("batch_service")


@dataclass
class PendingMessage:
    message_id: str
    text: str
    received_at: int  # epoch ms
    correlation_id: Optional[str] = None
    sender: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), ensure_ascii=False)

    @classmethod
    def from_json(cls, raw: str) -> "PendingMessage":
        return cls(**json.loads(raw))


@dataclass
class BatchWindow:
    session_id: str
    deadline_ms: int
    opened: bool

    @property
    def deadline(self) -> datetime:
        return from_epoch_ms(self.deadline_ms)


class BatchCoalescer:
    def __init__(
        self,
        store: StateStore,
        scheduler: BatchScheduler,
        delay_seconds: float = 120.0,
        clock: Clock = system_clock,
    ):
        self.store = store
        self.scheduler = scheduler
        self.delay_seconds = delay_seconds
        self.clock = clock

    @property
    def delay_ms(self) -> int:
        return int(self.delay_seconds * 1000)

    async def on_inbound_accepted(self, session_id: str, org_id: str, message: PendingMessage) -> BatchWindow:
        keys = SessionKeys(str(session_id))
        now = now_ms(self.clock)
        await self.store.set(keys.last_user_ts, str(now))
        await self.store.push(keys.pending_msgs, message.to_json())
        window = await self._open_window(str(session_id), str(org_id), now)
        logger.info(
            "Message queued for batch",
            extra={
                "context": {
                    "session_id": str(session_id),
                    "message_id": message.message_id,
                    "correlation_id": message.correlation_id,
                    "deadline_ms": window.deadline_ms,
                    "opened_window": window.opened,
                }
            },
        )
        return window

    async def rearm(self, session_id: str, org_id: str) -> BatchWindow:
        window = await self._open_window(str(session_id), str(org_id), now_ms(self.clock))
        logger.info(
            "Batch window re-armed",
            extra={"context": {"session_id": str(session_id), "deadline_ms": window.deadline_ms}},
        )
        return window

    async def close(self, session_id: str, deadline_ms: Optional[int] = None) -> bool:
        """Remove the window key if it still belongs to ``deadline_ms``.

        Without a deadline only an already elapsed window is removed.
        """
        keys = SessionKeys(str(session_id))
        if deadline_ms is not None:
            return await self.store.delete_if_equals(keys.batch_until, str(deadline_ms))
        current = await self.store.get(keys.batch_until)
        if current is None or int(current) > now_ms(self.clock):
            return False
        return await self.store.delete_if_equals(keys.batch_until, current)

    async def drain(self, session_id: str) -> list[PendingMessage]:
        raw = await self.store.drain(SessionKeys(str(session_id)).pending_msgs)
        seen: set[str] = set()
        messages: list[PendingMessage] = []
        for item in raw:
            message = PendingMessage.from_json(item)
            if message.message_id in seen:
                continue
            seen.add(message.message_id)
            messages.append(message)
        return messages

    async def requeue(self, session_id: str, messages: list[PendingMessage]) -> None:
        if not messages:
            return
        await self.store.push_front(
            SessionKeys(str(session_id)).pending_msgs,
            *[message.to_json() for message in messages],
        )

    async def pending_count(self, session_id: str) -> int:
        return await self.store.length(SessionKeys(str(session_id)).pending_msgs)

    async def _open_window(self, session_id: str, org_id: str, now: int) -> BatchWindow:
        keys = SessionKeys(session_id)
        deadline = now + self.delay_ms

        for _ in range(2):
            if await self.store.set_if_absent(keys.batch_until, str(deadline), ttl_ms=self.delay_ms):
                try:
                    await self.scheduler.schedule(
                        session_id,
                        org_id,
                        run_at=from_epoch_ms(deadline),
                        scheduled_at=from_epoch_ms(now),
                        deadline_ms=deadline,
                    )
                except Exception:
                    # no callback means nothing would ever drain this window
                    await self.store.delete_if_equals(keys.batch_until, str(deadline))
                    raise
                return BatchWindow(session_id=session_id, deadline_ms=deadline, opened=True)

            current = await self.store.get(keys.batch_until)
            if current is None:
                continue
            if int(current) > now:
                return BatchWindow(session_id=session_id, deadline_ms=int(current), opened=False)
            # elapsed but not yet expired: replace it
            await self.store.delete_if_equals(keys.batch_until, current)

        current = await self.store.get(keys.batch_until)
        return BatchWindow(session_id=session_id, deadline_ms=int(current or deadline), opened=False)
