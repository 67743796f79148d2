"""Per-conversation session state mirrored in the state store.

The durable ``Conversation`` row is the authoritative snapshot; the mirror is
rebuilt from it with ``hydrate`` and written back with ``flush``.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Optional

from sqlalchemy.orm import Session

from spin_agent.logging_config import get_logger
from spin_agent.services.clock import from_epoch_ms, to_epoch_ms
from spin_agent.services.state_machine import SpinStage
from spin_agent.services.state_store import SessionKeys, StateStore

logger = get_logger("session_state")

PERSON_TYPES = ("PF", "PJ")


@dataclass(frozen=True)
class SessionFacts:
    name: Optional[str] = None
    person_type: Optional[str] = None
    business: Optional[str] = None
    contact: Optional[str] = None

    def __post_init__(self):
        if self.person_type is not None and self.person_type not in PERSON_TYPES:
            raise ValueError(f"person_type must be one of {PERSON_TYPES}, got {self.person_type!r}")

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> "SessionFacts":
        data = data or {}
        values = {}
        for item in fields(cls):
            value = data.get(item.name)
            if isinstance(value, str):
                value = value.strip() or None
            values[item.name] = value
        if values.get("person_type") not in PERSON_TYPES:
            values["person_type"] = None
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        return {key: value for key, value in asdict(self).items() if value}

    def known_keys(self) -> list[str]:
        return list(self.to_dict().keys())

    def merge(self, other: "SessionFacts") -> "SessionFacts":
        """Fill in facts from ``other``. Empty values never replace known ones."""
        merged = asdict(self)
        for key, value in other.to_dict().items():
            merged[key] = value
        return SessionFacts(**merged)


@dataclass
class SessionState:
    stage: SpinStage = SpinStage.SITUATION
    asked: set[str] = field(default_factory=set)
    answered: set[str] = field(default_factory=set)
    facts: SessionFacts = field(default_factory=SessionFacts)
    last_user_ts: Optional[int] = None
    score: int = 0
    summary: Optional[str] = None
    stage_changed_at: Optional[int] = None


@dataclass
class SessionUpdate:
    stage: SpinStage
    facts: SessionFacts
    score: int
    stage_changed_at: Optional[int] = None
    asked: set[str] = field(default_factory=set)
    answered: set[str] = field(default_factory=set)
    summary: Optional[str] = None


def _to_int(value: Optional[str]) -> Optional[int]:
    if value is None or value == "":
        return None
    return int(value)


class SessionStateManager:
    def __init__(self, store: StateStore, session_id: str):
        self.store = store
        self.session_id = str(session_id)
        self.keys = SessionKeys(self.session_id)

    async def get_stage(self) -> SpinStage:
        value = await self.store.get(self.keys.stage)
        return SpinStage(value) if value else SpinStage.SITUATION

    async def set_stage(self, stage: SpinStage) -> None:
        await self.store.set(self.keys.stage, stage.value)

    async def add_asked(self, *topics: str) -> None:
        await self.store.add_to_set(self.keys.asked, *topics)

    async def add_answered(self, *topics: str) -> None:
        await self.store.add_to_set(self.keys.answered, *topics)

    async def get_facts(self) -> SessionFacts:
        return SessionFacts.from_dict(await self.store.hash_get_all(self.keys.facts))

    async def merge_facts(self, facts: SessionFacts) -> SessionFacts:
        merged = (await self.get_facts()).merge(facts)
        await self.store.hash_set(self.keys.facts, merged.to_dict())
        return merged

    async def get_last_user_ts(self) -> Optional[int]:
        return _to_int(await self.store.get(self.keys.last_user_ts))

    async def set_last_user_ts(self, ts_ms: int) -> None:
        await self.store.set(self.keys.last_user_ts, str(ts_ms))

    async def get_score(self) -> int:
        return _to_int(await self.store.get(self.keys.score)) or 0

    async def set_score(self, score: int) -> None:
        await self.store.set(self.keys.score, str(score))

    async def get_summary(self) -> Optional[str]:
        return await self.store.get(self.keys.summary)

    async def set_summary(self, summary: str) -> None:
        await self.store.set(self.keys.summary, summary)

    async def get_state(self) -> SessionState:
        return SessionState(
            stage=await self.get_stage(),
            asked=await self.store.members(self.keys.asked),
            answered=await self.store.members(self.keys.answered),
            facts=await self.get_facts(),
            last_user_ts=await self.get_last_user_ts(),
            score=await self.get_score(),
            summary=await self.get_summary(),
            stage_changed_at=_to_int(await self.store.get(self.keys.stage_changed_at)),
        )

    async def hydrate(self, conversation) -> bool:
        """Rebuild the mirror from the durable snapshot if the mirror is missing.

        ``last_user_ts`` is owned by the ingestion path and left untouched.
        """
        if await self.store.exists(self.keys.stage):
            return False

        facts = SessionFacts.from_dict(conversation.facts)
        stage_changed_at = to_epoch_ms(conversation.stage_changed_at or conversation.created_at)

        await self.store.hash_set(self.keys.facts, facts.to_dict())
        await self.store.add_to_set(self.keys.asked, *(conversation.asked_topics or []))
        await self.store.add_to_set(self.keys.answered, *(conversation.answered_topics or []))
        await self.set_score(conversation.score or 0)
        if conversation.summary:
            await self.set_summary(conversation.summary)
        if stage_changed_at is not None:
            await self.store.set(self.keys.stage_changed_at, str(stage_changed_at))
        # stage last: its presence marks the mirror as complete
        await self.set_stage(SpinStage(conversation.spin_stage or SpinStage.SITUATION.value))

        logger.info(
            "Session mirror hydrated",
            extra={"context": {"session_id": self.session_id, "stage": conversation.spin_stage}},
        )
        return True

    async def apply(self, update: SessionUpdate) -> SessionState:
        await self.merge_facts(update.facts)
        await self.add_asked(*sorted(update.asked))
        await self.add_answered(*sorted(update.answered))
        await self.set_score(max(update.score, await self.get_score()))
        if update.summary:
            await self.set_summary(update.summary)
        if update.stage_changed_at is not None:
            await self.store.set(self.keys.stage_changed_at, str(update.stage_changed_at))
        await self.set_stage(update.stage)
        return await self.get_state()

    def flush(self, db: Session, conversation, state: SessionState, qualified: bool = False) -> None:
        """Copy the mirrored state onto the durable conversation row. Caller commits."""
        conversation.spin_stage = state.stage.value
        conversation.facts = state.facts.to_dict()
        conversation.asked_topics = sorted(state.asked)
        conversation.answered_topics = sorted(state.answered)
        conversation.score = max(state.score, conversation.score or 0)
        conversation.qualified = qualified
        if state.summary:
            conversation.summary = state.summary
        if state.stage_changed_at is not None:
            conversation.stage_changed_at = from_epoch_ms(state.stage_changed_at)
        if state.last_user_ts is not None:
            conversation.last_user_at = from_epoch_ms(state.last_user_ts)
        db.flush()

    async def cleanup(self) -> None:
        await self.store.delete(*self.keys.all())
