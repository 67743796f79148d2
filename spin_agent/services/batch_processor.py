"""Scheduled-callback handler: one run per fired batch window."""

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Optional, Union

from sqlalchemy.orm import Session

from spin_agent.logging_config import bind_logger, create_correlation_id, get_logger
from spin_agent.models import Conversation, Message
from spin_agent.services.alert_service import alert_error
from spin_agent.services.batch_service import BatchCoalescer, PendingMessage
from spin_agent.services.clock import Clock, from_epoch_ms, now_ms, system_clock, to_epoch_ms
from spin_agent.services.conversation_service import get_conversation
from spin_agent.services.dispatch_service import ReplyDispatcher
from spin_agent.services.errors import InferenceError, StoreUnavailableError
from spin_agent.services.llm.base import LLMProvider
from spin_agent.services.lock_service import ConversationLock
from spin_agent.services.message_service import get_recent_messages
from spin_agent.services.prompt_service import build_prompt, get_org_instructions
from spin_agent.services.session_state import SessionState, SessionStateManager, SessionUpdate
from spin_agent.services.spin_classifier import FactExtractor, SpinClassifier, detect_asked_topics
from spin_agent.services.state_machine import ScoringConfig, StageDecision, evaluate_batch
from spin_agent.services.state_store import StateStore

logger = get_logger("batch_processor")

SUMMARY_REPLY_CHARS = 100


@dataclass
class BatchOutcome:
    status: str  # processed, dispatch_failed, stale_rearmed, skipped_locked, empty, not_found
    session_id: str
    correlation_id: Optional[str] = None
    message_count: int = 0
    stage: Optional[str] = None
    previous_stage: Optional[str] = None
    score: Optional[int] = None
    qualified: bool = False
    reply_message_id: Optional[str] = None
    deadline_ms: Optional[int] = None
    error: Optional[str] = None
    message_ids: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def build_summary(reply: str, stage_label: str) -> str:
    excerpt = reply[:SUMMARY_REPLY_CHARS]
    if len(reply) > SUMMARY_REPLY_CHARS:
        excerpt += "..."
    return f"Última resposta: {excerpt} (Etapa: {stage_label})"


class BatchProcessor:
    def __init__(
        self,
        store: StateStore,
        coalescer: BatchCoalescer,
        llm: LLMProvider,
        dispatcher_factory: Callable[[Conversation], ReplyDispatcher],
        classifier: SpinClassifier,
        extractor: FactExtractor,
        scoring: ScoringConfig = ScoringConfig(),
        lock_ttl_seconds: int = 90,
        history_limit: int = 20,
        clock: Clock = system_clock,
        prompt_timezone: str = "America/Sao_Paulo",
    ):
        self.store = store
        self.coalescer = coalescer
        self.llm = llm
        self.dispatcher_factory = dispatcher_factory
        self.classifier = classifier
        self.extractor = extractor
        self.scoring = scoring
        self.lock_ttl_seconds = lock_ttl_seconds
        self.history_limit = history_limit
        self.clock = clock
        self.prompt_timezone = prompt_timezone

    async def process(
        self,
        db: Session,
        session_id,
        org_id,
        scheduled_at: datetime,
        deadline: Optional[Union[datetime, int]] = None,
    ) -> BatchOutcome:
        session_id = str(session_id)
        correlation_id = create_correlation_id()
        log = bind_logger(logger, session_id=session_id, org_id=str(org_id), correlation_id=correlation_id)

        deadline_ms = to_epoch_ms(deadline) if isinstance(deadline, datetime) else deadline
        await self.coalescer.close(session_id, deadline_ms)

        state_manager = SessionStateManager(self.store, session_id)
        last_user_ts = await state_manager.get_last_user_ts()
        if last_user_ts is not None and last_user_ts > to_epoch_ms(scheduled_at):
            window = await self.coalescer.rearm(session_id, str(org_id))
            log.info("Newer messages since scheduling, window re-armed", context={"deadline_ms": window.deadline_ms})
            return BatchOutcome(
                status="stale_rearmed",
                session_id=session_id,
                correlation_id=correlation_id,
                deadline_ms=window.deadline_ms,
            )

        conversation = get_conversation(db, session_id)
        if conversation is None or str(conversation.organization_id) != str(org_id):
            log.warning("Conversation not found for batch")
            return BatchOutcome(status="not_found", session_id=session_id, correlation_id=correlation_id)

        lock = ConversationLock(self.store, session_id, ttl_seconds=self.lock_ttl_seconds)
        if not await lock.acquire():
            log.info("Batch skipped, already processing")
            return BatchOutcome(status="skipped_locked", session_id=session_id, correlation_id=correlation_id)

        try:
            return await self._process_locked(db, conversation, state_manager, correlation_id, log)
        finally:
            try:
                await lock.release()
            except StoreUnavailableError as exc:
                log.error("Lock release failed, waiting for TTL", context={"error": str(exc)})

    async def _process_locked(
        self,
        db: Session,
        conversation: Conversation,
        state_manager: SessionStateManager,
        correlation_id: str,
        log,
    ) -> BatchOutcome:
        session_id = state_manager.session_id
        await state_manager.hydrate(conversation)
        dispatcher = self.dispatcher_factory(conversation)

        messages = await self.coalescer.drain(session_id)
        if not messages:
            log.info("Nothing pending for batch")
            return BatchOutcome(status="empty", session_id=session_id, correlation_id=correlation_id)

        message_ids = [message.message_id for message in messages]
        log.info(
            "Batch drained",
            context={
                "message_count": len(messages),
                "message_ids": message_ids,
                "inbound_correlation_ids": [m.correlation_id for m in messages if m.correlation_id],
            },
        )

        try:
            decision, message = await self._compose_reply(
                db, conversation, state_manager, dispatcher, messages, correlation_id
            )
        except Exception as exc:
            # nothing outbound is stored yet, so the drained messages go back to the queue
            db.rollback()
            await self.coalescer.requeue(session_id, messages)
            title = "Inference failed" if isinstance(exc, InferenceError) else "Batch processing failed"
            log.error(f"{title}, batch requeued", context={"error": str(exc), "error_type": type(exc).__name__})
            await alert_error(
                title,
                {"session_id": session_id, "correlation_id": correlation_id, "error": str(exc)[:200]},
            )
            raise

        reply = message.content
        result = await dispatcher.deliver(db, message, conversation.contact.address)

        update = SessionUpdate(
            stage=decision.stage,
            facts=decision.facts,
            score=decision.score,
            stage_changed_at=decision.stage_changed_at,
            asked=detect_asked_topics(reply),
            answered=decision.answered_topics,
            summary=build_summary(reply, decision.stage.label),
        )
        new_state = await state_manager.apply(update)
        state_manager.flush(db, conversation, new_state, qualified=decision.qualified)
        db.commit()

        status = "processed" if result.ok else "dispatch_failed"
        log.info(
            "Batch processed",
            context={
                "status": status,
                "stage": new_state.stage.value,
                "previous_stage": decision.previous_stage.value,
                "score": new_state.score,
                "qualified": decision.qualified,
            },
        )
        return BatchOutcome(
            status=status,
            session_id=session_id,
            correlation_id=correlation_id,
            message_count=len(messages),
            stage=new_state.stage.value,
            previous_stage=decision.previous_stage.value,
            score=new_state.score,
            qualified=decision.qualified,
            reply_message_id=str(result.value.id) if result.value is not None else None,
            error=result.error,
            message_ids=message_ids,
        )

    async def _compose_reply(
        self,
        db: Session,
        conversation: Conversation,
        state_manager: SessionStateManager,
        dispatcher: ReplyDispatcher,
        messages: list[PendingMessage],
        correlation_id: str,
    ) -> tuple[StageDecision, Message]:
        """Evaluate the batch, run inference and store the reply as a pending outbound message."""
        state = await state_manager.get_state()
        now = now_ms(self.clock)
        decision = evaluate_batch(
            state,
            [message.text for message in messages],
            self.classifier,
            self.extractor,
            now,
            self.scoring,
        )

        prompt_state = SessionState(
            stage=decision.stage,
            asked=set(state.asked),
            answered=set(state.answered) | decision.answered_topics,
            facts=decision.facts,
            last_user_ts=state.last_user_ts,
            score=decision.score,
            summary=state.summary,
            stage_changed_at=decision.stage_changed_at,
        )
        history = get_recent_messages(db, conversation.id, limit=self.history_limit)
        org_instructions = get_org_instructions(db, conversation.organization_id)
        prompt = build_prompt(history, prompt_state, org_instructions, from_epoch_ms(now), self.prompt_timezone)

        response = await self.llm.complete(prompt)
        reply = response.content.strip()
        message = dispatcher.persist(db, conversation, reply, correlation_id=correlation_id)
        return decision, message
