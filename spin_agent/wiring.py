"""Builds the engine components once per process and exposes them as FastAPI dependencies."""

from dataclasses import dataclass
from typing import Any, Callable, Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from spin_agent.config import Settings, settings
from spin_agent.database import SessionLocal
from spin_agent.models import Conversation
from spin_agent.services.batch_processor import BatchProcessor
from spin_agent.services.batch_service import BatchCoalescer
from spin_agent.services.clock import Clock, system_clock
from spin_agent.services.dedup_service import IdempotencyGuard
from spin_agent.services.dispatch_service import ReplyDispatcher
from spin_agent.services.errors import GatewayError
from spin_agent.services.llm import LLMProvider, build_llm_provider
from spin_agent.services.scheduler_service import BatchScheduler, DatabaseBatchScheduler
from spin_agent.services.spin_classifier import (
    FactExtractor,
    KeywordSpinClassifier,
    RegexFactExtractor,
    SpinClassifier,
)
from spin_agent.services.state_machine import ScoringConfig
from spin_agent.services.state_store import StateStore
from spin_agent.services.whatsapp_service import gateway_for_account


@dataclass
class Engine:
    store: StateStore
    scheduler: BatchScheduler
    guard: IdempotencyGuard
    coalescer: BatchCoalescer
    classifier: SpinClassifier
    extractor: FactExtractor
    llm: LLMProvider
    processor: BatchProcessor
    dispatcher_factory: Callable[[Conversation], ReplyDispatcher]


def make_dispatcher_factory(config: Settings) -> Callable[[Conversation], ReplyDispatcher]:
    def factory(conversation: Conversation) -> ReplyDispatcher:
        if conversation.account is None:
            raise GatewayError(f"Conversation {conversation.id} has no WhatsApp account")
        return ReplyDispatcher(gateway_for_account(conversation.account, config))

    return factory


def build_engine(
    config: Settings = settings,
    *,
    redis_client: Any = None,
    session_factory: Callable[[], Session] = SessionLocal,
    scheduler: Optional[BatchScheduler] = None,
    llm: Optional[LLMProvider] = None,
    dispatcher_factory: Optional[Callable[[Conversation], ReplyDispatcher]] = None,
    clock: Clock = system_clock,
) -> Engine:
    if redis_client is not None:
        store = StateStore(redis_client)
    else:
        store = StateStore.from_url(config.redis_url, config.redis_socket_timeout_seconds)
    scheduler = scheduler or DatabaseBatchScheduler(session_factory)
    coalescer = BatchCoalescer(store, scheduler, delay_seconds=config.batching_delay_seconds, clock=clock)
    classifier = KeywordSpinClassifier()
    extractor = RegexFactExtractor()
    llm = llm or build_llm_provider(config)
    dispatcher_factory = dispatcher_factory or make_dispatcher_factory(config)
    processor = BatchProcessor(
        store,
        coalescer,
        llm,
        dispatcher_factory,
        classifier,
        extractor,
        scoring=ScoringConfig.from_settings(config),
        lock_ttl_seconds=config.lock_ttl_seconds,
        history_limit=config.history_limit,
        clock=clock,
        prompt_timezone=config.prompt_timezone,
    )
    return Engine(
        store=store,
        scheduler=scheduler,
        guard=IdempotencyGuard(store, ttl_seconds=config.dedupe_ttl_seconds),
        coalescer=coalescer,
        classifier=classifier,
        extractor=extractor,
        llm=llm,
        processor=processor,
        dispatcher_factory=dispatcher_factory,
    )


def get_engine(request: Request) -> Engine:
    engine = getattr(request.app.state, "engine", None)
    if engine is None:
        engine = build_engine()
        request.app.state.engine = engine
    return engine


def get_state_store(engine: Engine = Depends(get_engine)) -> StateStore:
    return engine.store


def get_guard(engine: Engine = Depends(get_engine)) -> IdempotencyGuard:
    return engine.guard


def get_coalescer(engine: Engine = Depends(get_engine)) -> BatchCoalescer:
    return engine.coalescer


def get_batch_processor(engine: Engine = Depends(get_engine)) -> BatchProcessor:
    return engine.processor
