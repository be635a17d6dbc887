"""Wires services together. One container per application instance."""

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from leadflow.config import Settings
from leadflow.logging_config import get_logger
from leadflow.services.collaborators import (
    HttpAppointmentClient,
    HttpCatalogClient,
    HttpTaskClient,
    HttpVerificationClient,
    SqlAggregateCounter,
    SqlLeadRepository,
)
from leadflow.services.conversation_store import ConversationStore, RetentionSweeper
from leadflow.services.event_bus import EventBus
from leadflow.services.flow_executor import FlowExecutor
from leadflow.services.handlers import build_default_registry
from leadflow.services.kv_store import KeyValueStore, SqlKeyValueStore
from leadflow.services.lead_count_service import LeadCountService
from leadflow.services.llm import LLMProvider, OpenAIProvider
from leadflow.services.redis_kv_store import RedisKeyValueStore
from leadflow.services.stage_service import StageService
from leadflow.services.sync_engine import InMemoryChatViewModel, LeadCache, LeadSyncEngine
from leadflow.services.template_service import FileTemplateRepository
from leadflow.services.timers import RepeatingTimer

logger = get_logger("container")


@dataclass
class Container:
    settings: Settings
    event_bus: EventBus
    kv_store: KeyValueStore
    conversation_store: ConversationStore
    sweeper: RetentionSweeper
    executor: FlowExecutor
    count_service: LeadCountService
    stage_service: StageService
    sync_engine: LeadSyncEngine
    remote_changes_timer: Optional[RepeatingTimer] = None

    async def start(self) -> None:
        if self.settings.background_workers_enabled:
            self.sweeper.start()
            self.sync_engine.start()
            if self.remote_changes_timer is not None:
                self.remote_changes_timer.start()
        else:
            self.sync_engine.subscribe()
        logger.info(
            "Services started",
            extra={"context": {"background_workers": self.settings.background_workers_enabled}},
        )

    async def stop(self) -> None:
        if self.remote_changes_timer is not None:
            await self.remote_changes_timer.stop()
        if isinstance(self.kv_store, RedisKeyValueStore):
            self.kv_store.close()
        await self.sync_engine.stop()
        await self.sweeper.stop()


def build_container(settings: Settings, session_factory: Callable[[], Session]) -> Container:
    event_bus = EventBus()
    kv_store: KeyValueStore
    remote_changes_timer = None
    if settings.redis_url:
        redis_store = RedisKeyValueStore.from_url(settings.redis_url, settings.redis_timeout_seconds)
        remote_changes_timer = RepeatingTimer(
            "kv_remote_changes", settings.sync_drain_interval_seconds, redis_store.drain_remote_async
        )
        kv_store = redis_store
    else:
        kv_store = SqlKeyValueStore(session_factory)

    conversation_store = ConversationStore(kv_store, retention_days=settings.conversation_retention_days)
    sweeper = RetentionSweeper(
        conversation_store,
        initial_delay_seconds=settings.retention_sweep_initial_delay_seconds,
        interval_seconds=settings.retention_sweep_interval_seconds,
    )

    lead_repository = SqlLeadRepository(session_factory)
    count_service = LeadCountService(
        lead_repository,
        SqlAggregateCounter(session_factory),
        ttl_seconds=settings.lead_cache_ttl_seconds,
    )
    stage_service = StageService(lead_repository, event_bus, count_service)

    timeout = settings.collaborator_timeout_seconds
    llm: Optional[LLMProvider] = None
    if settings.openai_api_key:
        llm = OpenAIProvider(settings.openai_api_key, default_model=settings.openai_model)

    registry = build_default_registry(
        appointments=HttpAppointmentClient(settings.appointments_api_url, timeout),
        catalog=HttpCatalogClient(settings.catalog_api_url, timeout),
        tasks=HttpTaskClient(settings.tasks_api_url, timeout),
        verification=HttpVerificationClient(settings.verification_api_url, timeout),
        stage_service=stage_service,
        llm=llm,
    )
    executor = FlowExecutor(
        FileTemplateRepository(settings.templates_dir),
        conversation_store,
        registry,
        max_steps_per_turn=settings.flow_max_steps_per_turn,
    )

    sync_engine = LeadSyncEngine(
        event_bus,
        kv_store,
        InMemoryChatViewModel(),
        LeadCache(max_entries=settings.lead_cache_max_entries),
        drain_interval_seconds=settings.sync_drain_interval_seconds,
        refresh_throttle_seconds=settings.chat_refresh_throttle_seconds,
    )

    return Container(
        settings=settings,
        event_bus=event_bus,
        kv_store=kv_store,
        conversation_store=conversation_store,
        sweeper=sweeper,
        executor=executor,
        count_service=count_service,
        stage_service=stage_service,
        sync_engine=sync_engine,
        remote_changes_timer=remote_changes_timer,
    )


def get_container(request: Request) -> Container:
    return request.app.state.container
