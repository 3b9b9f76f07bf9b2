"""
Companion turn service

FastAPI application: builds every service once in the lifespan, keeps them in
``app.state.services`` and exposes the turn, mode and state routes plus
``/health``.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import FastAPI, Request

from .agent.bonding import BondTracker
from .agent.emotional_state import EmotionalStateManager
from .agent.guardrails import GuardrailEvaluator
from .agent.sentiment import SentimentAnalyzer
from .api import mode_router, turn_router
from .config import AppConfig, get_app_config
from .conversation.fallbacks import FallbackTable
from .conversation.finalizer import TurnResultFinalizer
from .conversation.orchestrator import TurnOrchestrator, build_stage_registry
from .conversation.service import ConversationService
from .conversation.types import IdentityKey
from .core.capabilities import compute_capabilities
from .core.graceful_degradation import DegradationLevel
from .core.system_mode import SystemModeController
from .core.tasks import HeartbeatTask, IdleAmbientTask, MaintenanceTask
from .core.telemetry import LoggingTelemetrySink, TelemetrySink, emit
from .db.session import Database
from .db.state_store import EMOTIONAL_STATE, SENTIMENT_TREND, InMemoryStateStore, SQLStateStore, StateStore
from .llm.responders import Responder, build_responders
from .memory.context_builder import MemoryContextBuilder
from .memory.memory_log import MemoryLog
from .memory.trends import SentimentTrendTracker, SynchronyTracker
from .scheduler.scheduler_service import SchedulerService
from .utils.datetime import epoch_now, isoformat_utc_now
from .utils.logging_config import setup_logging

logger = logging.getLogger("companion.main")


async def _known_identities(store: StateStore) -> List[IdentityKey]:
    keys = set(await store.identities(EMOTIONAL_STATE)) | set(await store.identities(SENTIMENT_TREND))
    identities = []
    for key in sorted(keys):
        try:
            identities.append(IdentityKey.parse(key))
        except ValueError:
            logger.warning(f"Skipping malformed identity key in store: {key!r}")
    return identities


async def initialize_services(
    config: AppConfig,
    *,
    store: Optional[StateStore] = None,
    responders: Optional[Tuple[Responder, Optional[Responder]]] = None,
    telemetry: Optional[TelemetrySink] = None,
    clock: Callable[[], float] = epoch_now,
) -> Dict[str, Any]:
    """
    Build the full service graph.

    Args:
        config: Application configuration
        store: State store override; defaults to SQL when DATABASE_URL is set,
            otherwise in-memory
        responders: (primary, local) override; defaults to the configured HTTP backends
        telemetry: Telemetry sink override; defaults to the logging sink
        clock: Epoch-seconds clock shared by every stateful component

    Returns:
        Service registry stored in ``app.state.services``
    """
    telemetry = telemetry or LoggingTelemetrySink()

    database = None
    if store is None:
        if config.database_url:
            database = Database(config.database_url)
            await database.create_all()
            store = SQLStateStore(database)
            logger.info("Using SQL state store")
        else:
            store = InMemoryStateStore()
            logger.info("Using in-memory state store")

    primary, local = responders if responders is not None else build_responders(config.get_responder_config())

    mode_controller = SystemModeController()
    mode_controller.subscribe(
        lambda old, new, reason: emit(telemetry, "mode_changed", old=old.value, new=new.value, reason=reason)
    )

    analyzer = SentimentAnalyzer()
    fallbacks = FallbackTable()
    emotions = EmotionalStateManager(store, config.emotion_tuning, clock=clock)
    bonds = BondTracker(store)
    memory_log = MemoryLog(store)
    trends = SentimentTrendTracker(store)
    synchrony = SynchronyTracker(store)
    registry = build_stage_registry(config.stage_timeout_seconds, telemetry)

    orchestrator = TurnOrchestrator(
        mode_provider=mode_controller.get_mode,
        emotions=emotions,
        memory=MemoryContextBuilder(memory_log, bonds),
        bonds=bonds,
        responder=primary,
        local_responder=local,
        analyzer=analyzer,
        guardrails=GuardrailEvaluator(config.guardrail_thresholds),
        fallbacks=fallbacks,
        registry=registry,
        responder_timeout=config.responder_timeout_seconds,
        local_timeout=config.local_responder_timeout_seconds,
        stage_timeout=config.stage_timeout_seconds,
        persona_name=config.persona_name,
        telemetry=telemetry,
        clock=clock,
    )
    finalizer = TurnResultFinalizer(
        memory_log, trends, synchrony, bonds,
        analyzer=analyzer, fallbacks=fallbacks, tuning=config.shaping_tuning,
        telemetry=telemetry, clock=clock,
    )
    conversation = ConversationService(
        orchestrator, finalizer, emotions, memory_log, bonds,
        loop_tuning=config.loop_tuning, shaping_tuning=config.shaping_tuning,
        telemetry=telemetry, clock=clock,
        evict_after_seconds=config.identity_evict_after_seconds,
    )

    tasks = [
        HeartbeatTask(
            config.heartbeat_interval_seconds,
            telemetry=telemetry,
            status_provider=lambda: {"mode": mode_controller.get_mode().value, **conversation.status()},
        ),
        IdleAmbientTask(
            config.idle_check_interval_seconds,
            config.idle_timeout_seconds,
            activity=conversation.activity,
            reflect=conversation.reflect,
            deliver=conversation.deliver,
        ),
        MaintenanceTask(
            config.maintenance_interval_seconds,
            identities=lambda: _known_identities(store),
            steps=[emotions.decay, trends.prune],
            sweeps=[conversation.forget_idle],
        ),
    ]

    logger.info("Services initialized")
    return {
        "config": config,
        "telemetry": telemetry,
        "store": store,
        "database": database,
        "mode_controller": mode_controller,
        "responders": {"primary": primary, "local": local},
        "stage_registry": registry,
        "emotions": emotions,
        "bonds": bonds,
        "memory_log": memory_log,
        "trends": trends,
        "synchrony": synchrony,
        "orchestrator": orchestrator,
        "finalizer": finalizer,
        "conversation": conversation,
        "tasks": tasks,
        "scheduler": None,
    }


async def start_background_tasks(services: Dict[str, Any]) -> Optional[SchedulerService]:
    config: AppConfig = services["config"]
    if not config.background_tasks_enabled:
        logger.info("Background tasks disabled")
        return None
    scheduler = SchedulerService()
    for task in services["tasks"]:
        await scheduler.add_periodic_task(task)
    await scheduler.start()
    services["scheduler"] = scheduler
    return scheduler


async def shutdown_services(services: Dict[str, Any]) -> None:
    scheduler = services.get("scheduler")
    if scheduler is not None:
        await scheduler.stop()
    for task in services.get("tasks", []):
        task.cancel("shutdown")

    for name, responder in (services.get("responders") or {}).items():
        close = getattr(responder, "aclose", None)
        if close is None:
            continue
        try:
            await close()
        except Exception as e:
            logger.warning(f"Error closing {name} responder: {e}")

    database = services.get("database")
    if database is not None:
        await database.dispose()
    logger.info("Services shut down")


def _responder_states(services: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
    states = {}
    for name, responder in (services.get("responders") or {}).items():
        breaker = getattr(responder, "breaker", None)
        if breaker is not None:
            states[name] = breaker.get_state()
    return states


def create_app(config: Optional[AppConfig] = None, services: Optional[Dict[str, Any]] = None) -> FastAPI:
    """
    Application factory.

    When ``services`` is given they are installed as-is and the lifespan
    neither builds nor tears them down.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if services is not None:
            yield
            return

        cfg = config or get_app_config()
        setup_logging(cfg.log_level, cfg.log_structured)
        cfg.validate_config()
        app.state.services = await initialize_services(cfg)
        await start_background_tasks(app.state.services)
        logger.info("🚀 Companion service ready")
        try:
            yield
        finally:
            await shutdown_services(app.state.services)

    app = FastAPI(title="Companion Turn Service", lifespan=lifespan)
    app.state.services = services or {}
    app.include_router(turn_router.router)
    app.include_router(mode_router.router)

    @app.get("/health")
    async def health_check(request: Request) -> Dict[str, Any]:
        svc = request.app.state.services
        if not svc:
            return {"status": "starting", "time": isoformat_utc_now()}

        mode = svc["mode_controller"].get_mode().value
        capabilities = compute_capabilities(
            svc["config"], svc.get("stage_registry"), _responder_states(svc), mode=mode
        )
        degradation = capabilities.get("degradation") or {}
        status = "ok" if degradation.get("current_level", DegradationLevel.FULL) == DegradationLevel.FULL else "degraded"

        scheduler = svc.get("scheduler")
        return {
            "status": status,
            "mode": mode,
            "capabilities": capabilities,
            "background_tasks": [task.status() for task in svc.get("tasks", [])],
            "scheduler": "active" if scheduler is not None and scheduler.active else "inactive",
            "conversation": svc["conversation"].status(),
            "time": isoformat_utc_now(),
        }

    return app


app = create_app()
