"""Conductor worker entry point.

Initializes all components in dependency order and runs the background
loops until SIGINT/SIGTERM:
  Settings -> Database -> StateStore -> clients -> Validator -> Planner
  -> Engine -> Service -> handlers
"""

from __future__ import annotations

import asyncio
import logging
import signal

import httpx

from conductor.agents.catalog import ModelValidator
from conductor.agents.client import AgentApiClient
from conductor.config import Settings
from conductor.dispatch.broker import RedisBroker
from conductor.dispatch.engine import OrchestrationEngine
from conductor.handlers.agent_poller import AgentPoller
from conductor.handlers.broker_consumer import BrokerConsumer
from conductor.handlers.catalog_refresher import CatalogRefresher
from conductor.handlers.outbox_processor import OutboxProcessor
from conductor.handlers.reconciler import Reconciler
from conductor.handlers.watchdog import StuckWorkerWatchdog
from conductor.planning.planner import TaskPlanner
from conductor.service import OrchestrationService
from conductor.state.store import StateStore
from conductor.storage.database import Database
from conductor.storage.migrator import run_migrations

logger = logging.getLogger(__name__)

_HANDLER_KEYS = (
    "broker_consumer",
    "outbox_processor",
    "agent_poller",
    "watchdog",
    "catalog_refresher",
    "reconciler",
)


async def create_components(settings: Settings, with_handlers: bool = True) -> dict:
    """Initialize all components in dependency order.

    Returns a dict of components; handlers are created but not started.
    """
    database = Database(settings)
    await database.connect()
    await run_migrations(database.engine)

    store = StateStore(database, settings)
    http = httpx.AsyncClient(timeout=httpx.Timeout(connect=10, read=60, write=10, pool=10))
    agent_client = AgentApiClient(settings, http)
    validator = ModelValidator(
        agent_client.list_models,
        ttl_seconds=settings.catalog_ttl,
        failure_backoff=settings.catalog_failure_backoff,
    )
    planner = TaskPlanner(settings, http)
    engine = OrchestrationEngine(store, agent_client, planner, validator, settings)

    broker = None
    if settings.broker_enabled:
        broker = RedisBroker(settings.redis_url, prefix=settings.queue_prefix)
        if not await broker.ping():
            logger.warning("Broker at %s not reachable; outbox path only until it recovers", settings.redis_url)

    service = OrchestrationService(store, validator, settings, broker=broker, engine=engine)

    components: dict = {
        "settings": settings,
        "database": database,
        "store": store,
        "http": http,
        "agent_client": agent_client,
        "validator": validator,
        "planner": planner,
        "engine": engine,
        "broker": broker,
        "service": service,
    }
    if with_handlers:
        components["outbox_processor"] = OutboxProcessor(store, engine, settings)
        components["agent_poller"] = AgentPoller(store, engine, agent_client, settings)
        components["watchdog"] = StuckWorkerWatchdog(store, agent_client, settings, engine=engine)
        components["catalog_refresher"] = CatalogRefresher(validator, settings)
        components["reconciler"] = Reconciler(store, settings, engine=engine)
        if broker is not None:
            components["broker_consumer"] = BrokerConsumer(broker, store, engine, settings)
    return components


async def start_handlers(components: dict) -> None:
    for key in _HANDLER_KEYS:
        handler = components.get(key)
        if handler:
            await handler.start()


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    logger.info("Shutting down conductor...")
    for key in _HANDLER_KEYS:
        handler = components.get(key)
        if handler:
            await handler.stop()

    broker = components.get("broker")
    if broker:
        await broker.close()
    http = components.get("http")
    if http:
        await http.aclose()
    database = components.get("database")
    if database:
        await database.disconnect()
    logger.info("Conductor shutdown complete")


async def run_worker(settings: Settings) -> None:
    components = await create_components(settings)
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            pass

    try:
        await start_handlers(components)
        logger.info("Worker %s running", settings.worker_id)
        await stop.wait()
    finally:
        await shutdown_components(components)


async def run_watchdog_once(settings: Settings) -> int:
    """One watchdog sweep, for an external cron-style trigger."""
    components = await create_components(settings, with_handlers=False)
    try:
        watchdog = StuckWorkerWatchdog(
            components["store"], components["agent_client"], settings, engine=components["engine"]
        )
        return await watchdog.run_once()
    finally:
        await shutdown_components(components)


def _configure_logging(settings: Settings) -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )


def main() -> None:
    """Entry point -- parse settings, run the worker loops."""
    settings = Settings()
    _configure_logging(settings)

    logger.info("Starting conductor worker %s", settings.worker_id)
    logger.info("Broker: %s", "enabled" if settings.broker_enabled else "disabled (outbox only)")
    if not settings.agent_api_key:
        logger.warning("AGENT_API_KEY not set; agent launches will fail")
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning("No Anthropic credentials set; planning uses the chunked fallback")

    asyncio.run(run_worker(settings))


def watchdog_main() -> None:
    settings = Settings()
    _configure_logging(settings)
    timed_out = asyncio.run(run_watchdog_once(settings))
    logger.info("Watchdog sweep finished: %d agent(s) timed out", timed_out)


if __name__ == "__main__":
    main()
