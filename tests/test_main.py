"""Tests for component wiring."""

from conductor.main import create_components, shutdown_components


async def test_create_components_without_broker(settings):
    components = await create_components(settings)
    try:
        assert components["broker"] is None
        assert "broker_consumer" not in components
        for key in ("outbox_processor", "agent_poller", "watchdog", "catalog_refresher", "reconciler"):
            assert components[key] is not None
        assert await components["store"].orchestrations.list() == []
    finally:
        await shutdown_components(components)


async def test_create_components_core_only(settings):
    components = await create_components(settings, with_handlers=False)
    try:
        assert "outbox_processor" not in components
        assert components["service"] is not None
    finally:
        await shutdown_components(components)
