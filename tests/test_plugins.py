"""
IXP Plugin System Tests

Lifecycle, dependency ordering, rollback, hooks and built-in plugins.
"""

import asyncio
from typing import List, Optional
from unittest.mock import AsyncMock

import pytest

from ixp.core.errors import (
    CyclicDependencyError,
    DependentExistsError,
    DuplicatePluginError,
    LifecycleTransitionError,
    MissingDependencyError,
    PluginLifecycleError,
    PluginNotFoundError,
)
from ixp.events import EventBus
from ixp.plugins import (
    DependencyGraph,
    HealthService,
    HealthStatus,
    HookSpec,
    HookSystem,
    LifecycleTracker,
    Plugin,
    PluginContext,
    PluginInfo,
    PluginManager,
    PluginState,
    can_transition,
    create_health_plugin,
    create_metrics_plugin,
)
from ixp.services import ServiceRegistry
from ixp.telemetry import MetricsService


# === Test Fixtures ===


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def services(events):
    return ServiceRegistry(event_bus=events)


@pytest.fixture
def manager(services, events):
    return PluginManager(services, events)


def make_plugin(
    name: str,
    dependencies: Optional[List[str]] = None,
    log: Optional[List[str]] = None,
    fail_install: bool = False,
    fail_start: bool = False,
    fail_stop: bool = False,
    **kwargs,
) -> Plugin:
    """Plugin that registers a service named after itself and logs its calls."""
    log = log if log is not None else []

    async def install(context: PluginContext) -> None:
        log.append(f"{name}.install")
        context.register_service(f"{name}.service", object())
        context.subscribe("request:completed", lambda payload: None)
        if fail_install:
            raise RuntimeError(f"{name} install failed")

    async def start() -> None:
        log.append(f"{name}.start")
        if fail_start:
            raise RuntimeError(f"{name} start failed")

    async def stop() -> None:
        log.append(f"{name}.stop")
        if fail_stop:
            raise RuntimeError(f"{name} stop failed")

    return Plugin(
        name=name,
        version="1.0.0",
        install=install,
        start=start,
        stop=stop,
        dependencies=dependencies or [],
        **kwargs,
    )


# === Lifecycle state machine ===


class TestLifecycle:
    """State table and tracker."""

    def test_forward_path(self):
        path = [
            PluginState.REGISTERED,
            PluginState.INITIALIZING,
            PluginState.INITIALIZED,
            PluginState.STARTING,
            PluginState.RUNNING,
            PluginState.STOPPING,
            PluginState.STOPPED,
        ]
        for current, target in zip(path, path[1:]):
            assert can_transition(current, target)

    def test_failed_reachable_from_non_terminal_states(self):
        for state in PluginState:
            expected = not state.is_terminal
            assert can_transition(state, PluginState.FAILED) is expected

    def test_no_backwards_transitions(self):
        assert not can_transition(PluginState.RUNNING, PluginState.STARTING)
        assert not can_transition(PluginState.STOPPED, PluginState.RUNNING)

    def test_tracker_rejects_illegal_transition(self):
        info = PluginInfo(plugin=make_plugin("a"))
        with pytest.raises(LifecycleTransitionError):
            LifecycleTracker().transition(info, PluginState.RUNNING)

    def test_tracker_fail_records_error(self):
        tracker = LifecycleTracker()
        info = PluginInfo(plugin=make_plugin("a"))
        tracker.transition(info, PluginState.INITIALIZING)
        tracker.fail(info, ValueError("bad config"))

        assert info.state == PluginState.FAILED
        assert info.last_error == "bad config"
        assert info.error_type == "ValueError"
        assert tracker.history("a") == [
            (PluginState.REGISTERED, PluginState.INITIALIZING),
            (PluginState.INITIALIZING, PluginState.FAILED),
        ]


# === Install / uninstall ===


class TestInstall:
    """Dependency-checked install."""

    @pytest.mark.asyncio
    async def test_install_reaches_running(self, manager, services):
        info = await manager.install(make_plugin("a"))
        assert info.state == PluginState.RUNNING
        assert services.owner_of("a.service") == "a"

    @pytest.mark.asyncio
    async def test_missing_dependency(self, manager):
        with pytest.raises(MissingDependencyError) as exc:
            await manager.install(make_plugin("b", dependencies=["a"]))
        assert exc.value.missing == ["a"]
        assert "b" not in manager

    @pytest.mark.asyncio
    async def test_dependency_then_dependent(self, manager):
        await manager.install(make_plugin("a"))
        await manager.install(make_plugin("b", dependencies=["a"]))
        assert manager.get_state("a") == PluginState.RUNNING
        assert manager.get_state("b") == PluginState.RUNNING

    @pytest.mark.asyncio
    async def test_duplicate_live_plugin(self, manager):
        await manager.install(make_plugin("a"))
        with pytest.raises(DuplicatePluginError):
            await manager.install(make_plugin("a"))

    @pytest.mark.asyncio
    async def test_reinstall_after_stop(self, manager):
        await manager.install(make_plugin("a"))
        await manager.uninstall("a")
        info = await manager.install(make_plugin("a"))
        assert info.state == PluginState.RUNNING

    @pytest.mark.asyncio
    @pytest.mark.parametrize("failure,operation", [
        ("fail_install", "install"),
        ("fail_start", "start"),
    ])
    async def test_failure_rolls_back(self, manager, services, events, failure, operation):
        hook = AsyncMock()
        plugin = make_plugin("a", hooks={"before_dispatch": hook}, **{failure: True})

        with pytest.raises(PluginLifecycleError) as exc:
            await manager.install(plugin)

        assert exc.value.operation == operation
        assert manager.get_state("a") == PluginState.FAILED
        assert manager.get("a").last_error == f"a {operation} failed"
        assert not services.has("a.service")
        assert events.subscriptions(owner="a") == []
        assert manager.hooks.get_handlers("before_dispatch") == []

    @pytest.mark.asyncio
    async def test_rollback_removes_registrations_made_through_context_views(
        self, manager, services, events
    ):
        ticks: List[object] = []

        async def install(context: PluginContext) -> None:
            context.service_registry.register("cache", object())
            context.event_bus.subscribe("tick", ticks.append)
            raise RuntimeError("cache warmup failed")

        with pytest.raises(PluginLifecycleError):
            await manager.install(Plugin(name="cache", version="1.0.0", install=install))

        await events.publish("tick", 1)
        assert not services.has("cache")
        assert events.subscriptions(owner="cache") == []
        assert ticks == []

    @pytest.mark.asyncio
    async def test_context_views_read_the_shared_registries(self, manager, services, events):
        services.register("config", {"region": "eu"})
        seen = {}

        async def install(context: PluginContext) -> None:
            seen["config"] = context.service_registry.get("config")
            seen["has"] = "config" in context.service_registry
            seen["published"] = await context.event_bus.publish("boot", None)

        await manager.install(Plugin(name="reader", version="1.0.0", install=install))
        assert seen == {"config": {"region": "eu"}, "has": True, "published": 0}

    @pytest.mark.asyncio
    async def test_lifecycle_events(self, manager, events):
        seen = []
        events.subscribe("plugin:*", lambda payload: seen.append(payload["name"]))

        await manager.install(make_plugin("a"))
        await manager.uninstall("a")
        with pytest.raises(PluginLifecycleError):
            await manager.install(make_plugin("b", fail_start=True))

        channels = [e.channel for e in events.get_history("plugin:*")]
        assert channels == ["plugin:installed", "plugin:uninstalled", "plugin:failed"]
        assert seen == ["a", "a", "b"]


class TestUninstall:
    """Dependents guard and stop failures."""

    @pytest.mark.asyncio
    async def test_dependent_blocks_uninstall(self, manager):
        await manager.install(make_plugin("a"))
        await manager.install(make_plugin("b", dependencies=["a"]))

        with pytest.raises(DependentExistsError) as exc:
            await manager.uninstall("a")
        assert exc.value.dependents == ["b"]
        assert manager.get_state("a") == PluginState.RUNNING

        await manager.uninstall("b")
        await manager.uninstall("a")
        assert manager.get_state("a") == PluginState.STOPPED

    @pytest.mark.asyncio
    async def test_uninstall_removes_registrations(self, manager, services, events):
        await manager.install(make_plugin("a"))
        await manager.uninstall("a")
        assert not services.has("a.service")
        assert events.subscriptions(owner="a") == []

    @pytest.mark.asyncio
    async def test_registrations_through_context_views_are_owned(self, manager, services, events):
        ticks: List[object] = []

        async def install(context: PluginContext) -> None:
            context.service_registry.register("cache", object())
            context.service_registry.register_factory("pool", list)
            context.event_bus.subscribe("tick", ticks.append)

        await manager.install(Plugin(name="cache", version="1.0.0", install=install))
        assert services.owner_of("cache") == "cache"
        assert services.owner_of("pool") == "cache"
        assert len(events.subscriptions(owner="cache")) == 1

        await manager.uninstall("cache")
        await events.publish("tick", 1)

        assert not services.has("cache")
        assert not services.has("pool")
        assert ticks == []

    @pytest.mark.asyncio
    async def test_stop_failure(self, manager, services):
        await manager.install(make_plugin("a", fail_stop=True))

        with pytest.raises(PluginLifecycleError):
            await manager.uninstall("a")
        assert manager.get_state("a") == PluginState.FAILED
        assert not services.has("a.service")

    @pytest.mark.asyncio
    async def test_uninstall_unknown(self, manager):
        with pytest.raises(PluginNotFoundError):
            await manager.uninstall("ghost")

    @pytest.mark.asyncio
    async def test_uninstall_stopped_is_noop(self, manager):
        log: List[str] = []
        await manager.install(make_plugin("a", log=log))
        await manager.uninstall("a")
        await manager.uninstall("a")
        assert log.count("a.stop") == 1

    @pytest.mark.asyncio
    async def test_remove(self, manager):
        await manager.install(make_plugin("a"))
        assert await manager.remove("a") is False
        await manager.uninstall("a")
        assert await manager.remove("a") is True
        assert "a" not in manager


# === Batch install and shutdown ===


class TestBatch:
    """Topological batch install and ordered shutdown."""

    @pytest.mark.asyncio
    async def test_topological_order(self, manager):
        log: List[str] = []
        plugins = [
            make_plugin("c", dependencies=["b"], log=log),
            make_plugin("b", dependencies=["a"], log=log),
            make_plugin("a", log=log),
        ]
        infos = await manager.install_all(plugins)

        assert [i.name for i in infos] == ["a", "b", "c"]
        assert [entry for entry in log if entry.endswith(".install")] == [
            "a.install", "b.install", "c.install",
        ]

    @pytest.mark.asyncio
    async def test_cycle_rejected_before_any_install(self, manager):
        log: List[str] = []
        plugins = [
            make_plugin("a", dependencies=["b"], log=log),
            make_plugin("b", dependencies=["a"], log=log),
        ]
        with pytest.raises(CyclicDependencyError):
            await manager.install_all(plugins)
        assert log == []
        assert len(manager) == 0

    @pytest.mark.asyncio
    async def test_failure_rolls_back_batch_in_reverse(self, manager, services):
        log: List[str] = []
        plugins = [
            make_plugin("a", log=log),
            make_plugin("b", dependencies=["a"], log=log),
            make_plugin("c", dependencies=["b"], log=log, fail_start=True),
        ]
        with pytest.raises(PluginLifecycleError):
            await manager.install_all(plugins)

        stops = [entry for entry in log if entry.endswith(".stop")]
        assert stops == ["b.stop", "a.stop"]
        assert manager.get_state("a") == PluginState.STOPPED
        assert manager.get_state("b") == PluginState.STOPPED
        assert manager.get_state("c") == PluginState.FAILED
        assert services.names() == []

    @pytest.mark.asyncio
    async def test_external_dependency_must_be_running(self, manager):
        with pytest.raises(MissingDependencyError):
            await manager.install_all([make_plugin("b", dependencies=["a"])])

    @pytest.mark.asyncio
    async def test_shutdown_stops_dependents_first(self, manager):
        log: List[str] = []
        await manager.install_all([
            make_plugin("a", log=log),
            make_plugin("b", dependencies=["a"], log=log),
            make_plugin("c", log=log),
        ])

        stopped = await manager.shutdown()

        assert set(stopped) == {"a", "b", "c"}
        assert log.index("b.stop") < log.index("a.stop")
        assert manager.running() == []


# === Dependency graph ===


class TestDependencyGraph:
    """Graph ordering and cycle detection."""

    def test_sort_is_deterministic(self):
        graph = DependencyGraph.from_dependencies({"x": [], "y": [], "z": ["x"]})
        assert graph.topological_sort() == ["x", "y", "z"]
        assert graph.topological_sort_reverse() == ["z", "y", "x"]

    def test_find_cycle(self):
        graph = DependencyGraph.from_dependencies({"a": ["c"], "b": ["a"], "c": ["b"]})
        cycle = graph.find_cycle()
        assert cycle[0] == cycle[-1]
        assert set(cycle) == {"a", "b", "c"}
        with pytest.raises(CyclicDependencyError):
            graph.topological_sort()

    def test_external_dependencies_ignored_by_default(self):
        graph = DependencyGraph.from_dependencies({"b": ["a"]})
        assert graph.nodes == ["b"]
        with_external = DependencyGraph.from_dependencies({"b": ["a"]}, include_external=True)
        assert with_external.topological_sort() == ["a", "b"]

    def test_transitive_dependents(self):
        graph = DependencyGraph.from_dependencies({"a": [], "b": ["a"], "c": ["b"]})
        assert graph.get_all_dependents("a") == {"b", "c"}
        graph.remove_node("b")
        assert graph.get_all_dependents("a") == set()


# === Hooks ===


class TestHooks:
    """Hook ordering and failure policy."""

    @pytest.mark.asyncio
    async def test_priority_order_ties_by_registration(self):
        hooks = HookSystem()
        hooks.register("render", "a", lambda: "a", priority=1)
        hooks.register("render", "b", lambda: "b", priority=5)
        hooks.register("render", "c", lambda: "c", priority=5)

        assert await hooks.run("render") == ["b", "c", "a"]

    @pytest.mark.asyncio
    async def test_optional_failure_is_skipped(self):
        hooks = HookSystem()

        async def broken():
            raise RuntimeError("optional")

        hooks.register("render", "a", broken, priority=10)
        hooks.register("render", "b", AsyncMock(return_value=2))

        assert await hooks.run("render") == [2]
        assert hooks.get_stats("render")["errors"] == 1

    @pytest.mark.asyncio
    async def test_required_failure_propagates(self):
        hooks = HookSystem()
        later = AsyncMock()
        hooks.register("render", "a", AsyncMock(side_effect=ValueError("required")), required=True)
        hooks.register("render", "b", later, priority=-1)

        with pytest.raises(ValueError):
            await hooks.run("render")
        later.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_arguments_are_forwarded(self, manager):
        handler = AsyncMock(return_value="ok")
        plugin = make_plugin("a", hooks={"on_request": HookSpec(handler, required=True)})
        await manager.install(plugin)

        assert await manager.run_hook("on_request", "ctx", flag=True) == ["ok"]
        handler.assert_awaited_once_with("ctx", flag=True)

    @pytest.mark.asyncio
    async def test_unknown_hook(self):
        assert await HookSystem().run("nothing") == []


# === Health ===


class TestHealth:
    """Health checks and built-in plugins."""

    @pytest.mark.asyncio
    async def test_health_check(self, manager):
        plugin = make_plugin("a", health=AsyncMock(return_value={"status": "degraded"}))
        await manager.install(plugin)
        assert (await manager.check_health("a")).status == HealthStatus.DEGRADED

    @pytest.mark.asyncio
    async def test_raising_health_check_is_unhealthy(self, manager):
        plugin = make_plugin("a", health=AsyncMock(side_effect=ConnectionError("db down")))
        await manager.install(plugin)
        health = await manager.check_health("a")
        assert health.status == HealthStatus.UNHEALTHY
        assert health.message == "db down"

    @pytest.mark.asyncio
    async def test_stopped_plugin_is_unhealthy(self, manager):
        await manager.install(make_plugin("a"))
        await manager.uninstall("a")
        assert (await manager.check_health("a")).status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_health_service_aggregates(self):
        service = HealthService({
            "db": AsyncMock(return_value={"status": "pass"}),
            "cache": AsyncMock(return_value={"status": "warn"}),
        })
        report = await service.run()
        assert report["status"] == "degraded"
        assert report["checks"]["db"]["status"] == "healthy"

        service.add_check("queue", AsyncMock(side_effect=TimeoutError()))
        assert (await service.run())["status"] == "unhealthy"

    @pytest.mark.asyncio
    async def test_health_plugin_registers_service(self, manager, services):
        await manager.install(create_health_plugin({"ok": AsyncMock(return_value=True)}))
        assert isinstance(services.get("health"), HealthService)
        assert (await manager.check_health("health")).status == HealthStatus.HEALTHY

    @pytest.mark.asyncio
    async def test_metrics_plugin_records_completions(self, manager, events, services):
        metrics = MetricsService()
        await manager.install(create_metrics_plugin(metrics))

        await events.publish("request:completed", {
            "intent": "get_weather", "success": False,
            "duration_ms": 12.5, "error_kind": "ValidationError",
        })

        assert services.get("metrics") is metrics
        snapshot = metrics.get_metrics()
        assert snapshot["requests"]["by_intent"] == {"get_weather": 1}
        assert snapshot["errors"]["by_kind"] == {"ValidationError": 1}

        await manager.uninstall("metrics")
        await events.publish("request:completed", {"intent": "x", "success": True})
        assert metrics.get_summary()["total_requests"] == 1


# === Concurrency ===


class TestSerialization:
    """Concurrent operations on one manager are serialized."""

    @pytest.mark.asyncio
    async def test_concurrent_installs_do_not_interleave(self, manager):
        log: List[str] = []

        def slow_plugin(name):
            async def install(context):
                log.append(f"{name}.begin")
                await asyncio.sleep(0.01)
                log.append(f"{name}.end")
            return Plugin(name=name, version="1.0.0", install=install)

        await asyncio.gather(manager.install(slow_plugin("a")), manager.install(slow_plugin("b")))
        assert log in (
            ["a.begin", "a.end", "b.begin", "b.end"],
            ["b.begin", "b.end", "a.begin", "a.end"],
        )
