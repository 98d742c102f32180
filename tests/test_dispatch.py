"""
IXP Request Dispatcher Tests
"""

import asyncio

import pytest
from structlog.testing import capture_logs

from ixp.core.errors import AuthenticationError, ParameterValidationError
from ixp.dispatch import REQUEST_COMPLETED, DispatchRequest, DispatchResult, RequestDispatcher
from ixp.events import EventBus
from ixp.intents import (
    AliasIntentMatcher,
    ComponentRegistry,
    IntentDefinition,
    IntentRegistry,
    ParameterValidator,
)
from ixp.middleware import MiddlewarePhase, MiddlewarePipeline
from ixp.services import ServiceRegistry


# === Test Fixtures ===


WEATHER = {
    "name": "get_weather",
    "component": "weather-card",
    "description": "Current weather for a location",
    "parameters": {
        "type": "object",
        "properties": {
            "location": {"type": "string", "minLength": 1},
            "units": {"type": "string", "enum": ["metric", "imperial"], "default": "metric"},
        },
        "required": ["location"],
    },
}


@pytest.fixture
def bus():
    return EventBus()


@pytest.fixture
def intents():
    registry = IntentRegistry()
    registry.register(WEATHER)
    return registry


@pytest.fixture
def pipeline():
    return MiddlewarePipeline(default_timeout=0)


@pytest.fixture
def dispatcher(intents, pipeline, bus):
    return RequestDispatcher(
        intents,
        pipeline,
        services=ServiceRegistry(event_bus=bus),
        events=bus,
    )


# === End to end ===


class TestDispatch:
    """Resolution, validation and handler invocation."""

    @pytest.mark.asyncio
    async def test_missing_required_parameter(self, dispatcher):
        result = await dispatcher.dispatch(DispatchRequest("get_weather", {}))

        assert not result.success
        assert result.error_kind == "ValidationError"
        data = result.to_dict()
        assert data["success"] is False
        assert data["errorKind"] == "ValidationError"
        assert data["details"]["errors"][0]["path"] == "location"

    @pytest.mark.asyncio
    async def test_valid_request_echoes_normalized_parameters(self, dispatcher):
        result = await dispatcher.dispatch(
            DispatchRequest("get_weather", {"location": "NYC", "extra": True})
        )

        assert result.success
        assert result.to_dict() == {
            "success": True,
            "component": "weather-card",
            "data": {"location": "NYC", "units": "metric"},
        }

    @pytest.mark.asyncio
    async def test_unknown_intent(self, dispatcher):
        result = await dispatcher.dispatch(DispatchRequest("get_stock_price"))
        assert result.error_kind == "NotFoundError"
        assert result.component is None

    @pytest.mark.asyncio
    async def test_dict_request(self, dispatcher):
        result = await dispatcher.dispatch({
            "intentName": "get_weather",
            "parameters": {"location": "Oslo"},
            "requestId": "req-1",
        })
        assert result.success
        assert result.request_id == "req-1"

    @pytest.mark.asyncio
    async def test_dict_request_without_intent_name(self, dispatcher):
        result = await dispatcher.dispatch({"parameters": {}})
        assert result.error_kind == "ValidationError"
        assert result.to_dict()["details"]["errors"][0]["path"] == "intentName"

    def test_from_dict_rejects_bad_shapes(self):
        with pytest.raises(ParameterValidationError) as exc:
            DispatchRequest.from_dict({"intent": "x", "parameters": [], "metadata": "m"})
        assert [issue.path for issue in exc.value.issues] == ["parameters", "metadata"]

    def test_constructor_rejects_non_object_parameters(self):
        with pytest.raises(ParameterValidationError) as exc:
            DispatchRequest("get_weather", parameters=[1, 2])
        assert [issue.path for issue in exc.value.issues] == ["parameters"]
        assert exc.value.details["intent"] == "get_weather"

    def test_constructor_defaults_missing_bags(self):
        request = DispatchRequest("get_weather", parameters=None, metadata=None)
        assert request.parameters == {}
        assert request.metadata == {}

    @pytest.mark.asyncio
    async def test_matcher_consulted_before_exact_lookup(self, intents, pipeline):
        dispatcher = RequestDispatcher(
            intents, pipeline, matcher=AliasIntentMatcher({"forecast": "get_weather"}),
        )
        result = await dispatcher.dispatch(DispatchRequest("forecast", {"location": "Rome"}))
        assert result.success
        assert result.intent == "get_weather"

    @pytest.mark.asyncio
    async def test_coercing_validator(self, intents, pipeline):
        intents.register({
            "name": "list_items",
            "component": "item-list",
            "parameters": {"type": "object", "properties": {"limit": {"type": "integer"}}},
        })
        dispatcher = RequestDispatcher(intents, pipeline, validator=ParameterValidator(coerce=True))

        result = await dispatcher.dispatch(DispatchRequest("list_items", {"limit": "5"}))
        assert result.data == {"limit": 5}


# === Handlers ===


class TestHandlers:
    """Handler references."""

    @pytest.mark.asyncio
    async def test_string_ref_sync_handler(self, dispatcher, intents):
        intents.register({"name": "ping", "component": "pong", "handlerRef": "health.ping"})
        dispatcher.register_handler("health.ping", lambda params, ctx: {"pong": ctx.intent.name})

        result = await dispatcher.dispatch(DispatchRequest("ping"))
        assert result.data == {"pong": "ping"}

    @pytest.mark.asyncio
    async def test_callable_ref_async_handler(self, dispatcher, intents):
        async def forecast(params, ctx):
            await asyncio.sleep(0)
            return {"location": params["location"], "temp": 21}

        intents.register(IntentDefinition(
            name="forecast",
            component="forecast-card",
            parameters=WEATHER["parameters"],
            handler_ref=forecast,
        ))

        result = await dispatcher.dispatch(DispatchRequest("forecast", {"location": "Lima"}))
        assert result.data == {"location": "Lima", "temp": 21}
        assert result.component == "forecast-card"

    @pytest.mark.asyncio
    async def test_handler_sees_services(self, dispatcher, intents):
        dispatcher.services.register("greeting", "hello")
        intents.register({"name": "greet", "component": "text", "handlerRef": "greet"})
        dispatcher.register_handler("greet", lambda params, ctx: ctx.services.require("greeting"))

        result = await dispatcher.dispatch(DispatchRequest("greet"))
        assert result.data == "hello"

    @pytest.mark.asyncio
    async def test_unregistered_ref_hides_details(self, dispatcher, intents):
        intents.register({"name": "ping", "component": "pong", "handlerRef": "missing"})

        result = await dispatcher.dispatch(DispatchRequest("ping"))
        assert result.error_kind == "InternalError"
        assert "details" not in result.to_dict()

    @pytest.mark.asyncio
    async def test_debug_exposes_internal_details(self, intents, pipeline):
        intents.register({"name": "ping", "component": "pong", "handlerRef": "missing"})
        dispatcher = RequestDispatcher(intents, pipeline, debug=True)

        result = await dispatcher.dispatch(DispatchRequest("ping"))
        assert result.to_dict()["details"]["handler_ref"] == "missing"

    def test_handler_table(self, dispatcher):
        dispatcher.register_handler("a", lambda p, c: None)
        with pytest.raises(ValueError):
            dispatcher.register_handler("a", lambda p, c: None)
        with pytest.raises(TypeError):
            dispatcher.register_handler("b", "nope")

        dispatcher.register_handler("a", lambda p, c: 1, override=True)
        assert dispatcher.handler_refs() == ["a"]
        assert dispatcher.unregister_handler("a") is True
        assert dispatcher.unregister_handler("a") is False


# === Components and data providers ===


WEATHER_CARD = {
    "framework": "react",
    "remoteUrl": "https://cdn.example.com/weather.js",
    "exportName": "WeatherCard",
    "version": "1.0.0",
    "propsSchema": {"type": "object", "properties": {"location": {"type": "string"}}},
    "allowedOrigins": ["*"],
}


class TestComponents:
    """Component existence checks and extra handler data."""

    @pytest.mark.asyncio
    async def test_missing_component_is_not_found(self, intents, pipeline):
        dispatcher = RequestDispatcher(intents, pipeline, components=ComponentRegistry())

        result = await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))

        assert result.error_kind == "ComponentNotFoundError"
        assert result.error.status_code == 404
        assert result.to_dict()["details"]["component"] == "weather-card"

    @pytest.mark.asyncio
    async def test_registered_component_passes(self, intents, pipeline):
        components = ComponentRegistry({"weather-card": WEATHER_CARD})
        dispatcher = RequestDispatcher(intents, pipeline, components=components)

        result = await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))
        assert result.success
        assert result.component == "weather-card"

    @pytest.mark.asyncio
    async def test_deprecated_component_warns(self, intents, pipeline):
        components = ComponentRegistry({"weather-card": {**WEATHER_CARD, "deprecated": True}})
        dispatcher = RequestDispatcher(intents, pipeline, components=components)

        with capture_logs() as logs:
            result = await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))

        assert result.success
        warnings = [entry for entry in logs if entry["log_level"] == "warning"]
        assert warnings[0]["event"] == "Resolved deprecated component"
        assert warnings[0]["component"] == "weather-card"

    @pytest.mark.asyncio
    async def test_data_provider_merges_over_parameters(self, intents, pipeline):
        class Forecasts:
            async def resolve_intent_data(self, intent, parameters, context):
                return {"units": "imperial", "temperature": 71}

        dispatcher = RequestDispatcher(intents, pipeline, data_provider=Forecasts())

        result = await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))
        assert result.data == {"location": "NYC", "units": "imperial", "temperature": 71}

    @pytest.mark.asyncio
    async def test_failing_data_provider_is_ignored(self, intents, pipeline):
        class Broken:
            def resolve_intent_data(self, intent, parameters, context):
                raise ConnectionError("upstream down")

        dispatcher = RequestDispatcher(intents, pipeline, data_provider=Broken())

        with capture_logs() as logs:
            result = await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))

        assert result.data == {"location": "NYC", "units": "metric"}
        assert any(entry["event"] == "Intent data provider failed" for entry in logs)


# === Middleware integration ===


class TestMiddlewareIntegration:
    """The pipeline around the dispatcher."""

    @pytest.mark.asyncio
    async def test_auth_rejection_after_logging(self, dispatcher, pipeline):
        log = []

        async def log_mw(ctx, next):
            log.append("log:before")
            await next()
            log.append("log:after")

        async def auth_mw(ctx, next):
            if "token" not in ctx.metadata:
                raise AuthenticationError()
            await next()

        pipeline.use("log", log_mw, order=1)
        pipeline.use("auth", auth_mw, order=2)

        result = await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))

        assert result.error_kind == "AuthenticationError"
        assert log == ["log:before"]

    @pytest.mark.asyncio
    async def test_not_found_reaches_error_phase(self, dispatcher, pipeline):
        async def fallback(ctx, next):
            ctx.response = {"suggestion": "get_weather"}

        pipeline.use("fallback", fallback, phase=MiddlewarePhase.ERROR)

        result = await dispatcher.dispatch(DispatchRequest("weather"))
        assert result.success
        assert result.recovered
        assert result.data == {"suggestion": "get_weather"}
        assert dispatcher.get_stats()["recovered"] == 1

    @pytest.mark.asyncio
    async def test_response_middleware_sees_resolved_intent(self, dispatcher, pipeline):
        async def stamp(ctx, next):
            ctx.response = {**ctx.response, "component": ctx.intent.component}
            await next()

        pipeline.use("stamp", stamp, phase=MiddlewarePhase.RESPONSE)

        result = await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))
        assert result.data["component"] == "weather-card"

    @pytest.mark.asyncio
    async def test_timeout(self, dispatcher, intents, pipeline):
        async def hang(params, ctx):
            await asyncio.Event().wait()

        intents.register({"name": "slow", "component": "spinner", "handlerRef": "slow"})
        dispatcher.register_handler("slow", hang)

        try:
            result = await dispatcher.dispatch(DispatchRequest("slow"), timeout=0.05)
            assert result.error_kind == "TimeoutError"
        finally:
            await pipeline.aclose()


# === Events and stats ===


class TestCompletion:
    """request:completed and counters."""

    @pytest.mark.asyncio
    async def test_completion_event(self, dispatcher, bus):
        completed = []
        bus.subscribe(REQUEST_COMPLETED, completed.append)

        await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}, request_id="r1"))
        await dispatcher.dispatch(DispatchRequest("unknown", request_id="r2"))

        assert [(e["request_id"], e["success"], e["error_kind"]) for e in completed] == [
            ("r1", True, None),
            ("r2", False, "NotFoundError"),
        ]

    @pytest.mark.asyncio
    async def test_stats(self, dispatcher):
        await dispatcher.dispatch(DispatchRequest("get_weather", {"location": "NYC"}))
        await dispatcher.dispatch(DispatchRequest("get_weather", {}))
        await dispatcher.dispatch(DispatchRequest("get_weather", {}))

        stats = dispatcher.get_stats()
        assert stats["dispatched"] == 3
        assert stats["succeeded"] == 1
        assert stats["failed"] == 2
        assert stats["errors_by_kind"] == {"ValidationError": 2}

    def test_failure_shape(self):
        result = DispatchResult(
            success=False,
            request_id="r",
            intent="x",
            error=AuthenticationError(details={"realm": "api"}),
        )
        assert result.to_dict() == {
            "success": False,
            "errorKind": "AuthenticationError",
            "message": "Authentication required",
        }
