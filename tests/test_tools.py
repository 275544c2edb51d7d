"""Tests for itemresearch/pipeline/tools.py — the research tool boundary."""
from __future__ import annotations

import json
import time
from concurrent.futures import ThreadPoolExecutor

import httpx
import pytest

from itemresearch.core.errors import ToolInvocationError
from itemresearch.pipeline.tools import HttpToolInvoker, TimedToolInvoker, ToolRegistry, ToolResult


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture()
def pool():
    pool = ThreadPoolExecutor(max_workers=2)
    yield pool
    pool.shutdown(wait=False)


def _gateway(handler) -> HttpToolInvoker:
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpToolInvoker(base_url="http://gateway.test/", timeout_s=5.0, client=client)


# ===========================================================================
# ToolRegistry
# ===========================================================================

class TestToolRegistry:
    def test_dispatches_by_name(self):
        registry = ToolRegistry()
        registry.register("pricing", lambda payload: ToolResult(output={"target": payload["x"]}, confidence=0.5))

        result = registry.invoke("pricing", {"x": 10})

        assert result.output == {"target": 10}
        assert result.confidence == 0.5

    def test_plain_dict_becomes_result(self):
        registry = ToolRegistry()
        registry.register("item_context", lambda payload: {"item": {"sku": "A"}})

        result = registry.invoke("item_context", {})

        assert result == ToolResult(output={"item": {"sku": "A"}})

    def test_unregistered_tool(self):
        with pytest.raises(ToolInvocationError, match="not registered"):
            ToolRegistry().invoke("vision_analysis", {})

    def test_exceptions_are_wrapped(self):
        def broken(payload):
            raise ConnectionResetError("peer went away")

        registry = ToolRegistry()
        registry.register("comp_search", broken)

        with pytest.raises(ToolInvocationError) as exc_info:
            registry.invoke("comp_search", {})

        assert exc_info.value.tool_name == "comp_search"
        assert "ConnectionResetError" in str(exc_info.value)

    def test_names_sorted(self):
        registry = ToolRegistry()
        registry.register("pricing", dict)
        registry.register("comp_search", dict)

        assert registry.names() == ["comp_search", "pricing"]


# ===========================================================================
# HttpToolInvoker
# ===========================================================================

class TestHttpToolInvoker:
    def test_posts_payload_and_parses_result(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"output": {"comps": []}, "cost_usd": 0.04, "confidence": 0.6})

        result = _gateway(handler).invoke("comp_search", {"known_fields": {"brand": "Canon"}})

        assert seen["url"] == "http://gateway.test/tools/comp_search"
        assert seen["body"] == {"known_fields": {"brand": "Canon"}}
        assert result == ToolResult(output={"comps": []}, cost_usd=0.04, confidence=0.6)

    def test_timeout_is_flagged(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        with pytest.raises(ToolInvocationError) as exc_info:
            _gateway(handler).invoke("vision_analysis", {})

        assert exc_info.value.timed_out is True

    def test_connection_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ToolInvocationError, match="cannot connect"):
            _gateway(handler).invoke("vision_analysis", {})

    def test_http_error_status(self):
        with pytest.raises(ToolInvocationError, match="HTTP error") as exc_info:
            _gateway(lambda request: httpx.Response(503, text="overloaded")).invoke("pricing", {})

        assert exc_info.value.timed_out is False

    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>oops</html>"),
        httpx.Response(200, json=["not", "a", "mapping"]),
    ])
    def test_unexpected_body(self, response):
        with pytest.raises(ToolInvocationError, match="gateway returned"):
            _gateway(lambda request: response).invoke("pricing", {})


# ===========================================================================
# TimedToolInvoker
# ===========================================================================

class TestTimedToolInvoker:
    def test_records_successful_call(self, pool):
        registry = ToolRegistry()
        registry.register("pricing", lambda payload: ToolResult(output={"target": 130.0}, cost_usd=0.01, confidence=1.4))
        invoker = TimedToolInvoker(registry, 5.0, pool)

        invoker.invoke("pricing", {"known_fields": {}})

        [call] = invoker.calls
        assert call.tool_name == "pricing"
        assert call.succeeded is True
        assert call.cost_usd == 0.01
        assert call.confidence == 1.0
        assert call.output_summary == '{"target": 130.0}'

    def test_timeout_raises_and_records(self, pool):
        registry = ToolRegistry()
        registry.register("comp_search", lambda payload: time.sleep(1.0) or {"comps": []})
        invoker = TimedToolInvoker(registry, 0.05, pool)

        with pytest.raises(ToolInvocationError) as exc_info:
            invoker.invoke("comp_search", {})

        assert exc_info.value.timed_out is True
        [call] = invoker.calls
        assert call.succeeded is False
        assert call.timed_out is True
        assert "timed out after 0.05s" in call.error

    def test_calls_share_one_deadline(self, pool):
        registry = ToolRegistry()
        registry.register("comp_search", lambda payload: time.sleep(0.3) or {"comps": []})
        invoker = TimedToolInvoker(registry, 0.5, pool)

        invoker.invoke("comp_search", {})
        with pytest.raises(ToolInvocationError) as exc_info:
            invoker.invoke("comp_search", {})

        assert exc_info.value.timed_out is True
        assert [call.succeeded for call in invoker.calls] == [True, False]
        assert invoker.remaining() < 0.05

    def test_check_deadline_after_time_is_up(self, pool):
        invoker = TimedToolInvoker(ToolRegistry(), 0.01, pool)
        time.sleep(0.05)

        with pytest.raises(ToolInvocationError) as exc_info:
            invoker.check_deadline("load_context")
        assert exc_info.value.timed_out is True

    def test_tool_error_recorded(self, pool):
        invoker = TimedToolInvoker(ToolRegistry(), 5.0, pool)

        with pytest.raises(ToolInvocationError):
            invoker.invoke("missing_tool", {"a": 1})

        [call] = invoker.calls
        assert call.succeeded is False
        assert call.timed_out is False
        assert call.input_summary == '{"a": 1}'

    def test_non_tool_exception_is_wrapped(self, pool):
        class Exploding:
            def invoke(self, tool_name, payload):
                raise RuntimeError("bad adapter")

        invoker = TimedToolInvoker(Exploding(), 5.0, pool)

        with pytest.raises(ToolInvocationError, match="RuntimeError"):
            invoker.invoke("pricing", {})
        assert invoker.calls[0].succeeded is False
