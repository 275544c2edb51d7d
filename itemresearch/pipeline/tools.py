"""Research tool boundary.

Nodes never talk to tools directly; they go through a ``ToolInvoker``:

- ``ToolRegistry`` dispatches to in-process callables.
- ``HttpToolInvoker`` posts to a tool gateway (``POST {base}/tools/{name}``).
- ``TimedToolInvoker`` wraps either one with the node deadline and records
  every call for the activity log.

All failures surface as ``ToolInvocationError``.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

from itemresearch.activity.activity_log import summarize_payload
from itemresearch.core.errors import ToolInvocationError
from itemresearch.core.settings import get_settings
from itemresearch.pipeline.schemas import ToolCallRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolResult:
    output: dict[str, Any] = field(default_factory=dict)
    cost_usd: float = 0.0
    confidence: float | None = None


class ToolInvoker(Protocol):
    def invoke(self, tool_name: str, payload: dict[str, Any]) -> ToolResult: ...


ToolFn = Callable[[dict[str, Any]], ToolResult | dict[str, Any]]


class ToolRegistry:
    """Name -> callable registry for in-process tools."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolFn] = {}

    def register(self, name: str, fn: ToolFn) -> None:
        self._tools[name] = fn

    def names(self) -> list[str]:
        return sorted(self._tools)

    def invoke(self, tool_name: str, payload: dict[str, Any]) -> ToolResult:
        fn = self._tools.get(tool_name)
        if fn is None:
            raise ToolInvocationError(tool_name, "tool is not registered")
        try:
            result = fn(payload)
        except ToolInvocationError:
            raise
        except Exception as exc:
            raise ToolInvocationError(tool_name, f"{type(exc).__name__}: {exc}") from exc
        if isinstance(result, ToolResult):
            return result
        return ToolResult(output=dict(result))


class HttpToolInvoker:
    """Synchronous client for a remote tool gateway.

    The gateway answers ``{"output": {...}, "cost_usd": float, "confidence": float}``.
    """

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_s: float | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.tool_gateway_url).rstrip("/")
        self.timeout_s = timeout_s if timeout_s is not None else settings.tool_timeout_s
        self._client = client or httpx.Client(timeout=self.timeout_s)

    def invoke(self, tool_name: str, payload: dict[str, Any]) -> ToolResult:
        try:
            response = self._client.post(f"{self.base_url}/tools/{tool_name}", json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise ToolInvocationError(tool_name, f"gateway timed out after {self.timeout_s}s", timed_out=True) from exc
        except httpx.ConnectError as exc:
            raise ToolInvocationError(tool_name, f"cannot connect to tool gateway at {self.base_url}") from exc
        except httpx.HTTPError as exc:
            raise ToolInvocationError(tool_name, f"gateway HTTP error: {exc}") from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise ToolInvocationError(tool_name, "gateway returned a non-JSON body") from exc
        if not isinstance(data, dict):
            raise ToolInvocationError(tool_name, "gateway returned an unexpected body")
        return ToolResult(
            output=data.get("output") or {},
            cost_usd=float(data.get("cost_usd") or 0.0),
            confidence=data.get("confidence"),
        )

    def close(self) -> None:
        self._client.close()


class TimedToolInvoker:
    """Per-node view of an invoker: enforces the node deadline and records calls.

    *timeout_s* bounds the whole node attempt, not each call: every call gets
    only the time left before the deadline.  A call that runs past it raises
    ``ToolInvocationError`` with ``timed_out=True``; the underlying call keeps
    its pool thread until it returns, but its result is discarded.
    """

    def __init__(self, inner: ToolInvoker, timeout_s: float, pool: ThreadPoolExecutor) -> None:
        self._inner = inner
        self._timeout_s = timeout_s
        self._pool = pool
        self._deadline = time.monotonic() + timeout_s
        self.calls: list[ToolCallRecord] = []

    def remaining(self) -> float:
        return self._deadline - time.monotonic()

    def check_deadline(self, label: str) -> None:
        """Raise a timeout if the node has used up its time."""
        if self.remaining() <= 0:
            raise ToolInvocationError(label, f"node exceeded its {self._timeout_s}s timeout", timed_out=True)

    def invoke(self, tool_name: str, payload: dict[str, Any]) -> ToolResult:
        start = time.monotonic()
        remaining = self.remaining()
        if remaining <= 0:
            error = ToolInvocationError(tool_name, f"timed out after {self._timeout_s}s", timed_out=True)
            self._record(tool_name, payload, start, error=error)
            raise error

        future = self._pool.submit(self._inner.invoke, tool_name, payload)
        try:
            result = future.result(timeout=remaining)
        except FutureTimeoutError as exc:
            future.cancel()
            error = ToolInvocationError(tool_name, f"timed out after {self._timeout_s}s", timed_out=True)
            self._record(tool_name, payload, start, error=error)
            raise error from exc
        except ToolInvocationError as exc:
            self._record(tool_name, payload, start, error=exc)
            raise
        except Exception as exc:
            error = ToolInvocationError(tool_name, f"{type(exc).__name__}: {exc}")
            self._record(tool_name, payload, start, error=error)
            raise error from exc

        self._record(tool_name, payload, start, result=result)
        return result

    def _record(
        self,
        tool_name: str,
        payload: dict[str, Any],
        start: float,
        result: ToolResult | None = None,
        error: ToolInvocationError | None = None,
    ) -> None:
        elapsed_ms = int((time.monotonic() - start) * 1000)
        confidence = None
        if result is not None and result.confidence is not None:
            confidence = min(1.0, max(0.0, float(result.confidence)))
        self.calls.append(
            ToolCallRecord(
                tool_name=tool_name,
                succeeded=error is None,
                duration_ms=elapsed_ms,
                cost_usd=result.cost_usd if result is not None else 0.0,
                confidence=confidence,
                input_summary=summarize_payload(payload),
                output_summary=summarize_payload(result.output) if result is not None else "",
                error=str(error) if error is not None else None,
                timed_out=bool(error and error.timed_out),
            )
        )
        if error is not None:
            logger.warning("Tool call failed: tool=%s elapsed_ms=%d timed_out=%s", tool_name, elapsed_ms, error.timed_out)
