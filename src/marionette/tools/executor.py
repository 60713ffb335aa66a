"""
Tool Executor — runs tool calls and normalizes their outcome.

The bridge between a turn and the tool registry:
1. The turn hands over a ToolCallRequest
2. The executor looks the tool up and runs it
3. Whatever happens (unknown name, exception, failure envelope, plain
   value) comes back as exactly one ToolResult with the request's call_id

A failing tool never aborts the turn. There is no sandboxing: tools may
do anything, the executor only guarantees the result shape.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Sequence

from marionette.core.metrics import metrics
from marionette.llm.contracts import ToolCallRequest, ToolResult
from marionette.llm.errors import ErrorKind
from marionette.tools.registry import ToolHandlerLookup

logger = logging.getLogger(__name__)


class ToolExecutor:
    """Executes ToolCallRequests against a ToolHandlerLookup."""

    async def execute(
        self, request: ToolCallRequest, registry: ToolHandlerLookup
    ) -> ToolResult:
        """
        Execute one tool call.

        Returns:
            ToolResult — ok with data, or failed with kind unknown_tool /
            tool_error. Never raises for handler failures.
        """
        tool = registry.find(request.name)
        if tool is None:
            logger.warning(
                f"Unknown tool requested: {request.name}",
                extra={"call_id": request.call_id, "tool": request.name},
            )
            metrics.inc("tool.errors", labels={"kind": ErrorKind.UNKNOWN_TOOL.value})
            return ToolResult.failed(
                request.call_id,
                ErrorKind.UNKNOWN_TOOL,
                f"Unknown tool: {request.name}",
                name=request.name,
                tool=request.name,
            )

        logger.info(
            f"Tool: {request.name}({', '.join(request.arguments.keys())})",
            extra={"call_id": request.call_id, "tool": request.name},
        )
        metrics.inc("tool.calls", labels={"tool": request.name})
        started = time.monotonic()

        try:
            raw = await tool(dict(request.arguments))
        except asyncio.CancelledError:
            raise
        except ValueError as e:
            result = self._failure(request, f"Invalid arguments: {e}")
        except Exception as e:
            logger.error(
                f"Tool '{request.name}' failed: {e}",
                exc_info=True,
                extra={"call_id": request.call_id, "tool": request.name},
            )
            result = self._failure(request, f"Tool error: {e}")
        else:
            result = self._normalize(request, raw)

        metrics.observe(
            "tool.duration_ms",
            (time.monotonic() - started) * 1000,
            labels={"tool": request.name},
        )
        return result

    async def execute_batch(
        self,
        requests: Sequence[ToolCallRequest],
        registry: ToolHandlerLookup,
    ) -> list[ToolResult]:
        """
        Execute every call concurrently, one task per call.

        Waits for the whole batch; results come back in request order.
        """
        tasks = [
            asyncio.create_task(
                self.execute(request, registry), name=f"tool-{request.call_id}"
            )
            for request in requests
        ]
        if not tasks:
            return []
        try:
            return list(await asyncio.gather(*tasks))
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            raise

    # ─── Internal ────────────────────────────────────────────────

    def _normalize(self, request: ToolCallRequest, raw: Any) -> ToolResult:
        """Map a handler's return value onto a ToolResult.

        {"ok": bool, "data"/"error": ...} envelopes are unwrapped; anything
        else is treated as successful data.
        """
        if isinstance(raw, ToolResult):
            return ToolResult(
                call_id=request.call_id,
                ok=raw.ok,
                data=raw.data,
                error=raw.error,
                name=request.name,
            )
        if isinstance(raw, dict) and isinstance(raw.get("ok"), bool):
            if raw["ok"]:
                return ToolResult.success(request.call_id, raw.get("data"), request.name)
            error = raw.get("error")
            message = error if isinstance(error, str) else str(error or "Tool failed")
            return self._failure(request, message)
        return ToolResult.success(request.call_id, raw, request.name)

    def _failure(self, request: ToolCallRequest, message: str) -> ToolResult:
        metrics.inc("tool.errors", labels={"kind": ErrorKind.TOOL_ERROR.value})
        return ToolResult.failed(
            request.call_id, ErrorKind.TOOL_ERROR, message, name=request.name
        )
