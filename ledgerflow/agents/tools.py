"""Named tool registry used by the reasoning loop."""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

from .models import ToolContext, ToolResult

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any], ToolContext], Awaitable[ToolResult]]


class ToolSpec(BaseModel):
    """Description of a tool as shown to the reasoning service."""

    name: str
    description: str
    input_schema: Dict[str, str] = Field(default_factory=dict)


class ToolRegistry:
    """Dispatches a named tool call to its registered handler.

    Handler errors never escape ``execute``; they come back as a failed
    ``ToolResult`` so the loop can record them as a failed step.
    """

    def __init__(self) -> None:
        self._handlers: Dict[str, ToolHandler] = {}
        self._specs: Dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        handler: ToolHandler,
        description: str = "",
        input_schema: Optional[Dict[str, str]] = None,
    ) -> None:
        if name in self._handlers:
            logger.debug(f"Replacing tool handler for {name}")
        self._handlers[name] = handler
        self._specs[name] = ToolSpec(
            name=name, description=description, input_schema=input_schema or {}
        )

    def tool(
        self,
        name: str,
        description: str = "",
        input_schema: Optional[Dict[str, str]] = None,
    ) -> Callable[[ToolHandler], ToolHandler]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: ToolHandler) -> ToolHandler:
            self.register(name, handler, description, input_schema)
            return handler

        return decorator

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def specs(self) -> List[ToolSpec]:
        return list(self._specs.values())

    async def execute(
        self, name: str, tool_input: Optional[Dict[str, Any]], context: ToolContext
    ) -> ToolResult:
        handler = self._handlers.get(name)
        if handler is None:
            return ToolResult(success=False, error=f"Unknown tool: {name}")

        started = time.monotonic()
        try:
            result = await handler(tool_input or {}, context)
        except Exception as e:
            logger.warning(
                f"Tool {name} raised for execution {context.execution_id}: {e}"
            )
            result = ToolResult(success=False, error=f"{name} failed: {e}")
        if not result.duration_ms:
            result.duration_ms = int((time.monotonic() - started) * 1000)
        return result
