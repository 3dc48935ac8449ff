"""
Event handler registry and the built-in handlers for langgraph stream events.

A handler is any object with an async `handle(event, data, metadata, graph)`
method. Run steps, deltas and tool completions emitted by the graph, as well
as the raw `on_chat_model_stream`/`on_tool_end`/`on_chat_model_end` events of
the event stream, are routed through one registry per run.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)


class EventHandler(Protocol):
    async def handle(self, event: str, data: Any, metadata: Optional[Dict[str, Any]] = None, graph: Any = None) -> None:
        ...


class HandlerRegistry:
    """Maps event names to handlers"""

    def __init__(self):
        self.handlers: Dict[str, EventHandler] = {}

    def register(self, event_type: str, handler: EventHandler):
        self.handlers[str(getattr(event_type, "value", event_type))] = handler

    def get_handler(self, event_type: str) -> Optional[EventHandler]:
        return self.handlers.get(str(getattr(event_type, "value", event_type)))


class ModelEndHandler:
    """Collects usage metadata of every finished model call"""

    def __init__(self, collected_usage: Optional[List[Dict[str, Any]]] = None):
        if collected_usage is not None and not isinstance(collected_usage, list):
            raise TypeError("collected_usage must be a list")
        self.collected_usage = collected_usage

    async def handle(self, event: str, data: Any, metadata: Optional[Dict[str, Any]] = None, graph: Any = None):
        if graph is None or not metadata:
            logger.warning(f"⚠️ Graph or metadata not found in {event} event")
            return

        output = (data or {}).get("output")
        usage = getattr(output, "usage_metadata", None)
        if usage is not None and self.collected_usage is not None:
            self.collected_usage.append(dict(usage))


class ToolEndHandler:
    """
    Attaches a tool's result to the run step that announced its call.

    `callback` runs before the completion is dispatched; `omit_output` decides
    per tool name whether the output is left out of the completed event.
    """

    def __init__(
        self,
        callback: Optional[Callable[[Dict[str, Any], Dict[str, Any]], Any]] = None,
        omit_output: Optional[Callable[[Optional[str]], bool]] = None,
    ):
        self.callback = callback
        self.omit_output = omit_output

    async def handle(self, event: str, data: Any, metadata: Optional[Dict[str, Any]] = None, graph: Any = None):
        try:
            if graph is None or not metadata:
                logger.warning(f"⚠️ Graph or metadata not found in {event} event")
                return

            output = (data or {}).get("output")
            if output is None:
                logger.warning("⚠️ No output found in tool_end event")
                return

            if self.callback is not None:
                result = self.callback(data, metadata)
                if hasattr(result, "__await__"):
                    await result

            omit = bool(self.omit_output(getattr(output, "name", None))) if self.omit_output else False
            await graph.handle_tool_call_completed(
                {"input": data.get("input"), "output": output}, metadata, omit_output=omit
            )
        except Exception as e:
            logger.error(f"❌ Error handling tool_end event: {e}")
