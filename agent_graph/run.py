# agent_graph/run.py

"""
A single run: the graph built from a workflow definition, its handler
registry and the abort signal every model and tool call watches.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

from langchain_core.messages import BaseMessage
from langchain_core.runnables import RunnableConfig

from agent_graph.common.enums import GraphEvents
from agent_graph.core.agent_config import GraphConfig
from agent_graph.core.config import settings
from agent_graph.core.errors import ConfigurationError
from agent_graph.events import EventHandler, HandlerRegistry, ModelEndHandler, ToolEndHandler
from agent_graph.graphs.multi_agent_graph import MultiAgentGraph
from agent_graph.graphs.standard_graph import StandardGraph
from agent_graph.stream import ChatModelStreamHandler, create_content_aggregator
from agent_graph.utils.abort import check_abort

logger = logging.getLogger(__name__)

# Events folded into content parts when a run returns its content
CONTENT_EVENTS = (
    GraphEvents.ON_RUN_STEP,
    GraphEvents.ON_RUN_STEP_DELTA,
    GraphEvents.ON_RUN_STEP_COMPLETED,
    GraphEvents.ON_MESSAGE_DELTA,
    GraphEvents.ON_REASONING_DELTA,
)


class ContentCollector:
    """Folds run-step events into content parts, then hands them to the wrapped handler"""

    def __init__(self, aggregate_content, handler: Optional[EventHandler] = None):
        self.aggregate_content = aggregate_content
        self.handler = handler

    async def handle(self, event: str, data: Any, metadata: Optional[Dict[str, Any]] = None, graph: Any = None):
        self.aggregate_content(event, data)
        if self.handler is not None:
            await self.handler.handle(event, data, metadata, graph)


class Run:
    """Owns the graph and per-run state of one workflow execution"""

    def __init__(
        self,
        run_id: str,
        graph_config: GraphConfig,
        custom_handlers: Optional[Dict[str, EventHandler]] = None,
        return_content: bool = False,
    ):
        if not run_id:
            raise ConfigurationError("Run ID not provided")
        if graph_config is None:
            raise ConfigurationError("Graph config not provided")

        self.id = run_id
        self.return_content = return_content
        self.signal = asyncio.Event()
        self.collected_usage: List[Dict[str, Any]] = []

        self.handler_registry = HandlerRegistry()
        self.handler_registry.register(GraphEvents.CHAT_MODEL_STREAM, ChatModelStreamHandler())
        self.handler_registry.register(GraphEvents.TOOL_END, ToolEndHandler())
        self.handler_registry.register(GraphEvents.CHAT_MODEL_END, ModelEndHandler(self.collected_usage))
        for event_type, handler in (custom_handlers or {}).items():
            self.handler_registry.register(event_type, handler)

        self.content_parts: List[Optional[Dict[str, Any]]] = []
        if return_content:
            self.content_parts, aggregate_content, _ = create_content_aggregator()
            for event in CONTENT_EVENTS:
                wrapped = self.handler_registry.get_handler(event)
                self.handler_registry.register(event, ContentCollector(aggregate_content, wrapped))

        if graph_config.is_multi_agent:
            self.graph: StandardGraph = MultiAgentGraph(
                run_id,
                graph_config.agents,
                graph_config.edges,
                signal=self.signal,
                handle_tool_errors=graph_config.handle_tool_errors,
            )
        else:
            self.graph = StandardGraph(
                run_id,
                graph_config.agents,
                signal=self.signal,
                handle_tool_errors=graph_config.handle_tool_errors,
            )
        self.graph.handler_registry = self.handler_registry
        self.graph_runnable = self.graph.create_workflow()

    @classmethod
    async def create(
        cls,
        run_id: str,
        graph_config: GraphConfig,
        custom_handlers: Optional[Dict[str, EventHandler]] = None,
        return_content: bool = False,
    ) -> "Run":
        return cls(run_id, graph_config, custom_handlers=custom_handlers, return_content=return_content)

    async def process_stream(
        self,
        inputs: Dict[str, Any],
        config: Optional[RunnableConfig] = None,
        keep_content: bool = False,
    ) -> Optional[List[Optional[Dict[str, Any]]]]:
        """
        Execute the graph, routing every stream event to its handler.

        Args:
            inputs: Graph input, e.g. {"messages": [...]}
            config: Runnable config; `configurable.thread_id` scopes the step keys
            keep_content: Keep run steps recorded by a previous call

        Returns:
            The aggregated content parts when the run was created with return_content
        """
        self.graph.reset_values(keep_content=keep_content)
        if not keep_content:
            self.content_parts.clear()
        self.collected_usage.clear()

        config = dict(config or {})
        config["configurable"] = {"thread_id": self.id, **(config.get("configurable") or {}), "run_id": self.id}
        config.setdefault("recursion_limit", settings.RECURSION_LIMIT)

        logger.info(f"🌊 Starting run {self.id}")
        async for event in self.graph_runnable.astream_events(inputs, config, version="v2"):
            check_abort(self.signal)
            event_name = event["event"]
            if event_name == GraphEvents.CUSTOM_EVENT.value:
                event_name = event.get("name") or event_name

            handler = self.handler_registry.get_handler(event_name)
            if handler is not None:
                await handler.handle(event_name, event.get("data"), event.get("metadata"), self.graph)

        logger.info(f"✅ Run {self.id} completed with {len(self.graph.get_run_steps())} run step(s)")
        if self.return_content:
            return self.content_parts
        return None

    def abort(self):
        """Signal every in-flight model and tool call of this run to stop."""
        logger.warning(f"⚠️ Aborting run {self.id}")
        self.signal.set()

    def get_run_messages(self) -> List[BaseMessage]:
        return self.graph.get_run_messages()
