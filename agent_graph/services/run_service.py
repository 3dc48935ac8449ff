# agent_graph/services/run_service.py
"""
Service layer for building and streaming workflow runs.

This service manages the run lifecycle including:
- Converting workflow definitions into runs
- Streaming run events as Server-Sent Events
- Tracking active runs for cancellation
"""

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Dict, List, Optional

from langchain_core.messages import BaseMessage, convert_to_messages

from agent_graph.api.v1.schemas.run import RunRequest
from agent_graph.common.enums import GraphEvents
from agent_graph.core.agent_config import AgentConfig, FallbackConfig, GraphConfig, GraphEdge, RunServiceConfig, run_settings
from agent_graph.core.errors import ConfigurationError, RunAbortedError
from agent_graph.run import Run

logger = logging.getLogger(__name__)

# Graph events forwarded to stream clients
STREAMED_EVENTS = (
    GraphEvents.ON_RUN_STEP,
    GraphEvents.ON_RUN_STEP_DELTA,
    GraphEvents.ON_RUN_STEP_COMPLETED,
    GraphEvents.ON_MESSAGE_DELTA,
    GraphEvents.ON_REASONING_DELTA,
)


class RunServiceError(Exception):
    """Custom exception for run service errors"""
    pass


class RunCapacityError(RunServiceError):
    """Raised when the service already runs its maximum number of runs"""
    pass


class QueueEventHandler:
    """Pushes graph events onto a stream queue"""

    def __init__(self, queue: asyncio.Queue):
        self.queue = queue

    async def handle(self, event: str, data: Any, metadata: Optional[Dict[str, Any]] = None, graph: Any = None):
        await self.queue.put({"event": event, "data": data})


def _fallback_config(agent_id: str, entry: Any) -> FallbackConfig:
    if not isinstance(entry, dict) or not entry.get("provider"):
        raise ConfigurationError(f"Agent '{agent_id}' has a fallback without a provider")
    return FallbackConfig(provider=entry["provider"], client_options=dict(entry.get("client_options") or {}))


def _sse(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


class RunService:
    """Service for building workflow runs and streaming their events"""

    def __init__(self, config: Optional[RunServiceConfig] = None):
        self.config = config or run_settings.service_config
        self.active_runs: Dict[str, Run] = {}
        self._initialized = False

    async def initialize(self):
        """Initialize the service"""
        if self._initialized:
            return
        logger.info("🔧 Initializing Run Service...")
        self._initialized = True
        logger.info(f"✅ Run Service initialized (max {self.config.max_concurrent_runs} concurrent runs)")

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    def build_graph_config(self, request: RunRequest) -> GraphConfig:
        """Translate a workflow definition into graph configuration."""
        agents = []
        for agent in request.agents:
            client_options = dict(agent.client_options)
            fallbacks = client_options.pop("fallbacks", None) or []
            fallback_on = client_options.pop("fallback_on", None)
            agents.append(AgentConfig(
                agent_id=agent.agent_id,
                name=agent.name,
                provider=agent.provider,
                client_options=client_options,
                instructions=agent.instructions,
                additional_instructions=agent.additional_instructions,
                tool_end=agent.tool_end,
                fallbacks=[_fallback_config(agent.agent_id, fb) for fb in fallbacks],
                fallback_on=list(fallback_on) if fallback_on is not None else None,
            ))
        edges = [
            GraphEdge(
                source=edge.source,
                destination=edge.destination,
                kind=edge.kind,
                prompt=edge.prompt,
                exclude_results=edge.exclude_results,
                prompt_key=edge.prompt_key,
                description=edge.description,
            )
            for edge in request.edges
        ]
        return GraphConfig(agents=agents, edges=edges)

    async def create_run(self, request: RunRequest, queue: asyncio.Queue, run_id: Optional[str] = None) -> Run:
        """
        Build a run whose graph events are pushed onto `queue`.

        Raises:
            RunCapacityError: Too many runs are active
            RunServiceError: The workflow definition is invalid
        """
        await self._ensure_initialized()

        if len(self.active_runs) >= self.config.max_concurrent_runs:
            raise RunCapacityError(f"Maximum of {self.config.max_concurrent_runs} concurrent runs reached")

        run_id = run_id or f"run_{uuid.uuid4().hex}"
        handler = QueueEventHandler(queue)
        try:
            run = await Run.create(
                run_id,
                self.build_graph_config(request),
                custom_handlers={event.value: handler for event in STREAMED_EVENTS},
                return_content=self.config.return_content,
            )
        except ConfigurationError as e:
            logger.error(f"❌ Invalid workflow definition: {e}")
            raise RunServiceError(f"Invalid workflow definition: {e}")

        self.active_runs[run_id] = run
        logger.info(f"📝 Created run {run_id} with {len(request.agents)} agent(s)")
        return run

    async def stream_run(
        self,
        run: Run,
        queue: asyncio.Queue,
        messages: List[BaseMessage],
        thread_id: Optional[str] = None,
    ) -> AsyncGenerator[str, None]:
        """
        Stream the events of a run.

        Yields:
            str: Server-Sent Events formatted data chunks, ending with a done event
        """
        config = {"configurable": {"thread_id": thread_id or run.id}}
        finished = object()

        async def execute():
            try:
                content = await run.process_stream({"messages": messages}, config)
                if content is not None:
                    await queue.put({"event": "content", "data": content})
            except RunAbortedError:
                logger.warning(f"⚠️ Run {run.id} aborted")
                await queue.put({"event": "aborted", "data": {"run_id": run.id}})
            except Exception as e:
                logger.error(f"❌ Run {run.id} failed: {e}")
                await queue.put({"event": "error", "data": {"message": str(e)}})
            finally:
                await queue.put(finished)

        logger.info(f"🌊 Streaming run {run.id}")
        task = asyncio.create_task(execute())
        try:
            while True:
                item = await queue.get()
                if item is finished:
                    break
                yield _sse(item)
            yield _sse({"event": "done", "run_id": run.id})
            logger.info(f"✅ Streaming completed for run {run.id}")
        finally:
            if not task.done():
                run.abort()
                task.cancel()
            self.active_runs.pop(run.id, None)

    def build_messages(self, request: RunRequest) -> List[BaseMessage]:
        return convert_to_messages([message.model_dump() for message in request.messages])

    async def cancel_run(self, run_id: str) -> bool:
        """Abort an active run. Returns False when no such run is active."""
        run = self.active_runs.get(run_id)
        if run is None:
            logger.warning(f"⚠️ Run {run_id} not found or already completed")
            return False
        run.abort()
        logger.info(f"🛑 Cancelled run {run_id}")
        return True

    async def health_check(self) -> Dict[str, Any]:
        """Report service status and load"""
        try:
            await self._ensure_initialized()
            return {
                "status": "healthy",
                "active_runs": len(self.active_runs),
                "max_concurrent_runs": self.config.max_concurrent_runs,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }
        except Exception as e:
            logger.error(f"❌ Health check failed: {e}")
            return {
                "status": "unhealthy",
                "error": str(e),
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }

    async def stop(self):
        """Abort every active run"""
        for run in list(self.active_runs.values()):
            run.abort()
        self.active_runs.clear()
        logger.info("✅ Run Service stopped")


# Singleton instance for the service
_run_service: Optional[RunService] = None


async def get_run_service() -> RunService:
    """
    Get or create the singleton run service instance.

    Returns:
        RunService: The singleton service instance
    """
    global _run_service

    if _run_service is None:
        _run_service = RunService()
        await _run_service.initialize()

    return _run_service


def create_run_service(config: Optional[RunServiceConfig] = None) -> RunService:
    """Create and return a new RunService instance"""
    return RunService(config)
