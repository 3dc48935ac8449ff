# agent_graph/tools/tool_node.py

"""
Tool execution stage of an agent's sub-turn.

Runs every pending tool call of the latest AI message concurrently, turns
per-call failures into error results the model can correct, and folds
routing commands returned by transfer tools into one routing directive.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.runnables import RunnableConfig
from langchain_core.tools import BaseTool
from langgraph.errors import GraphBubbleUp
from langgraph.graph import END
from langgraph.types import Command, Send

from agent_graph.common.enums import SERVER_TOOL_ID_PREFIX, ToolKind
from agent_graph.core.agent_config import ToolDefinition
from agent_graph.core.errors import RunAbortedError, ToolNotFoundError
from agent_graph.graphs.routing import Continue, Dispatch, ExclusiveGoto, ParallelGoto, RoutingDirective
from agent_graph.tools.handoff import is_transfer_message
from agent_graph.tools.kinds import SESSION_AWARE_KINDS, build_kind_registry
from agent_graph.tools.sessions import ToolSessions
from agent_graph.utils.abort import run_with_abort

logger = logging.getLogger(__name__)

ToolErrorHandler = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[None]]


class ToolNode:
    """Executes the tool calls of one agent and aggregates their results"""

    def __init__(
        self,
        tools: List[BaseTool],
        tool_map: Optional[Dict[str, BaseTool]] = None,
        tool_call_step_ids: Optional[Dict[str, str]] = None,
        error_handler: Optional[ToolErrorHandler] = None,
        handle_tool_errors: bool = True,
        tool_registry: Optional[Dict[str, ToolDefinition]] = None,
        sessions: Optional[ToolSessions] = None,
        signal: Optional[asyncio.Event] = None,
    ):
        self.tool_call_step_ids = tool_call_step_ids if tool_call_step_ids is not None else {}
        self.error_handler = error_handler
        self.handle_tool_errors = handle_tool_errors
        self.tool_registry = tool_registry
        self.sessions = sessions
        self.signal = signal
        self.tool_usage_count: Dict[str, int] = {}
        self.set_tool_map(tool_map if tool_map is not None else {tool.name: tool for tool in tools})

    def set_tool_map(self, tool_map: Dict[str, BaseTool]):
        """Replace the bound tools; cached derived data is recomputed on next use."""
        self.tool_map = dict(tool_map)
        self.tool_kinds = build_kind_registry(self.tool_map)
        self._programmatic_cache: Optional[Tuple[Dict[str, BaseTool], List[ToolDefinition]]] = None

    def get_programmatic_tools(self) -> Tuple[Dict[str, BaseTool], List[ToolDefinition]]:
        """Tools callable from code execution, computed once per tool map."""
        if self._programmatic_cache is not None:
            return self._programmatic_cache

        tool_map: Dict[str, BaseTool] = {}
        tool_defs: List[ToolDefinition] = []
        for name, tool_def in (self.tool_registry or {}).items():
            if "code_execution" in (tool_def.allowed_callers or ["direct"]):
                tool_defs.append(tool_def)
                if name in self.tool_map:
                    tool_map[name] = self.tool_map[name]
        self._programmatic_cache = (tool_map, tool_defs)
        return self._programmatic_cache

    def get_tool_usage_counts(self) -> Dict[str, int]:
        return dict(self.tool_usage_count)

    def _injected_args(self, kind: ToolKind, state: Dict[str, Any]) -> Dict[str, Any]:
        injected: Dict[str, Any] = {}
        if kind == ToolKind.TRANSFER:
            injected["state"] = state
        elif kind == ToolKind.PROGRAMMATIC:
            tool_map, tool_defs = self.get_programmatic_tools()
            injected.update(tool_map=tool_map, tool_defs=tool_defs)
        elif kind == ToolKind.SEARCH:
            injected["tool_registry"] = self.tool_registry

        if kind in SESSION_AWARE_KINDS and self.sessions is not None:
            file_refs = self.sessions.file_refs()
            if file_refs:
                injected.update(session_id=self.sessions.get()["session_id"], injected_files=file_refs)
        return injected

    async def run_tool(self, call: Dict[str, Any], state: Dict[str, Any], config: RunnableConfig) -> Any:
        """
        Run a single tool call.

        Returns:
            A ToolMessage or a Command. Failures become error ToolMessages
            unless error handling is disabled or the failure is a graph interrupt.
        """
        name = call.get("name")
        call_id = call.get("id") or ""
        try:
            tool = self.tool_map.get(name)
            if tool is None:
                raise ToolNotFoundError(name)

            turn = self.tool_usage_count.get(name, 0)
            self.tool_usage_count[name] = turn + 1
            step_id = self.tool_call_step_ids.get(call_id)

            args = {**(call.get("args") or {}), **self._injected_args(self.tool_kinds[name], state)}
            tool_call = {"name": name, "args": args, "id": call_id, "type": "tool_call"}
            call_config: RunnableConfig = {
                **config,
                "metadata": {**(config.get("metadata") or {}), "tool_step_id": step_id, "tool_turn": turn},
            }

            output = await run_with_abort(tool.ainvoke(tool_call, call_config), self.signal)
            if isinstance(output, (ToolMessage, Command)):
                return output
            return ToolMessage(
                status="success",
                name=tool.name,
                content=output if isinstance(output, str) else json.dumps(output, default=str),
                tool_call_id=call_id,
            )
        except (GraphBubbleUp, RunAbortedError):
            raise
        except Exception as e:
            if not self.handle_tool_errors:
                raise
            if self.error_handler is not None:
                try:
                    await self.error_handler(
                        {"error": e, "id": call_id, "name": name, "input": call.get("args")},
                        config.get("metadata") or {},
                    )
                except Exception as handler_error:
                    logger.error(
                        f"❌ Error in tool error handler for '{name}' ({call_id}, step "
                        f"{self.tool_call_step_ids.get(call_id)}, turn {self.tool_usage_count.get(name)}): "
                        f"original error: {e}; handler error: {handler_error}"
                    )
            logger.warning(f"⚠️ Tool '{name}' failed: {e}")
            return ToolMessage(
                status="error",
                content=f"Error: {e}\nPlease fix your mistakes.",
                name=name,
                tool_call_id=call_id,
            )

    async def run(self, state: Dict[str, Any], config: RunnableConfig) -> Dict[str, Any]:
        messages: List[BaseMessage] = state.get("messages") or []
        answered = {msg.tool_call_id for msg in messages if isinstance(msg, ToolMessage)}

        ai_message = next((msg for msg in reversed(messages) if isinstance(msg, AIMessage)), None)
        if ai_message is None:
            raise ValueError("ToolNode only accepts AIMessages as input.")

        calls = [
            call for call in ai_message.tool_calls
            if (call.get("id") is None or call["id"] not in answered)
            and not (call.get("id") or "").startswith(SERVER_TOOL_ID_PREFIX)
        ]
        outputs = await asyncio.gather(*(self.run_tool(call, state, config) for call in calls))
        return aggregate_tool_outputs(list(outputs))


def _single_destination(goto: Any) -> Optional[str]:
    if isinstance(goto, str):
        return goto
    if isinstance(goto, (list, tuple)) and len(goto) == 1 and isinstance(goto[0], str):
        return goto[0]
    return None


def _is_send_command(command: Command) -> bool:
    return (
        command.graph == Command.PARENT
        and isinstance(command.goto, (list, tuple))
        and len(command.goto) > 0
        and all(isinstance(item, Send) for item in command.goto)
    )


def _update_messages(command: Command) -> List[BaseMessage]:
    update = command.update
    if isinstance(update, dict):
        return list(update.get("messages") or [])
    return []


def _stamp_siblings(messages: List[BaseMessage], siblings: List[str]) -> List[BaseMessage]:
    stamped = []
    for msg in messages:
        if is_transfer_message(msg):
            msg = msg.model_copy(update={
                "additional_kwargs": {**msg.additional_kwargs, "handoff_parallel_siblings": siblings},
            })
        stamped.append(msg)
    return stamped


def aggregate_tool_outputs(outputs: List[Any]) -> Dict[str, Any]:
    """
    Fold tool outputs into a state update.

    Plain results go to `messages`. Parent commands fanning out with Sends are
    merged, single-destination parent commands are collected as handoffs:
    one handoff passes through as an exclusive goto, several become a
    parallel goto whose transfer records list the sibling destinations. Any
    other command is returned untouched in `commands`.
    """
    if not any(isinstance(output, Command) for output in outputs):
        return {"messages": outputs}

    plain: List[BaseMessage] = []
    unresolved: List[Command] = []
    handoffs: List[Tuple[str, Command]] = []
    send_dispatches: List[Dispatch] = []

    for output in outputs:
        if not isinstance(output, Command):
            plain.append(output)
        elif _is_send_command(output):
            for send in output.goto:
                arg = send.arg if isinstance(send.arg, dict) else {}
                send_dispatches.append(Dispatch(send.node, list(arg.get("messages") or [])))
        elif output.graph == Command.PARENT and _single_destination(output.goto) is not None:
            handoffs.append((_single_destination(output.goto), output))
        else:
            unresolved.append(output)

    routing: RoutingDirective = Continue()
    if len(handoffs) > 1:
        destinations = [destination for destination, _ in handoffs]
        dispatches = []
        for destination, command in handoffs:
            siblings = [other for other in destinations if other != destination]
            dispatches.append(Dispatch(destination, _stamp_siblings(_update_messages(command), siblings)))
        routing = ParallelGoto(tuple(dispatches + send_dispatches))
        logger.info(f"🔀 Parallel handoff to {destinations}")
    elif len(handoffs) == 1 and not send_dispatches:
        destination, command = handoffs[0]
        routing = ExclusiveGoto(destination, _update_messages(command))
        logger.info(f"🔀 Handoff to '{destination}'")
    elif send_dispatches:
        single = [Dispatch(destination, _update_messages(command)) for destination, command in handoffs]
        routing = ParallelGoto(tuple(single + send_dispatches))

    return {"messages": plain, "routing": routing, "commands": unresolved}


def tools_condition(state: Dict[str, Any], tool_node_name: str, invoked_tool_ids: Optional[set] = None) -> str:
    """Route to the tool node while the last AI message has calls that were not already executed."""
    messages = state.get("messages") or []
    if not messages:
        return END
    message = messages[-1]
    tool_calls = getattr(message, "tool_calls", None) or []
    if not tool_calls:
        return END
    if invoked_tool_ids and all(tc.get("id") in invoked_tool_ids for tc in tool_calls):
        return END
    return tool_node_name
