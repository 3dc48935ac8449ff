# agent_graph/tools/handoff.py

"""
Transfer tools realizing handoff edges, and the matching reception logic.

A transfer tool returns a langgraph `Command(graph=Command.PARENT)` whose
update carries the forwarded message history ending with a transfer record:
a ToolMessage named `lc_transfer_to_<dest>` (or `conditional_transfer`)
whose `additional_kwargs` hold the destination, the source agent's display
name and any free-text instructions.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Annotated, Any, Callable, Dict, List, Optional, Type

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage
from langchain_core.tools import BaseTool, InjectedToolArg, InjectedToolCallId, StructuredTool
from langgraph.types import Command
from pydantic import BaseModel, Field, create_model

from agent_graph.common.enums import CONDITIONAL_TRANSFER, LC_TRANSFER_TO_, ToolKind
from agent_graph.core.agent_config import GraphEdge

logger = logging.getLogger(__name__)

HANDOFF_INSTRUCTIONS_PATTERN = re.compile(r"(?:Instructions?|Context):\s*(.+)", re.IGNORECASE | re.DOTALL)


class TransferInput(BaseModel):
    """Arguments every transfer tool receives; none of them are shown to the model."""
    state: Annotated[Any, InjectedToolArg] = None
    tool_call_id: Annotated[str, InjectedToolCallId] = ""


def _build_args_schema(edge: GraphEdge) -> Type[BaseModel]:
    if not isinstance(edge.prompt, str) or not edge.prompt:
        return TransferInput
    return create_model(
        "TransferWithInstructionsInput",
        __base__=TransferInput,
        **{edge.effective_prompt_key: (Optional[str], Field(default=None, description=edge.prompt))},
    )


def _format_content(base: str, prompt_key: str, value: Optional[str]) -> str:
    if value is None:
        return base
    return f"{base}\n\n{prompt_key[:1].upper()}{prompt_key[1:]}: {value}"


def build_transfer_record(
    *,
    tool_name: str,
    tool_call_id: str,
    content: str,
    destination: str,
    source_agent_name: str,
    instructions: Optional[str] = None,
) -> ToolMessage:
    additional_kwargs: Dict[str, Any] = {
        "handoff_destination": destination,
        "handoff_source_name": source_agent_name,
    }
    if instructions is not None:
        additional_kwargs["handoff_instructions"] = instructions
    return ToolMessage(
        content=content,
        name=tool_name,
        tool_call_id=tool_call_id,
        additional_kwargs=additional_kwargs,
    )


def isolate_tool_call(messages: List[BaseMessage], tool_call_id: str, tool_message: ToolMessage) -> List[BaseMessage]:
    """
    Forwarded history for one transfer call.

    When the AI turn that issued the call requested several tool calls, the
    turn is replaced by a copy carrying only this call, followed by its
    result and any later messages that do not answer the dropped calls.
    """
    ai_index = -1
    for i in range(len(messages) - 1, -1, -1):
        msg = messages[i]
        if isinstance(msg, AIMessage) and any(tc.get("id") == tool_call_id for tc in msg.tool_calls):
            ai_index = i
            break

    if ai_index < 0 or len(messages[ai_index].tool_calls) <= 1:
        return [*messages, tool_message]

    original = messages[ai_index]
    this_call = next(tc for tc in original.tool_calls if tc.get("id") == tool_call_id)
    dropped_ids = {tc.get("id") for tc in original.tool_calls if tc.get("id") != tool_call_id}
    filtered_ai = AIMessage(content=original.content, tool_calls=[this_call], id=original.id)
    later = [
        msg for msg in messages[ai_index + 1:]
        if not (isinstance(msg, ToolMessage) and msg.tool_call_id in dropped_ids)
    ]
    return [*messages[:ai_index], filtered_ai, tool_message, *later]


def resolve_condition_destination(result: Any, destinations: List[str]) -> Optional[str]:
    """Map a condition's return value to a destination; None means no transfer."""
    if isinstance(result, bool):
        return destinations[0] if result else None
    if isinstance(result, str):
        return result
    if isinstance(result, (list, tuple)) and result:
        return result[0]
    return destinations[0]


def _create_conditional_tool(edge: GraphEdge, source_agent_name: str) -> BaseTool:
    destinations = edge.destinations
    prompt_key = edge.effective_prompt_key
    condition: Callable[[Dict[str, Any]], Any] = edge.condition

    async def conditional_transfer(state: Any = None, tool_call_id: str = "", **kwargs) -> Optional[Command]:
        current_state = state or {}
        destination = resolve_condition_destination(condition(current_state), destinations)
        if destination is None:
            logger.info(f"🔀 Condition on '{source_agent_name}' declined to transfer")
            return None

        instructions = kwargs.get(prompt_key)
        tool_message = build_transfer_record(
            tool_name=CONDITIONAL_TRANSFER,
            tool_call_id=tool_call_id,
            content=_format_content(f"Conditionally transferred to {destination}", prompt_key, instructions),
            destination=destination,
            source_agent_name=source_agent_name,
            instructions=instructions,
        )
        messages = list(current_state.get("messages", []))
        return Command(
            goto=destination,
            update={"messages": [*messages, tool_message]},
            graph=Command.PARENT,
        )

    return StructuredTool.from_function(
        coroutine=conditional_transfer,
        name=CONDITIONAL_TRANSFER,
        description=edge.description or "Conditionally transfer control based on state",
        args_schema=_build_args_schema(edge),
        metadata={"tool_kind": ToolKind.TRANSFER.value},
    )


def _create_transfer_tool(edge: GraphEdge, destination: str, source_agent_name: str) -> BaseTool:
    tool_name = f"{LC_TRANSFER_TO_}{destination}"
    prompt_key = edge.effective_prompt_key

    async def transfer(state: Any = None, tool_call_id: str = "", **kwargs) -> Command:
        instructions = kwargs.get(prompt_key)
        tool_message = build_transfer_record(
            tool_name=tool_name,
            tool_call_id=tool_call_id,
            content=_format_content(f"Successfully transferred to {destination}", prompt_key, instructions),
            destination=destination,
            source_agent_name=source_agent_name,
            instructions=instructions,
        )
        messages = list((state or {}).get("messages", []))
        return Command(
            goto=destination,
            update={"messages": isolate_tool_call(messages, tool_call_id, tool_message)},
            graph=Command.PARENT,
        )

    return StructuredTool.from_function(
        coroutine=transfer,
        name=tool_name,
        description=edge.description or f"Transfer control to agent '{destination}'",
        args_schema=_build_args_schema(edge),
        metadata={"tool_kind": ToolKind.TRANSFER.value},
    )


def create_handoff_tools_for_edge(edge: GraphEdge, source_agent_name: str) -> List[BaseTool]:
    """
    Build the transfer tools for one handoff edge.

    Args:
        edge: The handoff edge
        source_agent_name: Display name of the agent that will own the tools

    Returns:
        List[BaseTool]: One conditional tool when the edge has a condition,
        otherwise one tool per destination.
    """
    if edge.condition is not None:
        return [_create_conditional_tool(edge, source_agent_name)]
    return [_create_transfer_tool(edge, destination, source_agent_name) for destination in edge.destinations]


# Reception

def is_transfer_message(message: BaseMessage) -> bool:
    if not isinstance(message, ToolMessage) or not isinstance(message.name, str):
        return False
    return message.name.startswith(LC_TRANSFER_TO_) or message.name == CONDITIONAL_TRANSFER


def transfer_destination(message: ToolMessage) -> Optional[str]:
    destination = message.additional_kwargs.get("handoff_destination")
    if isinstance(destination, str) and destination:
        return destination
    if message.name and message.name.startswith(LC_TRANSFER_TO_):
        return message.name[len(LC_TRANSFER_TO_):]
    return None


def extract_instructions(message: ToolMessage) -> Optional[str]:
    structured = message.additional_kwargs.get("handoff_instructions")
    if isinstance(structured, str) and structured.strip():
        return structured.strip()
    content = message.content if isinstance(message.content, str) else str(message.content)
    match = HANDOFF_INSTRUCTIONS_PATTERN.search(content)
    return match.group(1).strip() if match else None


@dataclass
class HandoffReception:
    filtered_messages: List[BaseMessage]
    instructions: Optional[str] = None
    source_agent_name: Optional[str] = None
    parallel_siblings: List[str] = field(default_factory=list)


def receive_handoff(
    messages: List[BaseMessage],
    agent_id: str,
    display_names: Optional[Dict[str, str]] = None,
) -> Optional[HandoffReception]:
    """
    Detect a transfer to `agent_id` and strip transfer noise from the history.

    Every transfer record and every transfer call is removed, including those
    aimed at parallel siblings. An AI message left with no tool calls and no
    text is dropped entirely.

    Returns:
        Optional[HandoffReception]: None when no transfer targets this agent
    """
    display_names = display_names or {}
    record: Optional[ToolMessage] = None
    for msg in reversed(messages):
        if is_transfer_message(msg) and transfer_destination(msg) == agent_id:
            record = msg
            break
    if record is None:
        return None

    sibling_ids = record.additional_kwargs.get("handoff_parallel_siblings") or []
    parallel_siblings = [display_names.get(s, s) for s in sibling_ids if isinstance(s, str)]
    source_name = record.additional_kwargs.get("handoff_source_name")

    transfer_call_ids = {record.tool_call_id}
    transfer_call_ids.update(msg.tool_call_id for msg in messages if is_transfer_message(msg))

    filtered: List[BaseMessage] = []
    for msg in messages:
        if isinstance(msg, ToolMessage) and msg.tool_call_id in transfer_call_ids:
            continue
        if isinstance(msg, AIMessage) and msg.tool_calls:
            remaining = [tc for tc in msg.tool_calls if tc.get("id") is None or tc.get("id") not in transfer_call_ids]
            if len(remaining) < len(msg.tool_calls):
                has_text = isinstance(msg.content, str) and msg.content.strip()
                if remaining or has_text:
                    filtered.append(AIMessage(content=msg.content, tool_calls=remaining, id=msg.id))
                continue
        filtered.append(msg)

    return HandoffReception(
        filtered_messages=filtered,
        instructions=extract_instructions(record),
        source_agent_name=source_name if isinstance(source_name, str) else None,
        parallel_siblings=parallel_siblings,
    )
