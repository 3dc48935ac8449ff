"""
Helpers that inspect tool results in a message history.
"""
from typing import List

from langchain_core.messages import AIMessage, BaseMessage, ToolMessage

from agent_graph.common.enums import TOOL_SEARCH


def extract_tool_discoveries(messages: List[BaseMessage]) -> List[str]:
    """
    Tool names discovered by tool search in the current turn.

    Only `tool_search` results answering the AI message that issued the
    latest tool result are considered.
    """
    if not messages or not isinstance(messages[-1], ToolMessage):
        return []
    last_call_id = messages[-1].tool_call_id

    parent_index = -1
    for i in range(len(messages) - 1, -1, -1):
        msg = messages[i]
        if isinstance(msg, AIMessage) and any(tc.get("id") == last_call_id for tc in msg.tool_calls):
            parent_index = i
            break
    if parent_index < 0:
        return []

    call_ids = {tc.get("id") for tc in messages[parent_index].tool_calls}
    discovered: List[str] = []
    for msg in messages[parent_index + 1:]:
        if not isinstance(msg, ToolMessage) or msg.name != TOOL_SEARCH or msg.tool_call_id not in call_ids:
            continue
        artifact = msg.artifact if isinstance(msg.artifact, dict) else {}
        for reference in artifact.get("tool_references") or []:
            discovered.append(reference["tool_name"])
    return discovered
