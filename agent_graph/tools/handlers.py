"""
Run-step bookkeeping for tool calls observed in a model stream.
"""
import logging
import uuid
from typing import Any, Dict, List, Optional

from agent_graph.common.enums import StepTypes

logger = logging.getLogger(__name__)


def _previous_step(graph, step_key: str):
    if not graph.tracker.has_step(step_key):
        return None, None
    step_id = graph.tracker.get_step_id_by_key(step_key)
    return step_id, graph.tracker.get_run_step(step_id)


async def handle_tool_calls(tool_calls: Optional[List[Dict[str, Any]]], metadata: Optional[Dict[str, Any]], graph):
    """
    Announce complete tool calls.

    Each call not yet bound to a step gets a tool_calls step of its own,
    preceded by a message_creation step when the model has not produced one
    for this step key.
    """
    if graph is None or not metadata:
        logger.warning("⚠️ Graph or metadata not found while handling tool calls")
        return
    if not tool_calls:
        return

    step_key = graph.get_step_key(metadata)
    tracker = graph.tracker
    for tool_call in tool_calls:
        tool_call_id = tool_call.get("id") or f"toolu_{uuid.uuid4().hex}"
        tool_call["id"] = tool_call_id
        if tool_call_id in tracker.tool_call_step_ids:
            continue

        prev_step_id, prev_run_step = _previous_step(graph, step_key)
        if prev_run_step is not None and prev_run_step["type"] == StepTypes.MESSAGE_CREATION.value:
            tracker.message_step_has_tool_calls[prev_step_id] = True
        else:
            message_id = tracker.get_message_id(step_key, return_existing=True) or ""
            step_id = await graph.dispatch_run_step(
                step_key,
                {"type": StepTypes.MESSAGE_CREATION.value, "message_creation": {"message_id": message_id}},
                metadata,
            )
            tracker.message_step_has_tool_calls[step_id] = True

        await graph.dispatch_run_step(
            step_key,
            {"type": StepTypes.TOOL_CALLS.value, "tool_calls": [tool_call]},
            metadata,
        )


async def handle_tool_call_chunks(graph, step_key: str, tool_call_chunks: List[Dict[str, Any]], metadata: Dict[str, Any]):
    """Stream argument fragments of tool calls as run step deltas."""
    tracker = graph.tracker
    prev_step_id, prev_run_step = _previous_step(graph, step_key)
    if prev_run_step is None:
        message_id = tracker.get_message_id(step_key, return_existing=True) or ""
        prev_step_id = await graph.dispatch_run_step(
            step_key,
            {"type": StepTypes.MESSAGE_CREATION.value, "message_creation": {"message_id": message_id}},
            metadata,
        )
        prev_run_step = tracker.get_run_step(prev_step_id)

    is_message_step = prev_run_step is not None and prev_run_step["type"] == StepTypes.MESSAGE_CREATION.value
    chunks: List[Dict[str, Any]] = []
    tool_calls: List[Dict[str, Any]] = []
    for chunk in tool_call_chunks:
        chunk = {**chunk, "name": chunk.get("name") or None, "id": chunk.get("id") or None}
        chunks.append(chunk)
        if is_message_step and chunk["id"] is not None and chunk["name"] is not None:
            tool_calls.append({"args": {}, "id": chunk["id"], "name": chunk["name"], "type": "tool_call"})

    step_id = tracker.get_step_id_by_key(step_key)
    already_dispatched = is_message_step and prev_step_id in tracker.message_step_has_tool_calls
    if prev_run_step is not None and prev_run_step["type"] == StepTypes.TOOL_CALLS.value:
        step_id = prev_step_id
    elif is_message_step and not already_dispatched:
        tracker.message_step_has_tool_calls[prev_step_id] = True
        step_id = await graph.dispatch_run_step(
            step_key,
            {"type": StepTypes.TOOL_CALLS.value, "tool_calls": tool_calls},
            metadata,
        )

    await graph.dispatch_run_step_delta(step_id, {"type": StepTypes.TOOL_CALLS.value, "tool_calls": chunks})
