# agent_graph/stream.py

"""
Turns `on_chat_model_stream` events into run steps and deltas, and folds
run-step events back into ordered content parts for consumers that want the
final content of a run.
"""

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

from langchain_core.messages import AIMessageChunk

from agent_graph.common.enums import ContentTypes, GraphEvents, Providers, StepTypes
from agent_graph.core.errors import ConfigurationError
from agent_graph.tools.handlers import handle_tool_call_chunks, handle_tool_calls

logger = logging.getLogger(__name__)

THINK_OPEN = "<think>"
THINK_CLOSE = "</think>"

_REASONING_BLOCK_TYPES = (
    ContentTypes.THINKING.value,
    ContentTypes.REASONING.value,
    ContentTypes.REASONING_CONTENT.value,
)


def parse_thinking_content(content: str) -> Dict[str, str]:
    """Split `<think>` sections out of mixed text; returns {"text", "thinking"}."""
    if THINK_OPEN not in content:
        return {"text": content, "thinking": ""}

    text = ""
    thinking: List[str] = []
    position = 0
    while position < len(content):
        start = content.find(THINK_OPEN, position)
        if start == -1:
            text += content[position:]
            break
        text += content[position:start]

        end = content.find(THINK_CLOSE, start)
        if end == -1:
            # Unclosed tag, keep the remainder as text
            text += content[start:]
            break
        thinking.append(content[start + len(THINK_OPEN):end])
        position = end + len(THINK_CLOSE)

    return {"text": text.strip(), "thinking": "\n".join(thinking).strip()}


def _reasoning_summary_text(chunk: AIMessageChunk) -> Optional[str]:
    reasoning = chunk.additional_kwargs.get("reasoning")
    if not isinstance(reasoning, dict):
        return None
    summary = reasoning.get("summary") or []
    if summary and isinstance(summary[0], dict) and summary[0].get("text"):
        return summary[0]["text"]
    return None


def get_chunk_content(chunk: AIMessageChunk, provider: str, reasoning_key: str) -> Any:
    if provider in (Providers.OPENAI.value, Providers.AZURE.value):
        summary_text = _reasoning_summary_text(chunk)
        if summary_text:
            return summary_text
    return chunk.additional_kwargs.get(reasoning_key) or chunk.content


class ChatModelStreamHandler:
    """Creates message/tool-call run steps and dispatches deltas for streamed model chunks"""

    async def handle(self, event: str, data: Any, metadata: Optional[Dict[str, Any]] = None, graph: Any = None):
        if graph is None:
            raise ConfigurationError("Graph not found")
        chunk: Optional[AIMessageChunk] = (data or {}).get("chunk")
        if chunk is None:
            logger.warning(f"⚠️ No chunk found in {event} event")
            return

        agent_context = graph.get_agent_context(metadata)
        tracker = graph.tracker
        content = get_chunk_content(chunk, agent_context.provider, agent_context.reasoning_key)
        self.handle_reasoning(chunk, agent_context)

        tool_calls = chunk.tool_calls or []
        if tool_calls and all(tc.get("id") and tc.get("name") for tc in tool_calls):
            await handle_tool_calls(tool_calls, metadata, graph)

        tool_call_chunks = chunk.tool_call_chunks or []
        has_tool_call_chunks = len(tool_call_chunks) > 0
        is_empty_content = not content
        is_empty_chunk = is_empty_content and not has_tool_call_chunks

        if is_empty_chunk and chunk.id and not tracker.has_prelim_message_id(chunk.id):
            tracker.set_prelim_message_id(graph.get_step_key(metadata), chunk.id)
        elif is_empty_chunk:
            return

        step_key = graph.get_step_key(metadata)
        if has_tool_call_chunks and isinstance(tool_call_chunks[0].get("index"), int):
            await handle_tool_call_chunks(graph, step_key, list(tool_call_chunks), metadata)

        if is_empty_content:
            return

        message_id = tracker.get_message_id(step_key)
        if message_id:
            await graph.dispatch_run_step(
                step_key,
                {"type": StepTypes.MESSAGE_CREATION.value, "message_creation": {"message_id": message_id}},
                metadata,
            )

        step_id = tracker.get_step_id_by_key(step_key)
        run_step = tracker.get_run_step(step_id)
        if run_step is None:
            logger.warning(f"⚠️ Run step {step_id} does not exist, cannot dispatch delta for {event} ({step_key})")
            return

        if isinstance(content, str) and run_step["type"] == StepTypes.TOOL_CALLS.value:
            return
        if has_tool_call_chunks and any(tc.get("args") == content for tc in tool_call_chunks):
            return

        if isinstance(content, str):
            await self._dispatch_text(content, step_id, agent_context, metadata, graph)
        elif all(str(part.get("type", "")).startswith(ContentTypes.TEXT.value) for part in content):
            await graph.dispatch_message_delta(step_id, {"content": content})
        elif all(str(part.get("type", "")).startswith(_REASONING_BLOCK_TYPES) for part in content):
            await graph.dispatch_reasoning_delta(step_id, {
                "content": [
                    {
                        "type": ContentTypes.THINK.value,
                        "think": part.get("thinking") or part.get("reasoning")
                        or (part.get("reasoningText") or {}).get("text") or "",
                    }
                    for part in content
                ],
            })

    async def _dispatch_text(self, content: str, step_id: str, agent_context, metadata, graph):
        if agent_context.current_token_type == ContentTypes.TEXT.value:
            await graph.dispatch_message_delta(step_id, {
                "content": [{"type": ContentTypes.TEXT.value, "text": content}],
            })
            return

        if agent_context.current_token_type != ContentTypes.THINK_AND_TEXT.value:
            await graph.dispatch_reasoning_delta(step_id, {
                "content": [{"type": ContentTypes.THINK.value, "think": content}],
            })
            return

        parsed = parse_thinking_content(content)
        if parsed["thinking"]:
            await graph.dispatch_reasoning_delta(step_id, {
                "content": [{"type": ContentTypes.THINK.value, "think": parsed["thinking"]}],
            })
        if parsed["text"]:
            # The remaining text belongs to a new message step after the reasoning phase
            agent_context.current_token_type = ContentTypes.TEXT.value
            agent_context.token_type_switch = "content"
            new_step_key = graph.get_step_key(metadata)
            message_id = graph.tracker.get_message_id(new_step_key) or ""
            await graph.dispatch_run_step(
                new_step_key,
                {"type": StepTypes.MESSAGE_CREATION.value, "message_creation": {"message_id": message_id}},
                metadata,
            )
            new_step_id = graph.tracker.get_step_id_by_key(new_step_key)
            await graph.dispatch_message_delta(new_step_id, {
                "content": [{"type": ContentTypes.TEXT.value, "text": parsed["text"]}],
            })

    def handle_reasoning(self, chunk: AIMessageChunk, agent_context):
        """Track whether the agent is currently streaming reasoning or content."""
        content = chunk.content
        reasoning_content: Any = chunk.additional_kwargs.get(agent_context.reasoning_key)
        if (
            isinstance(content, list) and content and isinstance(content[0], dict)
            and content[0].get("type") in _REASONING_BLOCK_TYPES
        ):
            reasoning_content = "valid"
        elif (
            agent_context.provider in (Providers.OPENAI.value, Providers.AZURE.value)
            and _reasoning_summary_text(chunk)
        ):
            reasoning_content = "valid"

        if reasoning_content and (not content or reasoning_content == "valid"):
            agent_context.current_token_type = ContentTypes.THINK.value
            agent_context.token_type_switch = "reasoning"
            return
        elif (
            agent_context.token_type_switch == "reasoning"
            and agent_context.current_token_type != ContentTypes.TEXT.value
            and (content or chunk.tool_calls or chunk.tool_call_chunks)
        ):
            agent_context.current_token_type = ContentTypes.TEXT.value
            agent_context.token_type_switch = "content"
        elif isinstance(content, str) and THINK_OPEN in content and THINK_CLOSE in content:
            agent_context.current_token_type = ContentTypes.THINK_AND_TEXT.value
            agent_context.token_type_switch = "content"
        elif isinstance(content, str) and THINK_OPEN in content:
            agent_context.current_token_type = ContentTypes.THINK.value
            agent_context.token_type_switch = "content"
        elif agent_context.last_token and THINK_CLOSE in agent_context.last_token:
            agent_context.current_token_type = ContentTypes.TEXT.value
            agent_context.token_type_switch = "content"

        if isinstance(content, str):
            agent_context.last_token = content


# Content aggregation

def _non_empty(*values: Optional[str]) -> str:
    for value in values:
        if value and value.strip():
            return value
    return ""


def create_content_aggregator() -> Tuple[List[Optional[Dict[str, Any]]], Callable[..., None], Dict[str, Dict[str, Any]]]:
    """
    Build an aggregator for run-step events.

    Returns:
        (content_parts, aggregate_content, step_map): `aggregate_content(event, data)`
        folds each event into `content_parts`, ordered by run-step index.
    """
    content_parts: List[Optional[Dict[str, Any]]] = []
    step_map: Dict[str, Dict[str, Any]] = {}
    tool_call_id_map: Dict[str, str] = {}
    content_meta: Dict[int, Dict[str, Any]] = {}

    def update_content(index: int, part: Optional[Dict[str, Any]], final_update: bool = False):
        if not part:
            logger.warning("⚠️ No content part found in update_content")
            return
        part_type = part.get("type") or ""
        if not part_type:
            logger.warning("⚠️ No content type found in content part")
            return

        while len(content_parts) <= index:
            content_parts.append(None)
        if content_parts[index] is None:
            content_parts[index] = {"type": part_type}
        current = content_parts[index]
        if not part_type.startswith(current.get("type") or ""):
            logger.warning("⚠️ Content type mismatch")
            return

        if part_type.startswith(ContentTypes.TEXT.value) and isinstance(part.get("text"), str):
            update = {"type": ContentTypes.TEXT.value, "text": (current.get("text") or "") + part["text"]}
            if part.get("tool_call_ids"):
                update["tool_call_ids"] = part["tool_call_ids"]
            content_parts[index] = update
        elif part_type.startswith(ContentTypes.THINK.value) and isinstance(part.get("think"), str):
            content_parts[index] = {
                "type": ContentTypes.THINK.value,
                "think": (current.get("think") or "") + part["think"],
            }
        elif part_type == ContentTypes.TOOL_CALL.value and "tool_call" in part:
            incoming = part["tool_call"] or {}
            if not incoming.get("name") and not final_update:
                return

            existing = current.get("tool_call") or {}
            incoming_args = incoming.get("args")
            if final_update or isinstance(existing.get("args"), dict) or isinstance(incoming_args, dict):
                args = incoming_args
            else:
                args = (existing.get("args") or "") + (incoming_args or "")
            if final_update and args is None and existing.get("args") is not None:
                args = existing["args"]

            tool_call = {
                "id": _non_empty(incoming.get("id"), existing.get("id")),
                "name": _non_empty(incoming.get("name"), existing.get("name")),
                "args": args,
                "type": "tool_call",
            }
            if final_update:
                tool_call["progress"] = 1
                tool_call["output"] = incoming.get("output")
            content_parts[index] = {"type": ContentTypes.TOOL_CALL.value, "tool_call": tool_call}

        meta = content_meta.get(index) or {}
        if meta.get("agent_id") is not None:
            content_parts[index]["agent_id"] = meta["agent_id"]
        if meta.get("group_id") is not None:
            content_parts[index]["group_id"] = meta["group_id"]

    def aggregate_content(event: str, data: Dict[str, Any]):
        event = getattr(event, "value", event)
        if event == GraphEvents.ON_RUN_STEP.value:
            step_map[data["id"]] = data
            if data.get("agent_id") or data.get("group_id") is not None:
                meta = content_meta.setdefault(data["index"], {})
                if data.get("agent_id"):
                    meta["agent_id"] = data["agent_id"]
                if data.get("group_id") is not None:
                    meta["group_id"] = data["group_id"]

            details = data.get("step_details") or {}
            if details.get("type") == StepTypes.TOOL_CALLS.value:
                for tool_call in details.get("tool_calls") or []:
                    if tool_call.get("id"):
                        tool_call_id_map[data["id"]] = tool_call["id"]
                    update_content(data["index"], {
                        "type": ContentTypes.TOOL_CALL.value,
                        "tool_call": {
                            "args": tool_call.get("args"),
                            "name": tool_call.get("name"),
                            "id": tool_call.get("id") or "",
                        },
                    })

        elif event == GraphEvents.ON_MESSAGE_DELTA.value:
            run_step = step_map.get(data["id"])
            if run_step is None:
                logger.warning("⚠️ No run step found for message delta event")
                return
            contents = data["delta"].get("content") or []
            if not isinstance(contents, list):
                contents = [contents]
            for offset, part in enumerate(contents):
                update_content(run_step["index"] + offset, part)

        elif event == GraphEvents.ON_REASONING_DELTA.value:
            run_step = step_map.get(data["id"])
            if run_step is None:
                logger.warning("⚠️ No run step found for reasoning delta event")
                return
            contents = data["delta"].get("content")
            if contents:
                update_content(run_step["index"], contents[0] if isinstance(contents, list) else contents)

        elif event == GraphEvents.ON_RUN_STEP_DELTA.value:
            run_step = step_map.get(data["id"])
            if run_step is None:
                logger.warning("⚠️ No run step found for run step delta event")
                return
            delta = data["delta"]
            if delta.get("type") == StepTypes.TOOL_CALLS.value:
                for tool_call_delta in delta.get("tool_calls") or []:
                    update_content(run_step["index"], {
                        "type": ContentTypes.TOOL_CALL.value,
                        "tool_call": {
                            "args": tool_call_delta.get("args") or "",
                            "name": tool_call_delta.get("name"),
                            "id": tool_call_id_map.get(data["id"]),
                        },
                    })

        elif event == GraphEvents.ON_RUN_STEP_COMPLETED.value:
            result = data["result"]
            run_step = step_map.get(result["id"])
            if run_step is None:
                logger.warning("⚠️ No run step found for completed tool call event")
                return
            update_content(run_step["index"], {
                "type": ContentTypes.TOOL_CALL.value,
                "tool_call": result["tool_call"],
            }, final_update=True)

    return content_parts, aggregate_content, step_map
