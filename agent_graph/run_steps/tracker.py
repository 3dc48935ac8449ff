# agent_graph/run_steps/tracker.py

"""
Run-step identity and correlation.

Every logical position of a run (a message being created, a batch of tool
calls) is addressed by a step key built from the langgraph metadata of the
event that produced it. The tracker hands out stable step ids per key,
remembers which step owns each tool call and keeps the ordered list of run
steps that stream consumers see.

All maps are cleared in place on reset, so collaborators holding a
reference (the tool stage holds `tool_call_step_ids`) stay in sync.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Set, Tuple

from agent_graph.common.enums import ContentTypes
from agent_graph.core.errors import ConfigurationError
from agent_graph.state.graph_state import RunStep, ToolCallRecord

logger = logging.getLogger(__name__)

STEP_KEY_FIELDS = ("run_id", "thread_id", "langgraph_node", "langgraph_step", "checkpoint_ns")


def build_key_list(
    metadata: Dict[str, Any],
    current_token_type: str = ContentTypes.TEXT.value,
    token_type_switch: Optional[str] = None,
    invoked_tool_count: int = 0,
) -> List[Any]:
    """
    Ordered step-key fields for an event's metadata.

    A reasoning discriminator is appended while the agent streams think
    content ("reasoning") or after it switched to content ("post-reasoning");
    the number of tools invoked mid-run is appended when non-zero.
    """
    checkpoint_ns = metadata.get("checkpoint_ns", metadata.get("langgraph_checkpoint_ns"))
    key_list = [
        metadata.get("run_id"),
        metadata.get("thread_id"),
        metadata.get("langgraph_node"),
        metadata.get("langgraph_step"),
        checkpoint_ns,
    ]
    if current_token_type in (ContentTypes.THINK.value, ContentTypes.THINK_AND_TEXT.value):
        key_list.append("reasoning")
    elif token_type_switch == "content":
        key_list.append("post-reasoning")

    if invoked_tool_count > 0:
        key_list.append(str(invoked_tool_count))
    return key_list


def join_keys(key_list: List[Any]) -> str:
    if any(key is None for key in key_list):
        missing = [name for name, key in zip(STEP_KEY_FIELDS, key_list) if key is None]
        raise ConfigurationError(f"Missing metadata: {missing}")
    return ",".join(str(key) for key in key_list)


class RunStepTracker:
    """Step ids, tool-call bindings and recorded run steps of one run"""

    def __init__(self):
        self.step_key_ids: Dict[str, List[str]] = {}
        self.tool_call_step_ids: Dict[str, str] = {}
        self.tool_calls: Dict[str, ToolCallRecord] = {}
        self.content_data: List[RunStep] = []
        self.content_index_map: Dict[str, int] = {}
        self.message_ids_by_step_key: Dict[str, str] = {}
        self.prelim_message_ids_by_step_key: Dict[str, str] = {}
        self.message_step_has_tool_calls: Dict[str, bool] = {}
        self.invoked_tool_ids: Set[str] = set()

    # Step ids

    def generate_step_id(self, step_key: str) -> Tuple[str, int]:
        """Allocate a new step id for `step_key`; returns (id, ordinal within the key)."""
        step_ids = self.step_key_ids.setdefault(step_key, [])
        step_id = f"step_{uuid.uuid4().hex}"
        step_ids.append(step_id)
        return step_id, len(step_ids) - 1

    def get_step_id_by_key(self, step_key: str, index: Optional[int] = None) -> str:
        """The most recent step id for the key, or the one at `index`."""
        step_ids = self.step_key_ids.get(step_key)
        if not step_ids:
            raise KeyError(f"No step IDs found for step key {step_key}")
        return step_ids[-1] if index is None else step_ids[index]

    def has_step(self, step_key: str) -> bool:
        return bool(self.step_key_ids.get(step_key))

    # Tool calls

    def bind_tool_calls(self, step_id: str, tool_calls: List[Dict[str, Any]]):
        """Bind each tool call id to `step_id`; an id already bound keeps its first step."""
        for tool_call in tool_calls:
            tool_call_id = tool_call.get("id") or ""
            if not tool_call_id or tool_call_id in self.tool_call_step_ids:
                continue
            self.tool_call_step_ids[tool_call_id] = step_id
            self.tool_calls[tool_call_id] = ToolCallRecord(
                id=tool_call_id,
                name=tool_call.get("name") or "",
                args=tool_call.get("args") or {},
                step_id=step_id,
            )

    def get_tool_call(self, tool_call_id: str) -> Optional[ToolCallRecord]:
        return self.tool_calls.get(tool_call_id)

    def step_id_for_tool_call(self, tool_call_id: str) -> str:
        step_id = self.tool_call_step_ids.get(tool_call_id)
        if not step_id:
            raise ConfigurationError(f"No step ID found for tool_call_id {tool_call_id}")
        return step_id

    def mark_tool_invoked(self, tool_call_id: str):
        """Record a tool call that already ran outside the tool stage."""
        self.invoked_tool_ids.add(tool_call_id)

    # Run steps

    @property
    def next_index(self) -> int:
        return len(self.content_data)

    def record(self, run_step: RunStep):
        self.content_data.append(run_step)
        self.content_index_map[run_step["id"]] = run_step["index"]

    def get_run_step(self, step_id: str) -> Optional[RunStep]:
        index = self.content_index_map.get(step_id)
        if index is None:
            return None
        return self.content_data[index]

    # Message ids

    def set_prelim_message_id(self, step_key: str, message_id: str):
        self.prelim_message_ids_by_step_key[step_key] = message_id

    def has_prelim_message_id(self, message_id: str) -> bool:
        return message_id in self.prelim_message_ids_by_step_key.values()

    def get_message_id(self, step_key: str, return_existing: bool = False) -> Optional[str]:
        """
        Message id for the step key.

        The first call for a key allocates an id (promoting a preliminary
        id seen on an empty model chunk when there is one). Later calls
        return None, or the existing id when `return_existing` is set.
        """
        message_id = self.message_ids_by_step_key.get(step_key)
        if message_id:
            return message_id if return_existing else None

        prelim_id = self.prelim_message_ids_by_step_key.pop(step_key, None)
        if prelim_id:
            self.message_ids_by_step_key[step_key] = prelim_id
            return prelim_id

        message_id = f"msg_{uuid.uuid4().hex}"
        self.message_ids_by_step_key[step_key] = message_id
        return message_id

    # Queries

    def get_run_steps(self, agent_id: Optional[str] = None) -> List[RunStep]:
        if not agent_id:
            return list(self.content_data)
        return [step for step in self.content_data if step.get("agent_id") == agent_id]

    def get_run_steps_by_agent(self) -> Dict[str, List[RunStep]]:
        steps_by_agent: Dict[str, List[RunStep]] = {}
        for step in self.content_data:
            if step.get("agent_id"):
                steps_by_agent.setdefault(step["agent_id"], []).append(step)
        return steps_by_agent

    def get_active_agent_ids(self) -> List[str]:
        return list(dict.fromkeys(step["agent_id"] for step in self.content_data if step.get("agent_id")))

    def get_content_part_agent_map(self) -> Dict[int, str]:
        """Content-part index -> agent id, for post-run analysis."""
        return {step["index"]: step["agent_id"] for step in self.content_data if step.get("agent_id")}

    def reset(self, keep_content: bool = False):
        if not keep_content:
            self.content_data.clear()
            self.content_index_map.clear()
        self.step_key_ids.clear()
        self.tool_call_step_ids.clear()
        self.tool_calls.clear()
        self.message_ids_by_step_key.clear()
        self.prelim_message_ids_by_step_key.clear()
        self.message_step_has_tool_calls.clear()
        self.invoked_tool_ids.clear()
