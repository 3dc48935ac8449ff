"""
Tests for run-step identity and correlation
"""

import pytest

from agent_graph.core.errors import ConfigurationError
from agent_graph.run_steps.tracker import RunStepTracker, build_key_list, join_keys

METADATA = {
    "run_id": "run-1",
    "thread_id": "thread-1",
    "langgraph_node": "agent=a",
    "langgraph_step": 3,
    "checkpoint_ns": "a:123",
}


def test_step_ids_are_unique_with_increasing_ordinals():
    """Two ids for one key are distinct and numbered 0 and 1"""
    tracker = RunStepTracker()

    first_id, first_index = tracker.generate_step_id("key")
    second_id, second_index = tracker.generate_step_id("key")

    assert first_id != second_id
    assert (first_index, second_index) == (0, 1)
    assert tracker.get_step_id_by_key("key") == second_id
    assert tracker.get_step_id_by_key("key", 0) == first_id


def test_unknown_step_key_raises():
    """Looking up a key with no steps is an error"""
    with pytest.raises(KeyError):
        RunStepTracker().get_step_id_by_key("missing")


def test_tool_call_binding_first_writer_wins():
    """A bound tool call id is never rebound"""
    tracker = RunStepTracker()
    tracker.bind_tool_calls("step_1", [{"id": "call_1"}, {"id": ""}])
    tracker.bind_tool_calls("step_2", [{"id": "call_1"}, {"id": "call_2"}])

    assert tracker.step_id_for_tool_call("call_1") == "step_1"
    assert tracker.step_id_for_tool_call("call_2") == "step_2"
    with pytest.raises(ConfigurationError):
        tracker.step_id_for_tool_call("call_3")


def test_tool_call_records_keep_their_first_step():
    """Each call id gets one record, tied to the step that first announced it"""
    tracker = RunStepTracker()
    tracker.bind_tool_calls("step_1", [{"id": "call_1", "name": "add", "args": {"a": 1}}])
    tracker.bind_tool_calls("step_2", [{"id": "call_1", "name": "other", "args": {}}])

    assert tracker.get_tool_call("call_1") == {"id": "call_1", "name": "add", "args": {"a": 1}, "step_id": "step_1"}
    assert tracker.get_tool_call("call_2") is None

    tracker.reset()
    assert tracker.get_tool_call("call_1") is None


def test_invoked_tools_are_cleared_on_reset():
    """Tools run outside the tool stage are forgotten with the run"""
    tracker = RunStepTracker()
    tracker.mark_tool_invoked("srvtoolu_1")
    assert tracker.invoked_tool_ids == {"srvtoolu_1"}

    tracker.reset(keep_content=True)
    assert tracker.invoked_tool_ids == set()


def test_key_list_discriminators():
    """Reasoning phase and invoked tool count extend the key"""
    assert build_key_list(METADATA) == ["run-1", "thread-1", "agent=a", 3, "a:123"]
    assert build_key_list(METADATA, current_token_type="think")[-1] == "reasoning"
    assert build_key_list(METADATA, token_type_switch="content")[-1] == "post-reasoning"
    assert build_key_list(METADATA, invoked_tool_count=2)[-1] == "2"


def test_key_list_falls_back_to_langgraph_namespace():
    """The langgraph checkpoint namespace stands in for checkpoint_ns"""
    metadata = {key: value for key, value in METADATA.items() if key != "checkpoint_ns"}
    metadata["langgraph_checkpoint_ns"] = "ns"
    assert join_keys(build_key_list(metadata)) == "run-1,thread-1,agent=a,3,ns"


def test_missing_metadata_is_a_configuration_error():
    """Every step-key field is required"""
    metadata = {key: value for key, value in METADATA.items() if key != "thread_id"}
    with pytest.raises(ConfigurationError, match="thread_id"):
        join_keys(build_key_list(metadata))


def test_message_ids_promote_preliminary_id():
    """The id seen on an empty chunk becomes the message id"""
    tracker = RunStepTracker()
    tracker.set_prelim_message_id("key", "run-abc")

    assert tracker.has_prelim_message_id("run-abc")
    assert tracker.get_message_id("key") == "run-abc"
    assert tracker.get_message_id("key") is None
    assert tracker.get_message_id("key", return_existing=True) == "run-abc"
    assert tracker.get_message_id("other").startswith("msg_")


def test_recorded_steps_and_agent_queries():
    """Recorded steps are queryable by agent and by content index"""
    tracker = RunStepTracker()
    tracker.record({"id": "s0", "index": 0, "type": "message_creation", "agent_id": "a"})
    tracker.record({"id": "s1", "index": 1, "type": "tool_calls", "agent_id": "b", "group_id": 1})
    tracker.record({"id": "s2", "index": 2, "type": "message_creation", "agent_id": "a"})

    assert tracker.next_index == 3
    assert tracker.get_run_step("s1")["type"] == "tool_calls"
    assert [step["id"] for step in tracker.get_run_steps("a")] == ["s0", "s2"]
    assert list(tracker.get_run_steps_by_agent()) == ["a", "b"]
    assert tracker.get_active_agent_ids() == ["a", "b"]
    assert tracker.get_content_part_agent_map() == {0: "a", 1: "b", 2: "a"}


def test_reset_clears_maps_in_place():
    """Shared references stay valid across a reset"""
    tracker = RunStepTracker()
    shared = tracker.tool_call_step_ids
    tracker.generate_step_id("key")
    tracker.bind_tool_calls("step_1", [{"id": "call_1"}])
    tracker.record({"id": "s0", "index": 0, "type": "message_creation"})

    tracker.reset(keep_content=True)
    assert shared == {}
    assert tracker.tool_call_step_ids is shared
    assert not tracker.has_step("key")
    assert tracker.get_run_step("s0") is not None

    tracker.reset()
    assert tracker.get_run_steps() == []
