"""
Resolves which kind of tool a bound tool is, once, when the tool map is set.

Tools can declare their kind through `metadata={"tool_kind": ...}`;
otherwise reserved tool names decide. Each kind determines which hidden
arguments the tool stage injects:

    transfer        state
    programmatic    tool_map, tool_defs, session_id, injected_files
    search          tool_registry
    code_execution  session_id, injected_files

Tools receiving these must declare them as `InjectedToolArg` parameters.
"""
from typing import Dict

from langchain_core.tools import BaseTool

from agent_graph.common.enums import (
    CONDITIONAL_TRANSFER,
    EXECUTE_CODE,
    LC_TRANSFER_TO_,
    PROGRAMMATIC_TOOL_CALLING,
    TOOL_SEARCH,
    ToolKind,
)

_RESERVED_NAMES = {
    PROGRAMMATIC_TOOL_CALLING: ToolKind.PROGRAMMATIC,
    TOOL_SEARCH: ToolKind.SEARCH,
    EXECUTE_CODE: ToolKind.CODE_EXECUTION,
    CONDITIONAL_TRANSFER: ToolKind.TRANSFER,
}

SESSION_AWARE_KINDS = frozenset({ToolKind.PROGRAMMATIC, ToolKind.CODE_EXECUTION})


def resolve_tool_kind(tool: BaseTool) -> ToolKind:
    declared = (tool.metadata or {}).get("tool_kind")
    if declared:
        return ToolKind(declared)
    if tool.name in _RESERVED_NAMES:
        return _RESERVED_NAMES[tool.name]
    if tool.name.startswith(LC_TRANSFER_TO_):
        return ToolKind.TRANSFER
    return ToolKind.GENERIC


def build_kind_registry(tool_map: Dict[str, BaseTool]) -> Dict[str, ToolKind]:
    return {name: resolve_tool_kind(tool) for name, tool in tool_map.items()}


# Argument names filled in by the tool stage, never by the model
INJECTED_ARG_NAMES = frozenset({
    "state",
    "tool_call_id",
    "tool_map",
    "tool_defs",
    "tool_registry",
    "session_id",
    "injected_files",
})
