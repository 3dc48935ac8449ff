# agent_graph/common/enums.py
"""
Shared names used across the graph, the tool stage and the stream handlers.
"""
from enum import Enum


class GraphEvents(str, Enum):
    """Event names routed through the handler registry"""
    ON_RUN_STEP = "on_run_step"
    ON_RUN_STEP_DELTA = "on_run_step_delta"
    ON_RUN_STEP_COMPLETED = "on_run_step_completed"
    ON_MESSAGE_DELTA = "on_message_delta"
    ON_REASONING_DELTA = "on_reasoning_delta"

    # Events produced by the langchain/langgraph event stream
    CHAT_MODEL_STREAM = "on_chat_model_stream"
    CHAT_MODEL_END = "on_chat_model_end"
    TOOL_END = "on_tool_end"
    CUSTOM_EVENT = "on_custom_event"


class StepTypes(str, Enum):
    MESSAGE_CREATION = "message_creation"
    TOOL_CALLS = "tool_calls"


class ContentTypes(str, Enum):
    TEXT = "text"
    THINK = "think"
    THINK_AND_TEXT = "think_and_text"
    THINKING = "thinking"
    REASONING = "reasoning"
    REASONING_CONTENT = "reasoning_content"
    TOOL_CALL = "tool_call"


class Providers(str, Enum):
    OPENAI = "openai"
    AZURE = "azureOpenAI"
    FAKE = "fake"


class EdgeKind(str, Enum):
    HANDOFF = "handoff"
    DIRECT = "direct"


class ToolKind(str, Enum):
    """Tool identities that receive context the model never sees"""
    TRANSFER = "transfer"
    PROGRAMMATIC = "programmatic"
    SEARCH = "search"
    CODE_EXECUTION = "code_execution"
    GENERIC = "generic"


class ErrorType(str, Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    SERVER_ERROR = "server_error"
    UNAVAILABLE = "unavailable"
    BAD_REQUEST = "bad_request"
    AUTH = "auth"
    UNKNOWN = "unknown"


# Node-name prefixes inside an agent subgraph
AGENT_NODE_PREFIX = "agent="
TOOLS_NODE_PREFIX = "tools="

# Tool names and prefixes
LC_TRANSFER_TO_ = "lc_transfer_to_"
CONDITIONAL_TRANSFER = "conditional_transfer"
EXECUTE_CODE = "execute_code"
TOOL_SEARCH = "tool_search"
PROGRAMMATIC_TOOL_CALLING = "run_tools_with_code"
SERVER_TOOL_ID_PREFIX = "srvtoolu_"

DEFAULT_PROMPT_KEY = "instructions"
