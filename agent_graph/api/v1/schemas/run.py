"""
Pydantic schemas for API request and response validation.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Any, Dict, List, Literal, Optional, Union

from agent_graph.core.config import settings


class EdgeSchema(BaseModel):
    """A declared transition between agents."""
    model_config = ConfigDict(populate_by_name=True)

    source: Union[str, List[str]] = Field(..., alias="from")
    destination: Union[str, List[str]] = Field(..., alias="to")
    kind: Optional[Literal["handoff", "direct"]] = None
    prompt: Optional[str] = None
    exclude_results: Optional[bool] = None
    prompt_key: Optional[str] = None
    description: Optional[str] = None


class AgentSchema(BaseModel):
    agent_id: str
    name: Optional[str] = None
    provider: str = settings.DEFAULT_PROVIDER
    client_options: Dict[str, Any] = Field(default_factory=dict)
    instructions: Optional[str] = None
    additional_instructions: Optional[str] = None
    tool_end: bool = False


class MessageSchema(BaseModel):
    role: Literal["user", "assistant", "system"]
    content: str


class RunRequest(BaseModel):
    """The request model for streaming a workflow run."""
    agents: List[AgentSchema] = Field(..., min_length=1)
    edges: List[EdgeSchema] = Field(default_factory=list)
    messages: List[MessageSchema] = Field(..., min_length=1)
    thread_id: Optional[str] = None


class RunCancelResponse(BaseModel):
    run_id: str
    message: str
