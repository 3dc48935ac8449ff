"""
Deterministic streaming chat model for tests and dry runs.
"""
import asyncio
import json
from typing import Any, AsyncIterator, List, Optional, Sequence, Union

from langchain_core.callbacks import AsyncCallbackManagerForLLMRun, CallbackManagerForLLMRun
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.messages.tool import tool_call_chunk
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult


class FakeStreamingChatModel(BaseChatModel):
    """
    Replays scripted responses in order, wrapping around at the end.

    A response may be a string, an AIMessage (tool calls are streamed as
    tool-call chunks) or an exception instance, which is raised instead.
    """

    responses: List[Any]
    model: str = "fake-model"
    sleep: Optional[float] = None
    i: int = 0
    bound_tools: List[Any] = []
    calls: List[List[BaseMessage]] = []

    @property
    def _llm_type(self) -> str:
        return "fake-streaming-chat-model"

    def bind_tools(self, tools: Sequence[Any], **kwargs: Any) -> "FakeStreamingChatModel":
        self.bound_tools = list(tools)
        return self

    def _next_response(self, messages: List[BaseMessage]) -> AIMessage:
        self.calls = [*self.calls, list(messages)]
        response: Union[str, AIMessage, BaseException] = self.responses[self.i % len(self.responses)]
        self.i += 1
        if isinstance(response, BaseException):
            raise response
        if isinstance(response, str):
            return AIMessage(content=response)
        return response

    def _generate(
        self,
        messages: List[BaseMessage],
        stop: Optional[List[str]] = None,
        run_manager: Optional[CallbackManagerForLLMRun] = None,
        **kwargs: Any,
    ) -> ChatResult:
        return ChatResult(generations=[ChatGeneration(message=self._next_response(messages))])

    async def _astream(
        self,
        messages: List[BaseMessage],
        stop: Optional[List[str]] = None,
        run_manager: Optional[AsyncCallbackManagerForLLMRun] = None,
        **kwargs: Any,
    ) -> AsyncIterator[ChatGenerationChunk]:
        message = self._next_response(messages)
        content = message.content if isinstance(message.content, str) else ""

        words = content.split(" ") if content else []
        for index, word in enumerate(words):
            if self.sleep:
                await asyncio.sleep(self.sleep)
            text = word if index == len(words) - 1 else f"{word} "
            yield ChatGenerationChunk(message=AIMessageChunk(content=text, id=message.id))

        if message.tool_calls:
            chunks = [
                tool_call_chunk(name=tc["name"], args=json.dumps(tc["args"]), id=tc["id"], index=index)
                for index, tc in enumerate(message.tool_calls)
            ]
            yield ChatGenerationChunk(message=AIMessageChunk(content="", tool_call_chunks=chunks, id=message.id))
        elif not words:
            yield ChatGenerationChunk(message=AIMessageChunk(content="", id=message.id))
