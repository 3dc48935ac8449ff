"""
Routing directives returned by the tool stage and the agent turn handler,
and their translation into langgraph commands.
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from langchain_core.messages import BaseMessage
from langgraph.types import Command, Send


@dataclass(frozen=True)
class Continue:
    """No override: the graph's static wiring decides what runs next."""


@dataclass(frozen=True)
class ExclusiveGoto:
    """Continue at one destination (or one set of destinations) only."""
    destination: Union[str, Tuple[str, ...]]
    messages: Optional[List[BaseMessage]] = None


@dataclass(frozen=True)
class Dispatch:
    """One entry of a parallel fan-out: a destination and the state slice it receives."""
    destination: str
    messages: List[BaseMessage] = field(default_factory=list)


@dataclass(frozen=True)
class ParallelGoto:
    dispatches: Tuple[Dispatch, ...]

    @property
    def destinations(self) -> List[str]:
        return [dispatch.destination for dispatch in self.dispatches]


RoutingDirective = Union[Continue, ExclusiveGoto, ParallelGoto]


def to_command(directive: RoutingDirective, update: Optional[Dict[str, Any]] = None) -> Optional[Command]:
    """
    Translate a directive into a langgraph Command for the enclosing graph.

    `update` is merged into the command's state update. Returns None for
    `Continue`, letting the caller return a plain state update instead.
    """
    update = dict(update or {})
    if isinstance(directive, ExclusiveGoto):
        if directive.messages is not None:
            update["messages"] = directive.messages
        goto = list(directive.destination) if isinstance(directive.destination, tuple) else directive.destination
        return Command(goto=goto, update=update)
    if isinstance(directive, ParallelGoto):
        sends = [Send(dispatch.destination, {"messages": dispatch.messages}) for dispatch in directive.dispatches]
        return Command(goto=sends, update=update)
    return None
