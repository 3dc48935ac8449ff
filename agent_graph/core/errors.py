"""
Exceptions raised by the graph core.
"""
import json


class ConfigurationError(Exception):
    """Missing or invalid configuration or run metadata"""
    pass


class ToolNotFoundError(Exception):
    """A tool call referenced a name that is not bound to the agent"""

    def __init__(self, name: str):
        super().__init__(f'Tool "{name}" not found.')
        self.name = name


class EmptyMessagesError(Exception):
    """No messages were left to send to the model"""

    def __init__(self):
        super().__init__(json.dumps({
            "type": "empty_messages",
            "info": "Message pruning removed all messages as none fit in the context window. "
                    "Please increase the context window size or make your message shorter.",
        }))


class RunAbortedError(Exception):
    """The run's abort signal fired while work was still in flight"""
    pass
