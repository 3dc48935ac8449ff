"""
Provider name -> chat model class registry.
"""
import logging
from typing import Any, Dict, Optional, Type

from langchain_core.language_models import BaseChatModel
from langchain_openai import AzureChatOpenAI, ChatOpenAI

from agent_graph.common.enums import Providers
from agent_graph.core.config import settings
from agent_graph.core.errors import ConfigurationError
from agent_graph.llm.fake import FakeStreamingChatModel

logger = logging.getLogger(__name__)

_CHAT_MODEL_CLASSES: Dict[str, Type[BaseChatModel]] = {
    Providers.OPENAI.value: ChatOpenAI,
    Providers.AZURE.value: AzureChatOpenAI,
    Providers.FAKE.value: FakeStreamingChatModel,
}


def register_chat_model_class(provider: str, model_class: Type[BaseChatModel]):
    """Make an additional provider available to agents and fallbacks."""
    _CHAT_MODEL_CLASSES[provider] = model_class
    logger.info(f"🔧 Registered chat model class {model_class.__name__} for provider '{provider}'")


def get_chat_model_class(provider: str) -> Type[BaseChatModel]:
    model_class = _CHAT_MODEL_CLASSES.get(provider)
    if model_class is None:
        raise ConfigurationError(f"Unsupported provider: {provider}")
    return model_class


def _with_credentials(provider: str, client_options: Dict[str, Any]) -> Dict[str, Any]:
    options = dict(client_options)
    if provider == Providers.OPENAI.value and settings.OPENAI_API_KEY:
        options.setdefault("api_key", settings.OPENAI_API_KEY)
    elif provider == Providers.AZURE.value:
        if settings.AZURE_OPENAI_API_KEY:
            options.setdefault("api_key", settings.AZURE_OPENAI_API_KEY)
        if settings.AZURE_OPENAI_ENDPOINT:
            options.setdefault("azure_endpoint", settings.AZURE_OPENAI_ENDPOINT)
        options.setdefault("api_version", settings.AZURE_OPENAI_API_VERSION)
    return options


def create_chat_model(provider: str, client_options: Optional[Dict[str, Any]] = None) -> BaseChatModel:
    model_class = get_chat_model_class(provider)
    return model_class(**_with_credentials(provider, client_options or {}))
