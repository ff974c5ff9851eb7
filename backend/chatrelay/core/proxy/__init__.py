"""
Proxy module initialization.
"""
from .openai_models import OpenAIRequest, OpenAIMessage, OpenAIModel, OpenAICompletionRequest
from .upstream import UpstreamClient, chat_url
from .server import ProxyServer, ProxyStatus

__all__ = [
    "OpenAIRequest",
    "OpenAIMessage",
    "OpenAIModel",
    "OpenAICompletionRequest",
    "UpstreamClient",
    "chat_url",
    "ProxyServer",
    "ProxyStatus",
]
