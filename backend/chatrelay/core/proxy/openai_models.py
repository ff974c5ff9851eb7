"""
OpenAI Protocol Models

Request models for the OpenAI-compatible surface. Only the fields the proxy
looks at are declared; everything else is forwarded untouched.
"""
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, field_validator


class OpenAIMessage(BaseModel):
    model_config = ConfigDict(extra="allow")

    role: str
    content: Optional[Union[str, List[Dict[str, Any]]]] = None
    name: Optional[str] = None


class OpenAIRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: str
    messages: List[OpenAIMessage]
    stream: bool = False
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None

    @field_validator("model")
    @classmethod
    def _model_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("model must not be empty")
        return value

    @field_validator("messages")
    @classmethod
    def _has_messages(cls, value: List[OpenAIMessage]) -> List[OpenAIMessage]:
        if not value:
            raise ValueError("messages must not be empty")
        return value


class OpenAIModel(BaseModel):
    id: str
    object: str = "model"
    owned_by: str


COMPLETION_PASSTHROUGH = ("stream", "max_tokens", "temperature", "top_p", "n", "stop")


class OpenAICompletionRequest(BaseModel):
    """Legacy /v1/completions request, served by converting the prompt to chat messages."""
    model_config = ConfigDict(extra="allow")

    model: str
    prompt: Union[str, List[str]]
    stream: bool = False
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    top_p: Optional[float] = None
    n: Optional[int] = None
    stop: Optional[Union[str, List[str]]] = None

    @field_validator("model")
    @classmethod
    def _model_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("model must not be empty")
        return value

    def messages(self) -> List[Dict[str, str]]:
        # A list prompt alternates user and assistant turns, starting with the user.
        if isinstance(self.prompt, str):
            return [{"role": "user", "content": self.prompt}]
        return [
            {"role": "user" if index % 2 == 0 else "assistant", "content": text}
            for index, text in enumerate(self.prompt)
        ]

    def to_chat_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"model": self.model, "messages": self.messages()}
        for name in COMPLETION_PASSTHROUGH:
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload
