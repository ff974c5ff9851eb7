"""
Builtin Providers

Catalogue of vendors that ship preconfigured. All of them expose an
OpenAI-compatible chat completion endpoint authenticated by an API key.
"""
from typing import List

from chatrelay.models.provider import AuthType, Provider, ProviderType

API_KEY_FIELD = {
    "name": "api_key",
    "label": "API Key",
    "type": "password",
    "required": True,
}


def _api_key_field(help_text: str) -> List[dict]:
    return [{**API_KEY_FIELD, "help_text": help_text}]


BUILTIN_PROVIDERS: List[dict] = [
    {
        "id": "deepseek",
        "name": "DeepSeek",
        "base_url": "https://api.deepseek.com",
        "description": "DeepSeek chat and reasoning models",
        "supported_models": ["deepseek-chat", "deepseek-reasoner"],
        "model_mappings": {"DeepSeek-V3.2": "deepseek-chat"},
        "credential_fields": _api_key_field("Create a key at platform.deepseek.com"),
        "token_check_path": "/models",
        "credits_path": "/user/balance",
    },
    {
        "id": "glm",
        "name": "GLM",
        "base_url": "https://open.bigmodel.cn/api/paas/v4",
        "description": "Zhipu GLM models",
        "supported_models": ["glm-4*"],
        "credential_fields": _api_key_field("Create a key at open.bigmodel.cn"),
        "token_check_path": "/models",
    },
    {
        "id": "kimi",
        "name": "Kimi",
        "base_url": "https://api.moonshot.cn/v1",
        "description": "Moonshot Kimi models",
        "supported_models": ["kimi-*", "moonshot-v1-*"],
        "credential_fields": _api_key_field("Create a key at platform.moonshot.cn"),
        "token_check_path": "/models",
        "credits_path": "/users/me/balance",
    },
    {
        "id": "qwen",
        "name": "Qwen",
        "base_url": "https://dashscope.aliyuncs.com/compatible-mode/v1",
        "description": "Alibaba Qwen models via DashScope compatible mode",
        "supported_models": ["qwen-*", "qwen3-*"],
        "credential_fields": _api_key_field("Create a key in the DashScope console"),
        "token_check_path": "/models",
    },
    {
        "id": "minimax",
        "name": "MiniMax",
        "base_url": "https://api.minimax.chat/v1",
        "description": "MiniMax models",
        "supported_models": ["MiniMax-*", "abab*"],
        "credential_fields": _api_key_field("Create a key in the MiniMax console"),
        "token_check_path": "/models",
    },
]


def build_builtin_providers() -> List[Provider]:
    return [
        Provider(type=ProviderType.BUILTIN, auth_type=AuthType.API_KEY, **config)
        for config in BUILTIN_PROVIDERS
    ]
