"""
Model Mapper

Resolves the model named in a request to a provider and the model name that
provider expects. Explicit mappings win (exact key first, then wildcard
patterns); otherwise an enabled provider that declares the model is used.
"""
from dataclasses import dataclass
from typing import Iterable, List, Mapping, Optional

from chatrelay.core.config import ModelMapping
from chatrelay.core.errors import ModelNotSupported
from chatrelay.models.provider import Provider


@dataclass(frozen=True)
class ResolvedRoute:
    provider_id: str
    upstream_model: str
    preferred_account_id: Optional[str] = None
    mapping: Optional[str] = None


def matches_pattern(model: str, pattern: str) -> bool:
    """Case-insensitive match supporting `*`, `prefix*`, `*suffix` and `a*b`."""
    model = model.lower()
    pattern = pattern.lower()
    if pattern == "*":
        return True
    if "*" not in pattern:
        return model == pattern
    if pattern.startswith("*") and pattern.count("*") == 1:
        return model.endswith(pattern[1:])
    if pattern.endswith("*") and pattern.count("*") == 1:
        return model.startswith(pattern[:-1])
    parts = pattern.split("*")
    if len(parts) == 2:
        head, tail = parts
        return len(model) >= len(head) + len(tail) and model.startswith(head) and model.endswith(tail)
    return False


def find_mapping(model: str, mappings: Mapping[str, ModelMapping]) -> Optional[ModelMapping]:
    mapping = mappings.get(model)
    if mapping is not None:
        return mapping
    for pattern, candidate in mappings.items():
        if "*" in pattern and matches_pattern(model, pattern):
            return candidate
    return None


def _declares(provider: Provider, model: str) -> bool:
    if model in provider.model_mappings:
        return True
    return bool(provider.supported_models) and provider.supports_model(model)


def resolve_all(
    model: str,
    mappings: Mapping[str, ModelMapping],
    providers: Iterable[Provider],
) -> List[ResolvedRoute]:
    """
    All routes that can serve a model, best first.

    An explicit mapping yields exactly one route (when its provider is
    enabled). Without a mapping every enabled provider declaring the model
    is a candidate, in registry order.
    """
    providers = [p for p in providers if p.enabled]
    mapping = find_mapping(model, mappings)
    if mapping is not None:
        by_id = {p.id: p for p in providers}
        if mapping.provider_id not in by_id:
            return []
        return [ResolvedRoute(
            provider_id=mapping.provider_id,
            upstream_model=mapping.actual_model,
            preferred_account_id=mapping.preferred_account_id,
            mapping=mapping.request_model,
        )]

    return [
        ResolvedRoute(provider_id=p.id, upstream_model=p.upstream_model(model))
        for p in providers
        if _declares(p, model)
    ]


def resolve(
    model: str,
    mappings: Mapping[str, ModelMapping],
    providers: Iterable[Provider],
) -> ResolvedRoute:
    """
    Raises:
        ModelNotSupported: nothing maps or declares the model
    """
    routes = resolve_all(model, mappings, providers)
    if not routes:
        raise ModelNotSupported(model)
    return routes[0]


def available_models(mappings: Mapping[str, ModelMapping], providers: Iterable[Provider]) -> List[dict]:
    """Model list for /v1/models: mapping keys without wildcards, then provider-declared models."""
    seen = set()
    models = []
    for key, mapping in mappings.items():
        if "*" in key or key in seen:
            continue
        seen.add(key)
        models.append({"id": key, "owned_by": mapping.provider_id})
    for provider in providers:
        if not provider.enabled:
            continue
        for name in list(provider.supported_models) + list(provider.model_mappings):
            if "*" in name or name in seen:
                continue
            seen.add(name)
            models.append({"id": name, "owned_by": provider.id})
    return models
