from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Mapping

from .errors import ConfigurationError, ModelNotAllowedError, ModelNotFoundError


class ProviderKind(str, Enum):
    OPENAI = "openai"
    HUGGINGFACE = "huggingface"
    CHUTES = "chutes"

    @classmethod
    def parse(cls, value: Any) -> "ProviderKind":
        try:
            return cls(str(value or "openai").lower())
        except ValueError:
            return cls.OPENAI


@dataclass(frozen=True)
class ProviderRoute:
    id: str
    base_url: str
    api_key: str | None = None
    kind: ProviderKind = ProviderKind.OPENAI

    def url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path.lstrip('/')}"


@dataclass(frozen=True)
class ModelRoute:
    """Capability record for one routable model."""

    id: str
    provider_id: str
    type: str = "chat"
    supports_image_upload: bool = False
    supports_video_upload: bool = False


@dataclass(frozen=True)
class ApiKeyGrant:
    key: str
    name: str = "Unnamed Key"
    allowed_models: tuple[str, ...] = ()

    def allows(self, model_id: str) -> bool:
        return not self.allowed_models or model_id in self.allowed_models


MASTER_GRANT_NAME = "Master Key"


@dataclass(frozen=True)
class ResolvedRoute:
    model: ModelRoute
    provider: ProviderRoute


@dataclass(frozen=True)
class RouteSnapshot:
    """
    Immutable view of the provider/model/API-key tables.

    Built once per reload and handed to the gateway on every call, so request
    handling never reads mutable global state.
    """

    providers: Mapping[str, ProviderRoute] = field(default_factory=lambda: MappingProxyType({}))
    models: Mapping[str, ModelRoute] = field(default_factory=lambda: MappingProxyType({}))
    api_keys: tuple[ApiKeyGrant, ...] = ()

    @classmethod
    def build(
        cls,
        providers: list[ProviderRoute],
        models: list[ModelRoute],
        api_keys: list[ApiKeyGrant] | None = None,
    ) -> "RouteSnapshot":
        return cls(
            providers=MappingProxyType({p.id: p for p in providers}),
            models=MappingProxyType({m.id: m for m in models}),
            api_keys=tuple(api_keys or ()),
        )

    def find_grant(self, token: str | None) -> ApiKeyGrant | None:
        if not token:
            return None
        for grant in self.api_keys:
            if grant.key == token:
                return grant
        return None

    def visible_models(self, grant: ApiKeyGrant) -> list[ModelRoute]:
        return [m for m in self.models.values() if grant.allows(m.id)]

    def resolve(self, model_id: str, grant: ApiKeyGrant) -> ResolvedRoute:
        model = self.models.get(model_id)
        if model is None:
            available = ", ".join(self.models)
            raise ModelNotFoundError(f"Model '{model_id}' not supported. Available models: {available}")
        if not grant.allows(model_id):
            raise ModelNotAllowedError(
                f"Access denied. This API key does not have permission to use model '{model_id}'."
            )
        provider = self.providers.get(model.provider_id)
        if provider is None or not provider.api_key:
            raise ConfigurationError(f"Provider '{model.provider_id}' not configured. Missing API key.")
        return ResolvedRoute(model=model, provider=provider)


def snapshot_from_payload(payload: dict[str, Any]) -> RouteSnapshot:
    """Build a snapshot from the admin layer's JSON document; disabled records are skipped."""
    providers = [
        ProviderRoute(
            id=str(p["id"]),
            base_url=str(p.get("baseUrl") or ""),
            api_key=p.get("apiKey") or None,
            kind=ProviderKind.parse(p.get("type")),
        )
        for p in payload.get("providers") or []
        if isinstance(p, dict) and p.get("id") and p.get("enabled", True)
    ]
    models = [
        ModelRoute(
            id=str(m["id"]),
            provider_id=str(m.get("providerId") or ""),
            type=str(m.get("type") or "chat"),
            supports_image_upload=bool(m.get("supportsImageUpload", False)),
            supports_video_upload=bool(m.get("supportsVideoUpload", False)),
        )
        for m in payload.get("models") or []
        if isinstance(m, dict) and m.get("id") and m.get("enabled", True)
    ]
    api_keys = [
        ApiKeyGrant(
            key=str(k["key"]),
            name=str(k.get("name") or "Unnamed Key"),
            allowed_models=tuple(str(x) for x in k.get("allowedModels") or ()),
        )
        for k in payload.get("apiKeys") or []
        if isinstance(k, dict) and k.get("key") and k.get("enabled", True)
    ]
    return RouteSnapshot.build(providers, models, api_keys)


def load_route_snapshot(path: str) -> RouteSnapshot:
    file = Path(path)
    if not file.exists():
        return RouteSnapshot()
    payload = json.loads(file.read_text(encoding="utf-8"))
    if not isinstance(payload, dict):
        raise ValueError("Route file must contain a JSON object.")
    return snapshot_from_payload(payload)
