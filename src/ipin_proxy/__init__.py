from .config import ProxyConfig
from .errors import GatewayError
from .gateway import Gateway
from .normalizer import normalize_response
from .routing import ApiKeyGrant, ModelRoute, ProviderKind, ProviderRoute, RouteSnapshot, load_route_snapshot
from .text_extraction import extract_text
from .usage import normalize_usage

__all__ = [
    "ApiKeyGrant",
    "Gateway",
    "GatewayError",
    "ModelRoute",
    "ProviderKind",
    "ProviderRoute",
    "ProxyConfig",
    "RouteSnapshot",
    "extract_text",
    "load_route_snapshot",
    "normalize_response",
    "normalize_usage",
]
