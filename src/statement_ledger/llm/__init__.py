"""LLM access: provider adapters, waterfall dispatch and output repair."""

from .dispatcher import DispatchResult, WaterfallDispatcher
from .providers import ChatMessage, ModelRequest, ProviderAdapter, build_provider_registry
from .repair import parse_model_json

__all__ = [
    "ChatMessage",
    "DispatchResult",
    "ModelRequest",
    "ProviderAdapter",
    "WaterfallDispatcher",
    "build_provider_registry",
    "parse_model_json",
]
