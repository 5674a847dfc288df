"""
Haven Shared Services Module.
Common infrastructure components shared across services.
"""
from .infrastructure import (
    CompletionOptions,
    ContentFormatError,
    HttpxInferenceGateway,
    InferenceGateway,
    LLMClientSettings,
    LLMError,
    complete_structured,
)
from .service_base import ServiceBase

__all__ = [
    "CompletionOptions",
    "ContentFormatError",
    "HttpxInferenceGateway",
    "InferenceGateway",
    "LLMClientSettings",
    "LLMError",
    "complete_structured",
    "ServiceBase",
]
