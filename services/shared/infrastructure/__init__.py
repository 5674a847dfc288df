"""
Haven Shared Infrastructure Layer.
Inference gateway access shared across services.
"""
from .llm_client import (
    CompletionOptions,
    ContentFormatError,
    HttpxInferenceGateway,
    InferenceGateway,
    LLMClientSettings,
    LLMError,
    RateLimitError,
    RetryPolicy,
    complete_structured,
    extract_json_object,
)

__all__ = [
    "CompletionOptions",
    "ContentFormatError",
    "HttpxInferenceGateway",
    "InferenceGateway",
    "LLMClientSettings",
    "LLMError",
    "RateLimitError",
    "RetryPolicy",
    "complete_structured",
    "extract_json_object",
]
