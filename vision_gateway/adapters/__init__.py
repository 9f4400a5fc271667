"""
Provider adapters for vision-capable LLM vendors.
"""

from .base import (
    ProviderAdapter,
    ProviderError,
    CredentialMissing,
    CredentialInvalid,
    VendorRequestFailed,
    TransportFailed,
    MalformedVendorPayload,
    VendorError,
    NO_ANALYSIS_PLACEHOLDER,
)
from .openai_adapter import OpenAIAdapter
from .anthropic_adapter import AnthropicAdapter
from .google_adapter import GoogleAdapter

__all__ = [
    "ProviderAdapter",
    "ProviderError",
    "CredentialMissing",
    "CredentialInvalid",
    "VendorRequestFailed",
    "TransportFailed",
    "MalformedVendorPayload",
    "VendorError",
    "NO_ANALYSIS_PLACEHOLDER",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GoogleAdapter",
]
