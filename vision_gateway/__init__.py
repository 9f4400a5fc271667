"""
Vision Gateway - 多视觉模型图表分析统一接入与计费系统

A unified interface for chart analysis across OpenAI, Anthropic and Google
vision models, with streaming, conversation transcoding and cost tracking.

Example usage:
    from vision_gateway import VisionGateway, ChartMetadata

    gateway = VisionGateway(config_path="config.yaml")
    result = await gateway.analyze(
        provider="anthropic",
        image=png_bytes,
        metadata=ChartMetadata(title="BTC/USD 1D"),
        on_fragment=lambda text: print(text, end=""),
    )
    print(result.usage)
"""

__version__ = "0.1.0"

# Core data models
from .models import (
    AnalysisRequest,
    AnalysisResult,
    ChartMetadata,
    ConversationTurn,
    CostSummary,
    ImagePayload,
    PricingRule,
    TokenUsage,
    UsageRecord,
)

# Configuration management
from .config import ConfigManager, ConfigError

# Pricing and billing
from .pricing import PricingTable, PRICING
from .billing import CostAccountant, BillingError, format_cost

# Storage
from .storage import CredentialStore, JsonFileStore, MemoryStore, StorageError

# Prompts
from .prompts import PROMPT_CATEGORIES, DEFAULT_CATEGORY

# Credential validation
from .validator import classify_status

# Main gateway (unified entry point)
from .gateway import (
    VisionGateway,
    GatewayError,
    RateLimited,
    UnknownProvider,
    ValidationError,
)

# Provider adapters (for advanced usage)
from .adapters import (
    ProviderAdapter,
    ProviderError,
    CredentialMissing,
    CredentialInvalid,
    VendorRequestFailed,
    TransportFailed,
    MalformedVendorPayload,
    VendorError,
    OpenAIAdapter,
    AnthropicAdapter,
    GoogleAdapter,
)

__all__ = [
    # Version
    "__version__",
    # Main entry point
    "VisionGateway",
    "GatewayError",
    "RateLimited",
    "UnknownProvider",
    "ValidationError",
    # Data models
    "AnalysisRequest",
    "AnalysisResult",
    "ChartMetadata",
    "ConversationTurn",
    "CostSummary",
    "ImagePayload",
    "PricingRule",
    "TokenUsage",
    "UsageRecord",
    # Configuration
    "ConfigManager",
    "ConfigError",
    # Billing
    "PricingTable",
    "PRICING",
    "CostAccountant",
    "BillingError",
    "format_cost",
    # Storage
    "CredentialStore",
    "JsonFileStore",
    "MemoryStore",
    "StorageError",
    # Prompts
    "PROMPT_CATEGORIES",
    "DEFAULT_CATEGORY",
    # Validation
    "classify_status",
    # Provider adapters
    "ProviderAdapter",
    "ProviderError",
    "CredentialMissing",
    "CredentialInvalid",
    "VendorRequestFailed",
    "TransportFailed",
    "MalformedVendorPayload",
    "VendorError",
    "OpenAIAdapter",
    "AnthropicAdapter",
    "GoogleAdapter",
]
