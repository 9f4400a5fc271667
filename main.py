"""
Vision Gateway Usage Example

This script demonstrates the call flow of the vision gateway:
1. Build requests and transcoded conversations offline
2. Price usage and summarize the ledger
3. Stream a real chart analysis when an API key is configured

Usage:
    python main.py [path/to/chart.png]
"""

import asyncio
import os
import sys
from datetime import datetime

from vision_gateway import (
    AnalysisRequest,
    ChartMetadata,
    ConfigError,
    ConfigManager,
    ConversationTurn,
    CostAccountant,
    CredentialStore,
    ImagePayload,
    JsonFileStore,
    PROMPT_CATEGORIES,
    ProviderError,
    TokenUsage,
    GatewayError,
    VisionGateway,
    format_cost,
)
from vision_gateway.transcoder import AnthropicTranscoder


KEY_ENV = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "google": "GOOGLE_API_KEY",
}

# 1x1 white PNG
SAMPLE_IMAGE = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAIAAACQd1PeAAAADElEQVR4nGP4//8/AAX+Av4N70a4AAAAAElFTkSuQmCC"
)


def request_validation_example():
    """
    Request validation example.

    Demonstrates:
    - The last history turn must be a user turn
    - Clear error messages for invalid inputs
    """
    print("=" * 60)
    print("Request Validation Example")
    print("=" * 60)

    image = ImagePayload.from_any(SAMPLE_IMAGE)
    requests = [
        AnalysisRequest(provider="openai", image=image),
        AnalysisRequest(provider="", image=ImagePayload("")),
        AnalysisRequest(
            provider="anthropic",
            image=image,
            history=[ConversationTurn("user", "q1"), ConversationTurn("assistant", "a1")],
        ),
    ]
    for request in requests:
        errors = request.validate()
        print(f"\n{request.provider or '<empty>'} with {len(request.history)} turn(s)")
        print(f"  Errors: {errors if errors else 'None (valid)'}")


def transcoding_example():
    """Show which message carries the image in a follow-up question."""
    print("\n" + "=" * 60)
    print("Conversation Transcoding Example")
    print("=" * 60)

    history = [
        ConversationTurn("user", "What is the trend?"),
        ConversationTurn("assistant", "An uptrend since March."),
        ConversationTurn("user", "Where is support?"),
    ]
    transcript = AnthropicTranscoder().transcode(
        history, ImagePayload.from_any(SAMPLE_IMAGE), prompt="", system_prompt="You are an analyst",
    )
    for message in transcript.messages:
        content = message["content"]
        kinds = "text" if isinstance(content, str) else "+".join(part["type"] for part in content)
        print(f"  {message['role']:<9} {kinds}")
    print(f"  system: {transcript.system}")

    print("\nPrompt categories:")
    for key, category in PROMPT_CATEGORIES.items():
        print(f"  {key:<20} {category.name} - {category.description}")


def billing_example():
    """
    Token usage and billing example.

    Demonstrates:
    - Pricing lookup with fallback to the provider's first model
    - Monthly summary over the usage ledger
    """
    print("\n" + "=" * 60)
    print("Token Usage & Billing Example")
    print("=" * 60)

    accountant = CostAccountant()
    usage = TokenUsage(input_tokens=1200, output_tokens=450)
    for provider, model in [
        ("openai", "gpt-4o"),
        ("anthropic", "claude-3-5-sonnet-20241022"),
        ("google", "gemini-1.5-flash"),
        ("google", "gemini-unknown"),
    ]:
        record = accountant.record(provider, model, usage.input_tokens, usage.output_tokens)
        print(f"  {provider}/{model}: {format_cost(record.cost)}")

    summary = accountant.monthly_summary()
    print(f"\nThis month ({datetime.now():%Y-%m}):")
    print(f"  Requests: {summary.request_count}")
    print(f"  Total: {format_cost(summary.month_total)}")
    print(f"  Average: {format_cost(summary.month_average)}")


def load_image() -> bytes | str:
    if len(sys.argv) > 1:
        with open(sys.argv[1], "rb") as f:
            return f.read()
    return SAMPLE_IMAGE


async def live_analysis_example():
    """
    Streamed analysis with a real vendor.

    Requires one of OPENAI_API_KEY, ANTHROPIC_API_KEY or GOOGLE_API_KEY, or
    keys in config.yaml.
    """
    print("\n" + "=" * 60)
    print("Live Analysis Example (requires an API key)")
    print("=" * 60)

    try:
        config_manager = ConfigManager()
        config_manager.config
    except ConfigError as e:
        print(f"\nConfiguration error: {e}")
        return

    credentials = CredentialStore(JsonFileStore(os.getenv("VISION_GATEWAY_STORE", ".vision_gateway.json")))
    for provider, env_name in KEY_ENV.items():
        if os.getenv(env_name) and not credentials.has(provider):
            credentials.set(provider, os.environ[env_name])

    providers = [
        name for name in KEY_ENV
        if credentials.has(name) or name in config_manager.get_configured_providers()
    ]
    if not providers:
        print("\nSkipping: no API keys configured.")
        print("To run this example, set one of: " + ", ".join(KEY_ENV.values()))
        return

    gateway = VisionGateway(config_manager=config_manager, credentials=credentials)
    provider = providers[0]
    print(f"\nProvider: {provider}  keys: {credentials.masked()}")
    try:
        result = await gateway.analyze(
            provider,
            load_image(),
            metadata=ChartMetadata(title="Bitcoin Price", source_url="https://bitview.space"),
            category="technical-analysis",
            on_fragment=lambda text: print(text, end="", flush=True),
        )
        print()
        if result.usage:
            print(f"\nTokens: {result.usage.input_tokens} in / {result.usage.output_tokens} out")
        summary = await gateway.reconciled_summary(provider)
        print(f"Month to date ({summary.source}): {format_cost(summary.month_total)}")
    except (GatewayError, ProviderError) as e:
        print(f"\nAnalysis failed: {e}")
    finally:
        await gateway.aclose()


async def main():
    """Run all examples."""
    print("\n" + "=" * 60)
    print("Vision Gateway - Usage Examples")
    print("=" * 60)

    request_validation_example()
    transcoding_example()
    billing_example()

    await live_analysis_example()

    print("\n" + "=" * 60)
    print("Examples completed!")
    print("=" * 60)


if __name__ == "__main__":
    asyncio.run(main())
