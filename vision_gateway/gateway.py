"""
VisionGateway - Unified entry point for chart analysis across vision providers.

Integrates provider adapters, credential storage, rate limiting and cost
accounting to provide a single API for analysis calls.
"""

import logging
import math
import time
from typing import Any, Callable, Sequence

import httpx

from .adapters import (
    AnthropicAdapter,
    CredentialMissing,
    GoogleAdapter,
    OpenAIAdapter,
    ProviderAdapter,
    ProviderError,
)
from .billing import BillingError, CostAccountant
from .config import ConfigError, ConfigManager
from .models import (
    AnalysisRequest,
    AnalysisResult,
    ChartMetadata,
    ConversationTurn,
    CostSummary,
    ImagePayload,
    UsageRecord,
)
from .pricing import PricingTable
from .storage import CredentialStore, StorageError

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[str], Any]


class GatewayError(Exception):
    """Base exception for gateway errors."""
    pass


class ValidationError(GatewayError):
    """Exception raised when request validation fails."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__(f"Validation failed: {'; '.join(errors)}")


class UnknownProvider(GatewayError):
    """The provider name has no adapter."""

    def __init__(self, provider: str):
        self.provider = provider
        super().__init__(f"Unknown provider: {provider}")


class RateLimited(GatewayError):
    """A request arrived before the minimum interval elapsed."""

    def __init__(self, retry_after: float):
        self.retry_after = retry_after
        seconds = math.ceil(retry_after)
        super().__init__(f"Please wait {seconds} seconds before analyzing again")


class VisionGateway:
    """
    统一图表分析接入层 - 对外提供单一API，对内调度三个视觉模型平台。

    Features:
    - One analysis API over OpenAI, Anthropic and Google
    - Minimum interval between accepted analysis requests
    - Per-request cost recording into a bounded usage ledger
    - Monthly cost summaries, reconciled with vendor reports when possible
    """

    PROVIDER_ADAPTERS: dict[str, type[ProviderAdapter]] = {
        "openai": OpenAIAdapter,
        "anthropic": AnthropicAdapter,
        "google": GoogleAdapter,
    }

    def __init__(
        self,
        config_manager: ConfigManager | None = None,
        config_path: str | None = None,
        credentials: CredentialStore | None = None,
        accountant: CostAccountant | None = None,
        clock: Callable[[], float] = time.monotonic,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Initialize VisionGateway.

        Args:
            config_manager: Optional ConfigManager instance. If None, creates one.
            config_path: Optional path to config file (used if config_manager is None)
            credentials: Credential store; keys stored here take precedence over config
            accountant: Cost accountant owning the usage ledger
            clock: Monotonic time source in seconds, used for rate limiting
            transport: Optional httpx transport for the shared client
        """
        self._config_manager = config_manager or ConfigManager(config_path)
        config = self._config_manager.config
        self._credentials = credentials or CredentialStore()
        self._accountant = accountant or CostAccountant(
            pricing=PricingTable(config.pricing),
            capacity=config.gateway.ledger_capacity,
        )
        self._clock = clock
        self._transport = transport
        self._adapters: dict[str, ProviderAdapter] = {}
        self._http_client: httpx.AsyncClient | None = None
        self._last_request_at: float | None = None
        self.min_interval = config.gateway.min_request_interval

    @property
    def config_manager(self) -> ConfigManager:
        return self._config_manager

    @property
    def credentials(self) -> CredentialStore:
        return self._credentials

    @property
    def accountant(self) -> CostAccountant:
        return self._accountant

    def _get_adapter(self, provider: str) -> ProviderAdapter:
        """
        Get or create the adapter for a provider.

        Raises:
            UnknownProvider: If the provider has no adapter
        """
        if provider in self._adapters:
            return self._adapters[provider]

        adapter_class = self.PROVIDER_ADAPTERS.get(provider)
        if adapter_class is None:
            raise UnknownProvider(provider)

        provider_config = self._config_manager.get_provider_config(provider)
        adapter = adapter_class(
            model=provider_config.model,
            base_url=provider_config.base_url,
            max_tokens=provider_config.max_tokens,
            temperature=provider_config.temperature,
            client=self.http_client,
        )
        self._adapters[provider] = adapter
        return adapter

    @property
    def http_client(self) -> httpx.AsyncClient:
        """
        One connection pool for every adapter, so the configured limits apply
        to the gateway as a whole.
        """
        if self._http_client is None or self._http_client.is_closed:
            http_config = self._config_manager.config.http_client
            client_kwargs: dict[str, Any] = {
                "timeout": http_config.timeout,
                "limits": httpx.Limits(
                    max_connections=http_config.max_connections,
                    max_keepalive_connections=http_config.max_keepalive_connections,
                ),
            }
            proxy_url = self._config_manager.get_proxy_url()
            if proxy_url:
                client_kwargs["proxy"] = proxy_url
            if self._transport is not None:
                client_kwargs["transport"] = self._transport
            self._http_client = httpx.AsyncClient(**client_kwargs)
        return self._http_client

    def get_credential(self, provider: str) -> str | None:
        """Stored credential, falling back to the configured api_key."""
        return self._credentials.get(provider) or self._config_manager.get_provider_config(provider).api_key

    def _check_rate_limit(self) -> None:
        now = self._clock()
        if self._last_request_at is not None:
            elapsed = now - self._last_request_at
            if elapsed < self.min_interval:
                raise RateLimited(self.min_interval - elapsed)
        self._last_request_at = now

    async def analyze(
        self,
        provider: str,
        image: bytes | str | ImagePayload,
        metadata: ChartMetadata | None = None,
        history: Sequence[ConversationTurn] = (),
        category: str | None = None,
        on_fragment: FragmentCallback | None = None,
    ) -> AnalysisResult:
        """
        Analyze a chart image with the given provider.

        This is the main entry point. It:
        1. Validates the request and resolves the adapter
        2. Rejects requests arriving within the minimum interval
        3. Looks up the credential
        4. Calls the provider, streaming fragments when a callback is given
        5. Records one usage entry for the completed request

        Args:
            provider: Provider name ('openai', 'anthropic', 'google')
            image: Image bytes, base64 string, data URL or ImagePayload
            metadata: Chart metadata for the prompt templates
            history: Conversation so far; if non-empty its last turn must be a user turn
            category: Prompt category; defaults to the configured category
            on_fragment: Called with each text fragment in arrival order

        Returns:
            AnalysisResult with the assembled text and vendor usage (None if unreported)

        Raises:
            ValidationError: If request parameters are invalid
            UnknownProvider: If the provider has no adapter
            RateLimited: If called again before the minimum interval elapsed
            CredentialMissing: If no credential is stored or configured
            ProviderError: If the vendor call fails
        """
        metadata = metadata or ChartMetadata()
        request = AnalysisRequest(
            provider=provider,
            image=ImagePayload.from_any(image),
            metadata=metadata,
            category=category or self._config_manager.config.gateway.default_category,
            history=list(history),
        )
        errors = request.validate()
        if errors:
            raise ValidationError(errors)

        adapter = self._get_adapter(provider)
        self._check_rate_limit()

        credential = self.get_credential(provider)
        if not credential:
            raise CredentialMissing(
                provider,
                f"API key not configured for {provider}. Please add your API key in settings.",
            )

        result = await adapter.analyze(
            request.image,
            request.metadata,
            credential,
            on_fragment=on_fragment,
            history=request.history,
            category=request.category,
        )
        self._record_usage(adapter, request, result)
        return result

    def _record_usage(
        self,
        adapter: ProviderAdapter,
        request: AnalysisRequest,
        result: AnalysisResult,
    ) -> UsageRecord | None:
        usage = result.usage
        if usage is None:
            # 厂商未返回用量时按实际发送的文本估算
            prompt = adapter.prompt_text(request.metadata, request.history, request.category)
            usage = adapter.estimate_tokens(prompt, result.text)

        try:
            return self._accountant.record(
                provider=request.provider,
                model=result.model or adapter.model,
                input_tokens=usage.input_tokens,
                output_tokens=usage.output_tokens,
            )
        except (BillingError, StorageError) as e:
            logger.error("Failed to record usage for %s: %s", request.provider, e)
            return None

    async def validate_credential(self, provider: str, credential: str | None) -> bool:
        """
        Probe the provider with a minimal request.

        Raises:
            UnknownProvider: If the provider has no adapter
        """
        adapter = self._get_adapter(provider)
        return await adapter.validate_credential(credential)

    async def save_credential(self, provider: str, credential: str) -> bool:
        """Validate a credential and store it only when the vendor accepts it."""
        credential = (credential or "").strip()
        if not credential:
            raise StorageError("API key cannot be empty")
        if not await self.validate_credential(provider, credential):
            return False
        self._credentials.set(provider, credential)
        return True

    def monthly_summary(self, provider: str | None = None) -> CostSummary:
        return self._accountant.monthly_summary(provider)

    async def reconciled_summary(self, provider: str) -> CostSummary:
        """
        This month's cost for a provider, from the vendor cost report when the
        provider has one and an admin key is configured, otherwise local.
        """
        adapter = self._get_adapter(provider)
        admin_key = self._config_manager.get_provider_config(provider).admin_key
        return await self._accountant.reconciled_summary(provider, admin_key, adapter)

    def get_available_providers(self) -> list[str]:
        return list(self.PROVIDER_ADAPTERS.keys())

    # ------------------------------------------------------------------
    # tagged result surface

    async def handle_analyze(
        self,
        provider: str,
        image: bytes | str | ImagePayload,
        metadata: ChartMetadata | None = None,
        history: Sequence[ConversationTurn] = (),
        category: str | None = None,
        on_fragment: FragmentCallback | None = None,
    ) -> dict:
        """
        analyze() with failures folded into the result.

        Returns:
            {"success": True, "data": {"text": ..., "usage": {...} | None}} or
            {"success": False, "error": "<message>"}
        """
        try:
            result = await self.analyze(
                provider,
                image,
                metadata=metadata,
                history=history,
                category=category,
                on_fragment=on_fragment,
            )
        except ProviderError as e:
            return {"success": False, "error": e.message}
        except (GatewayError, ConfigError, StorageError) as e:
            return {"success": False, "error": str(e)}
        except (TypeError, ValueError) as e:
            return {"success": False, "error": f"Invalid request: {e}"}
        return {"success": True, "data": result.to_dict()}

    async def handle_validate(self, provider: str, credential: str | None) -> dict:
        """validate_credential() with failures folded into the result."""
        try:
            valid = await self.validate_credential(provider, credential)
        except GatewayError as e:
            return {"success": False, "error": str(e)}
        return {"success": True, "data": {"valid": valid}}

    async def aclose(self) -> None:
        """Close the shared client; adapters are rebuilt on next use."""
        self._adapters.clear()
        if self._http_client is not None and not self._http_client.is_closed:
            await self._http_client.aclose()
