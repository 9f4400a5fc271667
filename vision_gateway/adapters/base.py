"""
Abstract base class for vision provider adapters.
"""

import json
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Sequence

import httpx

from ..models import (
    AnalysisResult,
    ChartMetadata,
    ConversationTurn,
    ImagePayload,
    TokenUsage,
)
from ..prompts import get_system_prompt, get_user_prompt
from ..request_logger import RequestLogEntry, get_logger
from ..streaming import StreamDecoder, StreamEventError, iter_fragments
from ..transcoder import ConversationTranscoder, Transcript
from ..validator import classify_status

logger = logging.getLogger(__name__)

NO_ANALYSIS_PLACEHOLDER = "No analysis returned"

FragmentCallback = Callable[[str], Any]


class ProviderError(Exception):
    """Exception raised when a provider call fails."""

    def __init__(self, provider: str, message: str, status_code: int | None = None):
        self.provider = provider
        self.message = message
        self.status_code = status_code
        super().__init__(f"[{provider}] {message}")


class CredentialMissing(ProviderError):
    """No credential was supplied; raised before any network call."""


class VendorRequestFailed(ProviderError):
    """Non-2xx response; ``message`` is the vendor's own error text when parseable."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        vendor_error: "VendorError | None" = None,
    ):
        super().__init__(provider, message, status_code)
        self.vendor_error = vendor_error


class CredentialInvalid(VendorRequestFailed):
    """401/403: the vendor rejected the credential."""


class TransportFailed(ProviderError):
    """Network-level failure: timeout, connection reset, DNS, ..."""


class MalformedVendorPayload(ProviderError):
    """The response body did not have the expected shape."""


@dataclass(frozen=True)
class VendorError:
    """
    Normalized vendor error.

    kind is one of: authentication, permission, invalid_request, rate_limit,
    server, unknown.
    """
    kind: str
    message: str
    raw: Any = None

    @property
    def is_auth_failure(self) -> bool:
        return self.kind in ("authentication", "permission")


def kind_from_status(status_code: int) -> str:
    if status_code == 401:
        return "authentication"
    if status_code == 403:
        return "permission"
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "server"
    if status_code == 400:
        return "invalid_request"
    return "unknown"


def decode_json(body: bytes | str | None) -> Any:
    """Parse a response body, returning None when it is not JSON."""
    if not body:
        return None
    try:
        return json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None


class ProviderAdapter(ABC):
    """
    Abstract base class for vision provider adapters.

    An adapter combines a ConversationTranscoder, an optional StreamDecoder
    and the vendor endpoint. Adapters never touch persistent storage.

    All provider adapters must implement:
    - build_request(): vendor-native URL, headers, params and body
    - parse_response(): text and usage from a complete response body
    - parse_error(): VendorError from a failed response
    - probe_request(): the cheapest request that exercises a credential
    """

    name: str = "base"
    DEFAULT_MODEL: str = ""
    BASE_URL: str = ""
    transcoder: ConversationTranscoder
    SUPPORTS_STREAMING: bool = False
    SUPPORTS_COST_REPORT: bool = False

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        max_tokens: int = 1500,
        temperature: float = 0.7,
        client: httpx.AsyncClient | None = None,
        **kwargs,
    ):
        """
        Initialize the adapter.

        Args:
            model: Model identifier, defaults to DEFAULT_MODEL
            base_url: Optional custom base URL (proxies, test servers)
            max_tokens: Output token limit per request
            temperature: Sampling temperature
            client: Optional shared httpx.AsyncClient
            **kwargs: Additional configuration (timeout, proxy_url, transport)
        """
        self.model = model or self.DEFAULT_MODEL
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.config = kwargs
        self._client = client
        self._owns_client = client is None
        self._logger = get_logger(self.name)

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            client_kwargs: dict[str, Any] = {"timeout": self.config.get("timeout", 60.0)}
            if self.config.get("transport") is not None:
                client_kwargs["transport"] = self.config["transport"]
            limits = self.config.get("limits")
            if limits is not None:
                client_kwargs["limits"] = limits
            proxy_url = self.config.get("proxy_url")
            if proxy_url:
                client_kwargs["proxy"] = proxy_url
            self._client = httpx.AsyncClient(**client_kwargs)
            self._owns_client = True
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # vendor hooks

    @abstractmethod
    def build_request(
        self,
        credential: str,
        transcript: Transcript,
        stream: bool,
    ) -> tuple[str, dict, dict, dict]:
        """Return (url, headers, params, json body) for an analysis call."""

    @abstractmethod
    def parse_response(self, data: Any) -> tuple[str | None, TokenUsage | None]:
        """Return (text, usage) from a complete response; text is None when absent."""

    @abstractmethod
    def parse_error(self, status_code: int, body: Any) -> VendorError:
        """Map a failed response body to a VendorError."""

    @abstractmethod
    def probe_request(self, credential: str) -> tuple[str, str, dict, dict, dict | None]:
        """Return (method, url, headers, params, json body) for credential validation."""

    def stream_decoder(self) -> StreamDecoder:
        raise NotImplementedError(f"{self.name} adapter does not support streaming")

    async def fetch_cost_report(
        self,
        admin_credential: str,
        start: datetime,
        end: datetime,
    ) -> float:
        """
        Total billed amount in USD for [start, end] from the vendor's
        organization cost API.

        Raises:
            NotImplementedError: If the vendor has no cost report
            ProviderError: If the report cannot be fetched or parsed
        """
        raise NotImplementedError(f"{self.name} does not expose a cost report")

    # ------------------------------------------------------------------
    # contract

    def build_transcript(
        self,
        metadata: ChartMetadata,
        history: Sequence[ConversationTurn],
        image: ImagePayload,
        category: str | None,
    ) -> Transcript:
        system_prompt = get_system_prompt(category, metadata)
        return self.transcoder.transcode(
            history=history,
            image=image,
            prompt=get_user_prompt(metadata),
            system_prompt=system_prompt,
        )

    def prompt_text(
        self,
        metadata: ChartMetadata,
        history: Sequence[ConversationTurn],
        category: str | None,
    ) -> str:
        """Plain text of what build_transcript sends, for usage estimates."""
        parts = [get_system_prompt(category, metadata)]
        if history:
            parts.extend(turn.content for turn in history)
        else:
            parts.append(get_user_prompt(metadata))
        return "\n".join(part for part in parts if part)

    async def analyze(
        self,
        image: bytes | str | ImagePayload,
        metadata: ChartMetadata | None,
        credential: str | None,
        on_fragment: FragmentCallback | None = None,
        history: Sequence[ConversationTurn] = (),
        category: str | None = None,
    ) -> AnalysisResult:
        """
        Analyze a chart image, optionally streaming fragments to ``on_fragment``.

        Args:
            image: Image bytes, base64 string, data URL or ImagePayload
            metadata: Chart metadata used by the prompt templates
            credential: Vendor API key
            on_fragment: Called synchronously with each text fragment, in order
            history: Conversation so far; the last turn is the active question
            category: Prompt category key; unknown keys use the default

        Returns:
            AnalysisResult with the assembled text and usage (None if unreported)

        Raises:
            CredentialMissing: If no credential is given
            VendorRequestFailed: If the vendor returns a non-2xx status
            TransportFailed: If the request fails at the network level
        """
        if not credential:
            raise CredentialMissing(self.name, f"{self.name} API key is required")

        payload = ImagePayload.from_any(image)
        transcript = self.build_transcript(metadata or ChartMetadata(), history, payload, category)
        stream = on_fragment is not None and self.SUPPORTS_STREAMING
        url, headers, params, body = self.build_request(credential, transcript, stream)

        fragment_count = 0

        def deliver(fragment: str) -> None:
            nonlocal fragment_count
            fragment_count += 1
            on_fragment(fragment)

        start_time = time.time()
        result: AnalysisResult | None = None
        failure: ProviderError | None = None
        try:
            if stream:
                result = await self._stream(url, headers, params, body, deliver)
            else:
                result = await self._complete(url, headers, params, body)
                if on_fragment is not None:
                    deliver(result.text)
            return result
        except ProviderError as e:
            failure = e
            raise
        finally:
            self._logger.write(RequestLogEntry(
                provider=self.name,
                model=self.model,
                question=self._prompt_preview(history, metadata),
                category=category,
                streamed=stream,
                duration_ms=(time.time() - start_time) * 1000,
                text=result.text if result else None,
                usage=result.usage if result else None,
                fragments=fragment_count,
                error=failure.message if failure else None,
                status_code=failure.status_code if failure else None,
            ))

    async def validate_credential(self, credential: str | None) -> bool:
        """
        Probe the vendor with a minimal request and classify the status code.

        Never raises; transport failures count as invalid.
        """
        if not credential:
            return False
        method, url, headers, params, body = self.probe_request(credential)
        try:
            response = await self.client.request(
                method, url, headers=headers, params=params, json=body
            )
        except httpx.HTTPError as e:
            logger.error("%s credential probe failed: %s", self.name, e)
            return False
        vendor_error = None
        if response.status_code == 400:
            vendor_error = self.parse_error(400, decode_json(response.content))
        valid = classify_status(response.status_code, vendor_error)
        logger.info("%s credential probe status %s -> %s", self.name, response.status_code, valid)
        return valid

    # ------------------------------------------------------------------
    # transport

    async def _complete(self, url: str, headers: dict, params: dict, body: dict) -> AnalysisResult:
        try:
            response = await self.client.post(url, headers=headers, params=params, json=body)
        except httpx.TimeoutException:
            raise TransportFailed(self.name, "Request timed out")
        except httpx.HTTPError as e:
            raise TransportFailed(self.name, f"Request failed: {e}")

        if not response.is_success:
            raise self._request_failed(response.status_code, response.content, response.reason_phrase)

        data = decode_json(response.content)
        try:
            text, usage = self.parse_response(data)
        except (KeyError, IndexError, TypeError, AttributeError):
            text, usage = None, None
        if not text:
            logger.warning("%s returned no analysis text", self.name)
            text = NO_ANALYSIS_PLACEHOLDER
        return AnalysisResult(text=text, usage=usage, model=self.model, provider=self.name)

    async def _stream(
        self,
        url: str,
        headers: dict,
        params: dict,
        body: dict,
        on_fragment: FragmentCallback,
    ) -> AnalysisResult:
        decoder = self.stream_decoder()
        try:
            async with self.client.stream(
                "POST", url, headers=headers, params=params, json=body
            ) as response:
                if not response.is_success:
                    content = await response.aread()
                    raise self._request_failed(response.status_code, content, response.reason_phrase)
                async for fragment in iter_fragments(decoder, response.aiter_bytes()):
                    on_fragment(fragment)
        except StreamEventError as e:
            raise VendorRequestFailed(self.name, e.message)
        except httpx.TimeoutException:
            raise TransportFailed(self.name, "Stream timed out")
        except httpx.HTTPError as e:
            raise TransportFailed(self.name, f"Stream failed: {e}")
        text = decoder.text
        if not text:
            logger.warning("%s stream ended without analysis text", self.name)
            text = NO_ANALYSIS_PLACEHOLDER
        return AnalysisResult(text=text, usage=decoder.usage, model=self.model, provider=self.name)

    def _request_failed(self, status_code: int, content: bytes, reason: str = "") -> VendorRequestFailed:
        body = decode_json(content)
        vendor_error = self.parse_error(status_code, body)
        message = vendor_error.message
        if not message:
            raw_text = content.decode("utf-8", errors="replace").strip() if content else ""
            message = f"{self.name} API error {status_code}: {raw_text or reason}"
        logger.error("%s request failed (%s): %s", self.name, status_code, message)
        error_cls = CredentialInvalid if status_code in (401, 403) else VendorRequestFailed
        return error_cls(self.name, message, status_code=status_code, vendor_error=vendor_error)

    @staticmethod
    def _prompt_preview(history: Sequence[ConversationTurn], metadata: ChartMetadata | None) -> str:
        if history:
            return history[-1].content
        if metadata and metadata.title:
            return metadata.title
        return ""

    def estimate_tokens(self, prompt: str, output: str) -> TokenUsage:
        """
        Estimate token usage when the vendor did not report it.

        Rough estimation: ~4 characters per token for English text.
        """
        return TokenUsage(
            input_tokens=max(1, len(prompt) // 4),
            output_tokens=max(1, len(output) // 4),
        )
