"""
Anthropic (Claude) provider adapter implementation.
"""

from datetime import datetime, timezone
from typing import Any

import httpx

from ..models import TokenUsage
from ..streaming import AnthropicStreamDecoder
from ..transcoder import AnthropicTranscoder, Transcript
from .base import (
    MalformedVendorPayload,
    ProviderAdapter,
    TransportFailed,
    VendorError,
    decode_json,
    kind_from_status,
)

# cost_report amounts are decimal strings in cents
CENTS_PER_USD = 100


class AnthropicAdapter(ProviderAdapter):
    """
    Adapter for the Anthropic Messages API.

    The system prompt goes in the top-level ``system`` field. Streaming usage
    is read from ``message_start`` and ``message_delta`` events.
    """

    name: str = "anthropic"
    DEFAULT_MODEL = "claude-3-5-sonnet-20241022"
    PROBE_MODEL = "claude-3-haiku-20240307"
    BASE_URL = "https://api.anthropic.com/v1"
    API_VERSION = "2023-06-01"
    SUPPORTS_STREAMING = True
    SUPPORTS_COST_REPORT = True
    transcoder = AnthropicTranscoder()

    ERROR_KINDS = {
        "authentication_error": "authentication",
        "permission_error": "permission",
        "invalid_request_error": "invalid_request",
        "rate_limit_error": "rate_limit",
        "overloaded_error": "server",
        "api_error": "server",
    }

    def _headers(self, credential: str) -> dict:
        return {
            "x-api-key": credential,
            "anthropic-version": self.API_VERSION,
            "content-type": "application/json",
        }

    def build_request(self, credential: str, transcript: Transcript, stream: bool):
        payload: dict[str, Any] = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "messages": transcript.messages,
        }
        if transcript.system:
            payload["system"] = transcript.system
        if stream:
            payload["stream"] = True
        return f"{self.base_url}/messages", self._headers(credential), {}, payload

    def parse_response(self, data: Any) -> tuple[str | None, TokenUsage | None]:
        usage = None
        raw_usage = data.get("usage")
        if raw_usage:
            usage = TokenUsage(
                input_tokens=raw_usage.get("input_tokens") or 0,
                output_tokens=raw_usage.get("output_tokens") or 0,
            )
        text = "".join(
            block.get("text", "") for block in data["content"] if block.get("type") == "text"
        )
        return text, usage

    def parse_error(self, status_code: int, body: Any) -> VendorError:
        # {"type": "error", "error": {"type": ..., "message": ...}}
        if not isinstance(body, dict):
            return VendorError(kind=kind_from_status(status_code), message="", raw=body)
        error = body.get("error")
        if isinstance(error, dict):
            kind = self.ERROR_KINDS.get(error.get("type") or "") or kind_from_status(status_code)
            return VendorError(kind=kind, message=error.get("message") or error.get("type") or "", raw=body)
        return VendorError(kind=kind_from_status(status_code), message=body.get("message") or "", raw=body)

    def probe_request(self, credential: str):
        body = {
            "model": self.PROBE_MODEL,
            "max_tokens": 10,
            "messages": [{"role": "user", "content": "Say hi"}],
        }
        return "POST", f"{self.base_url}/messages", self._headers(credential), {}, body

    def stream_decoder(self) -> AnthropicStreamDecoder:
        return AnthropicStreamDecoder()

    async def fetch_cost_report(self, admin_credential: str, start: datetime, end: datetime) -> float:
        """
        Sum the daily buckets from ``GET /organizations/cost_report``.

        Requires an admin key; amounts are converted from cents to USD.
        """
        url = f"{self.base_url}/organizations/cost_report"
        params: dict[str, Any] = {
            "starting_at": _rfc3339(start),
            "ending_at": _rfc3339(end),
            "bucket_width": "1d",
        }
        headers = self._headers(admin_credential)
        total_cents = 0.0
        while True:
            try:
                response = await self.client.get(url, headers=headers, params=params)
            except httpx.HTTPError as e:
                raise TransportFailed(self.name, f"Cost report request failed: {e}")
            if not response.is_success:
                raise self._request_failed(response.status_code, response.content, response.reason_phrase)

            data = decode_json(response.content)
            try:
                for bucket in data["data"]:
                    for result in bucket.get("results", []):
                        total_cents += float(result["amount"])
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedVendorPayload(self.name, f"Unexpected cost report format: {e}")

            if not data.get("has_more") or not data.get("next_page"):
                return total_cents / CENTS_PER_USD
            params["page"] = data["next_page"]


def _rfc3339(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
