"""
OpenAI provider adapter implementation.
"""

from datetime import datetime
from typing import Any

import httpx

from ..models import TokenUsage
from ..streaming import OpenAIStreamDecoder
from ..transcoder import OpenAITranscoder, Transcript
from .base import (
    MalformedVendorPayload,
    ProviderAdapter,
    TransportFailed,
    VendorError,
    decode_json,
    kind_from_status,
)


class OpenAIAdapter(ProviderAdapter):
    """
    Adapter for the OpenAI chat completions API.

    Streams with ``stream_options.include_usage`` so the usage totals arrive
    inside the terminal chunk. The organization cost report needs an admin key.
    """

    name: str = "openai"
    DEFAULT_MODEL = "gpt-4o"
    BASE_URL = "https://api.openai.com/v1"
    SUPPORTS_STREAMING = True
    SUPPORTS_COST_REPORT = True
    transcoder = OpenAITranscoder()

    ERROR_KINDS = {
        "invalid_api_key": "authentication",
        "invalid_request_error": "invalid_request",
        "insufficient_quota": "rate_limit",
        "rate_limit_exceeded": "rate_limit",
        "server_error": "server",
    }

    def _headers(self, credential: str) -> dict:
        return {
            "Authorization": f"Bearer {credential}",
            "Content-Type": "application/json",
        }

    def build_request(self, credential: str, transcript: Transcript, stream: bool):
        payload: dict[str, Any] = {
            "model": self.model,
            "messages": transcript.messages,
            "max_tokens": self.max_tokens,
            "temperature": self.temperature,
        }
        if stream:
            payload["stream"] = True
            payload["stream_options"] = {"include_usage": True}
        return f"{self.base_url}/chat/completions", self._headers(credential), {}, payload

    def parse_response(self, data: Any) -> tuple[str | None, TokenUsage | None]:
        usage = None
        raw_usage = data.get("usage")
        if raw_usage:
            usage = TokenUsage(
                input_tokens=raw_usage.get("prompt_tokens") or 0,
                output_tokens=raw_usage.get("completion_tokens") or 0,
            )
        text = data["choices"][0]["message"]["content"]
        return text, usage

    def parse_error(self, status_code: int, body: Any) -> VendorError:
        # {"error": {"message": ..., "type": ..., "code": ...}}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return VendorError(kind=kind_from_status(status_code), message="", raw=body)
        kind = (
            self.ERROR_KINDS.get(error.get("code") or "")
            or self.ERROR_KINDS.get(error.get("type") or "")
            or kind_from_status(status_code)
        )
        return VendorError(kind=kind, message=error.get("message") or "", raw=body)

    def probe_request(self, credential: str):
        return "GET", f"{self.base_url}/models", {"Authorization": f"Bearer {credential}"}, {}, None

    def stream_decoder(self) -> OpenAIStreamDecoder:
        return OpenAIStreamDecoder()

    async def fetch_cost_report(self, admin_credential: str, start: datetime, end: datetime) -> float:
        """
        Sum the daily cost buckets from ``GET /organization/costs``.

        Amounts are already in USD.
        """
        url = f"{self.base_url}/organization/costs"
        params: dict[str, Any] = {
            "start_time": int(start.timestamp()),
            "end_time": int(end.timestamp()),
            "bucket_width": "1d",
            "limit": 31,
        }
        total = 0.0
        while True:
            try:
                response = await self.client.get(url, headers=self._headers(admin_credential), params=params)
            except httpx.HTTPError as e:
                raise TransportFailed(self.name, f"Cost report request failed: {e}")
            if not response.is_success:
                raise self._request_failed(response.status_code, response.content, response.reason_phrase)

            data = decode_json(response.content)
            try:
                for bucket in data["data"]:
                    for result in bucket.get("results", []):
                        total += float(result["amount"]["value"])
            except (KeyError, TypeError, ValueError) as e:
                raise MalformedVendorPayload(self.name, f"Unexpected cost report format: {e}")

            if not data.get("has_more") or not data.get("next_page"):
                return total
            params["page"] = data["next_page"]
