"""
Google Gemini provider adapter implementation.
"""

from typing import Any

from ..models import TokenUsage
from ..transcoder import GoogleTranscoder, Transcript
from .base import ProviderAdapter, VendorError, kind_from_status


class GoogleAdapter(ProviderAdapter):
    """
    Adapter for the Gemini ``generateContent`` HTTP API.

    Only complete responses are requested. When a fragment callback is
    given it receives the full text once, after the response arrives.
    There is no organization cost report.
    """

    name: str = "google"
    DEFAULT_MODEL = "gemini-1.5-flash"
    BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
    transcoder = GoogleTranscoder()

    ERROR_STATUSES = {
        "UNAUTHENTICATED": "authentication",
        "PERMISSION_DENIED": "permission",
        "INVALID_ARGUMENT": "invalid_request",
        "FAILED_PRECONDITION": "invalid_request",
        "RESOURCE_EXHAUSTED": "rate_limit",
        "INTERNAL": "server",
        "UNAVAILABLE": "server",
    }

    def _url(self) -> str:
        return f"{self.base_url}/models/{self.model}:generateContent"

    def build_request(self, credential: str, transcript: Transcript, stream: bool):
        payload = {
            "contents": transcript.messages,
            "generationConfig": {
                "maxOutputTokens": self.max_tokens,
                "temperature": self.temperature,
            },
        }
        headers = {"Content-Type": "application/json"}
        return self._url(), headers, {"key": credential}, payload

    def parse_response(self, data: Any) -> tuple[str | None, TokenUsage | None]:
        usage = None
        usage_metadata = data.get("usageMetadata")
        if usage_metadata:
            usage = TokenUsage(
                input_tokens=usage_metadata.get("promptTokenCount") or 0,
                output_tokens=usage_metadata.get("candidatesTokenCount") or 0,
            )
        text = data["candidates"][0]["content"]["parts"][0]["text"]
        return text, usage

    def parse_error(self, status_code: int, body: Any) -> VendorError:
        # {"error": {"code": 400, "message": ..., "status": ..., "details": [{"reason": ...}]}}
        error = body.get("error") if isinstance(body, dict) else None
        if not isinstance(error, dict):
            return VendorError(kind=kind_from_status(status_code), message="", raw=body)
        reasons = {
            detail.get("reason")
            for detail in error.get("details") or []
            if isinstance(detail, dict)
        }
        if "API_KEY_INVALID" in reasons:
            kind = "authentication"
        else:
            kind = self.ERROR_STATUSES.get(error.get("status") or "") or kind_from_status(status_code)
        return VendorError(kind=kind, message=error.get("message") or "", raw=body)

    def probe_request(self, credential: str):
        body = {"contents": [{"parts": [{"text": "test"}]}]}
        headers = {"Content-Type": "application/json"}
        return "POST", self._url(), headers, {"key": credential}, body
