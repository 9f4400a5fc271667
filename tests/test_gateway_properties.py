"""
Tests for the VisionGateway entry point.

Feature: vision-gateway
Property 15: 请求间隔限制
Property 16: 每个完成的请求记录一次用量
"""

import asyncio
import json
import os
import tempfile

import httpx
import pytest
import yaml
from hypothesis import given, strategies as st, settings

from vision_gateway import (
    ChartMetadata,
    ConfigManager,
    ConversationTurn,
    CostAccountant,
    CredentialMissing,
    CredentialStore,
    RateLimited,
    UnknownProvider,
    ValidationError,
    VisionGateway,
)
from vision_gateway.prompts import get_system_prompt


PNG = b"\x89PNG\r\n\x1a\nfake"

OPENAI_OK = {
    "choices": [{"message": {"role": "assistant", "content": "Bullish trend"}}],
    "usage": {"prompt_tokens": 1000, "completion_tokens": 500},
}


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class Vendor:
    """MockTransport handler serving one canned body per path suffix."""

    def __init__(self, routes: dict[str, tuple[int, bytes | dict]] | None = None):
        self.routes = routes or {"/chat/completions": (200, OPENAI_OK)}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for suffix, (status, body) in self.routes.items():
            if request.url.path.endswith(suffix):
                if isinstance(body, bytes):
                    return httpx.Response(status, content=body)
                return httpx.Response(status, json=body)
        return httpx.Response(404, json={"error": {"message": "not found"}})


def make_gateway(vendor: Vendor | None = None, clock: FakeClock | None = None, keys: dict | None = None,
                 config_manager: ConfigManager | None = None):
    credentials = CredentialStore()
    for provider, key in (keys if keys is not None else {"openai": "sk-openai"}).items():
        credentials.set(provider, key)
    gateway = VisionGateway(
        config_manager=config_manager or ConfigManager(),
        credentials=credentials,
        clock=clock or FakeClock(),
        transport=httpx.MockTransport(vendor or Vendor()),
    )
    return gateway


def config_from(raw: dict) -> ConfigManager:
    fd, path = tempfile.mkstemp(suffix=".yaml")
    with os.fdopen(fd, "w", encoding="utf-8") as f:
        yaml.safe_dump(raw, f)
    manager = ConfigManager(path)
    manager.config
    os.unlink(path)
    return manager


def run(coro):
    return asyncio.run(coro)


class TestRateLimiting:
    """
    Property 15: 请求间隔限制

    A request within the minimum interval of the last accepted one is
    rejected before reaching any vendor.
    """

    def test_second_call_one_second_later_is_rejected(self):
        vendor = Vendor()
        clock = FakeClock(1000.0)
        gateway = make_gateway(vendor, clock)

        run(gateway.analyze("openai", PNG))
        clock.now += 1.0
        with pytest.raises(RateLimited) as exc_info:
            run(gateway.analyze("openai", PNG))

        assert len(vendor.requests) == 1
        assert exc_info.value.retry_after == pytest.approx(4.0)
        assert str(exc_info.value) == "Please wait 4 seconds before analyzing again"

    @settings(max_examples=50)
    @given(gap=st.floats(min_value=0.0, max_value=4.999, allow_nan=False))
    def test_any_gap_under_five_seconds_is_rejected(self, gap: float):
        vendor = Vendor()
        clock = FakeClock(50.0)
        gateway = make_gateway(vendor, clock)

        run(gateway.analyze("openai", PNG))
        clock.now += gap
        with pytest.raises(RateLimited):
            run(gateway.analyze("google", PNG))

        assert len(vendor.requests) == 1

    def test_call_after_interval_is_accepted(self):
        vendor = Vendor()
        clock = FakeClock()
        gateway = make_gateway(vendor, clock)

        run(gateway.analyze("openai", PNG))
        clock.now += 5.0
        run(gateway.analyze("openai", PNG))

        assert len(vendor.requests) == 2

    def test_rejected_call_does_not_reset_the_window(self):
        clock = FakeClock(0.0)
        gateway = make_gateway(clock=clock)

        run(gateway.analyze("openai", PNG))
        clock.now = 3.0
        with pytest.raises(RateLimited):
            run(gateway.analyze("openai", PNG))
        clock.now = 5.5
        run(gateway.analyze("openai", PNG))

    def test_gateways_do_not_share_state(self):
        clock = FakeClock()
        first, second = make_gateway(clock=clock), make_gateway(clock=clock)

        run(first.analyze("openai", PNG))
        run(second.analyze("openai", PNG))

    def test_missing_credential_still_consumes_the_slot(self):
        vendor = Vendor()
        gateway = make_gateway(vendor, keys={})

        with pytest.raises(CredentialMissing, match="API key not configured for openai"):
            run(gateway.analyze("openai", PNG))
        with pytest.raises(RateLimited):
            run(gateway.analyze("openai", PNG))
        assert vendor.requests == []

    def test_configured_interval(self):
        clock = FakeClock()
        gateway = make_gateway(clock=clock, config_manager=config_from({"gateway": {"min_request_interval": 0}}))

        run(gateway.analyze("openai", PNG))
        run(gateway.analyze("openai", PNG))


class TestRequestValidation:

    def test_unknown_provider(self):
        gateway = make_gateway()

        with pytest.raises(UnknownProvider):
            run(gateway.analyze("mistral", PNG))

    def test_history_must_end_with_user_turn(self):
        vendor = Vendor()
        gateway = make_gateway(vendor)
        history = [ConversationTurn("user", "q1"), ConversationTurn("assistant", "a1")]

        with pytest.raises(ValidationError):
            run(gateway.analyze("openai", PNG, history=history))
        assert vendor.requests == []

    def test_rejected_requests_do_not_consume_the_slot(self):
        gateway = make_gateway()

        with pytest.raises(UnknownProvider):
            run(gateway.analyze("mistral", PNG))
        with pytest.raises(ValidationError):
            run(gateway.analyze("openai", b""))
        run(gateway.analyze("openai", PNG))


class TestUsageRecording:
    """
    Property 16: 每个完成的请求记录一次用量
    """

    def test_vendor_usage_is_priced_and_recorded(self):
        gateway = make_gateway()

        result = run(gateway.analyze("openai", PNG, metadata=ChartMetadata(title="BTC")))

        records = gateway.accountant.get_records()
        assert len(records) == 1
        assert records[0].provider == "openai"
        assert records[0].model == "gpt-4o"
        assert (records[0].input_tokens, records[0].output_tokens) == (1000, 500)
        # 1000 * 2.50 / 1M + 500 * 10.00 / 1M
        assert records[0].cost == pytest.approx(0.0075)
        assert result.usage.input_tokens == 1000

    def test_missing_usage_is_estimated(self):
        stream = (
            'data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Consolidating"}}\n\n'
            'data: {"type": "message_stop"}\n\n'
        ).encode()
        vendor = Vendor({"/messages": (200, stream)})
        gateway = make_gateway(vendor, keys={"anthropic": "sk-ant"})
        fragments = []

        result = run(gateway.analyze("anthropic", PNG, on_fragment=fragments.append))

        assert fragments == ["Consolidating"]
        assert result.usage is None
        records = gateway.accountant.get_records()
        assert len(records) == 1
        assert records[0].output_tokens == len("Consolidating") // 4
        assert records[0].input_tokens > 0

    def test_follow_up_estimate_counts_the_sent_conversation(self):
        stream = (
            'data: {"type": "content_block_delta", "delta": {"type": "text_delta", "text": "Support near 60k"}}\n\n'
            'data: {"type": "message_stop"}\n\n'
        ).encode()
        vendor = Vendor({"/messages": (200, stream)})
        gateway = make_gateway(vendor, keys={"anthropic": "sk-ant"})
        history = [
            ConversationTurn("user", "What is the trend?"),
            ConversationTurn("assistant", "An uptrend since March."),
            ConversationTurn("user", "Where is support?"),
        ]

        run(gateway.analyze("anthropic", PNG, history=history, on_fragment=lambda text: None))

        sent = "\n".join([get_system_prompt("market-analysis", ChartMetadata())] + [turn.content for turn in history])
        record = gateway.accountant.get_records()[0]
        assert record.input_tokens == len(sent) // 4
        assert record.output_tokens == len("Support near 60k") // 4

    def test_failed_request_records_nothing(self):
        vendor = Vendor({"/chat/completions": (500, {"error": {"message": "boom"}})})
        gateway = make_gateway(vendor)

        result = run(gateway.handle_analyze("openai", PNG))

        assert result == {"success": False, "error": "boom"}
        assert gateway.accountant.get_records() == []

    def test_monthly_summary_reflects_recorded_usage(self):
        gateway = make_gateway()

        run(gateway.analyze("openai", PNG))
        summary = gateway.monthly_summary("openai")

        assert summary.request_count == 1
        assert summary.month_total == pytest.approx(0.0075)


class TestTaggedResultSurface:

    def test_success_shape(self):
        gateway = make_gateway()

        result = run(gateway.handle_analyze("openai", PNG))

        assert result == {
            "success": True,
            "data": {
                "text": "Bullish trend",
                "usage": {"input_tokens": 1000, "output_tokens": 500, "total_tokens": 1500},
            },
        }

    def test_rate_limited_shape(self):
        gateway = make_gateway()

        run(gateway.handle_analyze("openai", PNG))
        result = run(gateway.handle_analyze("openai", PNG))

        assert result == {"success": False, "error": "Please wait 5 seconds before analyzing again"}

    def test_unknown_provider_shape(self):
        result = run(make_gateway().handle_analyze("mistral", PNG))

        assert result == {"success": False, "error": "Unknown provider: mistral"}

    def test_invalid_image_type_shape(self):
        result = run(make_gateway().handle_analyze("openai", 12345))

        assert result["success"] is False

    def test_handle_validate(self):
        vendor = Vendor({"/models": (401, {"error": {"message": "Incorrect API key provided"}})})
        gateway = make_gateway(vendor)

        assert run(gateway.handle_validate("openai", "sk-bad")) == {"success": True, "data": {"valid": False}}
        assert run(gateway.handle_validate("mistral", "key")) == {
            "success": False, "error": "Unknown provider: mistral",
        }


class TestCredentials:

    def test_save_credential_stores_only_valid_keys(self):
        vendor = Vendor({"/models": (200, {"data": []})})
        gateway = make_gateway(vendor, keys={})

        assert run(gateway.save_credential("openai", "  sk-good  ")) is True
        assert gateway.credentials.get("openai") == "sk-good"

        vendor.routes["/models"] = (401, {"error": {"message": "bad"}})
        assert run(gateway.save_credential("openai", "sk-bad")) is False
        assert gateway.credentials.get("openai") == "sk-good"

    def test_configured_key_is_used_when_nothing_is_stored(self):
        vendor = Vendor()
        manager = config_from({"providers": {"openai": {"api_key": "sk-from-config"}}})
        gateway = make_gateway(vendor, keys={}, config_manager=manager)

        run(gateway.analyze("openai", PNG))

        assert vendor.requests[0].headers["Authorization"] == "Bearer sk-from-config"


class TestReconciledSummary:

    def test_vendor_report_with_admin_key(self):
        report = {"data": [{"results": [{"amount": {"value": 3.0, "currency": "usd"}}]}], "has_more": False}
        vendor = Vendor({"/chat/completions": (200, OPENAI_OK), "/organization/costs": (200, report)})
        manager = config_from({"providers": {"openai": {"admin_key": "sk-admin"}}})
        gateway = make_gateway(vendor, config_manager=manager)

        run(gateway.analyze("openai", PNG))
        summary = run(gateway.reconciled_summary("openai"))

        assert summary.source == "vendor"
        assert summary.month_total == 3.0
        assert summary.request_count == 1
        assert summary.month_average == 3.0
        assert vendor.requests[-1].headers["Authorization"] == "Bearer sk-admin"

    def test_without_admin_key_uses_local(self):
        vendor = Vendor()
        gateway = make_gateway(vendor)

        run(gateway.analyze("openai", PNG))
        summary = run(gateway.reconciled_summary("openai"))

        assert summary.source == "local"
        assert summary.request_count == 1
        assert len(vendor.requests) == 1

    def test_shared_accountant(self):
        accountant = CostAccountant(capacity=5)
        gateway = VisionGateway(
            config_manager=ConfigManager(),
            accountant=accountant,
            clock=FakeClock(),
            transport=httpx.MockTransport(Vendor()),
        )
        gateway.credentials.set("openai", "sk")

        run(gateway.analyze("openai", PNG))

        assert len(accountant.get_records()) == 1


class TestSharedHttpClient:
    """All adapters of one gateway use a single connection pool."""

    def test_adapters_share_the_gateway_client(self):
        gateway = make_gateway()

        clients = {id(gateway._get_adapter(name).client) for name in gateway.get_available_providers()}

        assert clients == {id(gateway.http_client)}

    def test_configured_limits_apply_to_the_shared_client(self):
        manager = config_from({"http_client": {"max_connections": 7, "max_keepalive_connections": 3, "timeout": 12.0}})
        gateway = make_gateway(config_manager=manager)

        client = gateway.http_client

        assert client.timeout.read == 12.0
        assert gateway._get_adapter("google").client is client

    def test_aclose_closes_the_shared_client(self):
        vendor = Vendor()
        clock = FakeClock()
        gateway = make_gateway(vendor, clock)
        run(gateway.analyze("openai", PNG))
        first = gateway.http_client

        run(gateway.aclose())
        clock.now += 5.0
        run(gateway.analyze("openai", PNG))

        assert first.is_closed
        assert gateway.http_client is not first
        assert len(vendor.requests) == 2
