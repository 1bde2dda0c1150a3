"""
Tests for model name parsing, cost estimation and per-model client reuse.
No network: the client class is replaced with a stub.
"""
import pytest

from incident_capture import llm_client
from incident_capture.llm_client import Completion, LlmTextService
from incident_capture.model_props import estimate_cost_usd, is_openai_model, parse_model_name


class TestModelNames:
    def test_plain_name(self):
        assert parse_model_name("gemini-2.5-flash") == ("gemini-2.5-flash", {})

    def test_wildcard_suffix(self):
        base, params = parse_model_name("gpt-5-nano_standard-flex")
        assert base == "gpt-5-nano"
        assert params == {
            "text": {"verbosity": "low"},
            "reasoning": {"effort": "low"},
            "service_tier": "flex",
        }

    def test_unknown_suffix(self):
        with pytest.raises(ValueError):
            parse_model_name("gpt-5-nano_turbo")

    def test_provider_detection(self):
        assert is_openai_model("gpt-4o-mini")
        assert not is_openai_model("gemini-2.5-pro")


class TestCostEstimate:
    def test_openai_default_and_flex_tiers(self):
        assert estimate_cost_usd("gpt-4o-mini", 1_000_000, 1_000_000) == pytest.approx(0.75)
        assert estimate_cost_usd("gpt-4o-mini", 1_000_000, 1_000_000, service_tier="flex") == pytest.approx(0.375)

    def test_vertex_long_context_band(self):
        short = estimate_cost_usd("gemini-2.5-pro", 100_000, 0)
        long = estimate_cost_usd("gemini-2.5-pro", 300_000, 0)
        assert short == pytest.approx(0.125)
        assert long == pytest.approx(0.75)

    def test_unknown_model_has_no_estimate(self):
        assert estimate_cost_usd("some-local-model", 10, 10) is None


class StubClient:
    created = []

    def __init__(self, model_name, **kwargs):
        self.model_name = model_name
        StubClient.created.append(model_name)

    def complete(self, prompt):
        return Completion(text=f"echo: {prompt}", model=self.model_name, tokens_used=3)


class TestLlmTextService:
    def test_clients_are_built_once_per_model(self, monkeypatch):
        StubClient.created = []
        monkeypatch.setattr(llm_client, "LlmClient", StubClient)
        service = LlmTextService("gpt-4o-mini", vertex_project="p", vertex_region="r")

        first = service.complete("hello")
        service.complete("again")
        hinted = service.complete("hi", model_hint="gemini-2.5-flash")

        assert first.text == "echo: hello"
        assert first.model == "gpt-4o-mini"
        assert hinted.model == "gemini-2.5-flash"
        assert StubClient.created == ["gpt-4o-mini", "gemini-2.5-flash"]
