"""
Tests for versioned prompt templates, rendering and usage statistics.
"""
import pytest

from incident_capture.entities import ACTIVE, RETIRED
from incident_capture.errors import NotFoundError, ValidationError
from incident_capture.prompt_registry import PromptTemplateRegistry
from incident_capture.prompts import DEFAULT_TEMPLATES, ENHANCEMENT_TEMPLATE_NAME, question_template_name


@pytest.fixture
def empty_registry(session_factory):
    return PromptTemplateRegistry(session_factory)


class TestVersioning:
    def test_publish_retires_previous_active(self, empty_registry):
        empty_registry.publish("greeting", "Hello {{name}}", "v1")
        empty_registry.publish("greeting", "Hi {{name}}", "v2")

        active = empty_registry.get_active("greeting")
        assert active.prompt_version == "v2"
        assert active.prompt_template == "Hi {{name}}"

        versions = empty_registry.list_versions("greeting")
        assert [(v.prompt_version, v.lifecycle) for v in versions] == [("v1", RETIRED), ("v2", ACTIVE)]

    def test_duplicate_version_rejected(self, empty_registry):
        empty_registry.publish("greeting", "Hello", "v1")
        with pytest.raises(ValidationError):
            empty_registry.publish("greeting", "Hello again", "v1")

    def test_missing_template_raises_not_found(self, empty_registry):
        with pytest.raises(NotFoundError):
            empty_registry.get_active("nope")
        assert empty_registry.find_active("nope") is None

    def test_subsystem_filter(self, empty_registry):
        empty_registry.publish("greeting", "Hello", "v1", subsystem="other")
        assert empty_registry.find_active("greeting", "incidents") is None
        assert empty_registry.find_active("greeting", "other").prompt_version == "v1"

    def test_retire_leaves_no_active_version(self, empty_registry):
        empty_registry.publish("greeting", "Hello", "v1")
        assert empty_registry.retire("greeting") == 1
        assert empty_registry.find_active("greeting") is None
        assert len(empty_registry.list_versions("greeting")) == 1

    def test_seed_defaults_is_idempotent(self, empty_registry):
        created = empty_registry.seed_defaults()
        assert len(created) == len(DEFAULT_TEMPLATES)
        assert empty_registry.seed_defaults() == []
        assert empty_registry.find_active(question_template_name("during_event")) is not None
        assert empty_registry.find_active(ENHANCEMENT_TEMPLATE_NAME) is not None


class TestRender:
    def test_substitutes_and_tolerates_whitespace(self, empty_registry):
        rendered = empty_registry.render("Dear {{ name }}, see {{place}}.", {"name": "Ana", "place": "room 2"})
        assert rendered.text == "Dear Ana, see room 2."
        assert rendered.substitutions == {"name": "Ana", "place": "room 2"}
        assert rendered.missing_placeholders == []
        assert rendered.complete

    def test_unmatched_tokens_stay_literal_and_are_reported(self, empty_registry):
        rendered = empty_registry.render("{{a}} and {{b}} and {{b}}", {"a": "x", "c": "unused"})
        assert rendered.text == "x and {{b}} and {{b}}"
        assert rendered.substitutions == {"a": "x"}
        assert rendered.missing_placeholders == ["b"]
        assert not rendered.complete

    def test_none_value_counts_as_missing(self, empty_registry):
        rendered = empty_registry.render("{{a}}", {"a": None})
        assert rendered.text == "{{a}}"
        assert rendered.missing_placeholders == ["a"]


class TestUsageStatistics:
    def test_running_average_and_success_rate(self, empty_registry):
        empty_registry.publish("t", "body", "v1")

        first = empty_registry.record_usage("t", 100.0, True)
        assert first == {"usage_count": 1, "average_response_time": 100.0, "success_rate": 1.0}

        second = empty_registry.record_usage("t", 300.0, False)
        assert second["usage_count"] == 2
        assert second["average_response_time"] == pytest.approx(200.0)
        assert second["success_rate"] == pytest.approx(0.5)

        third = empty_registry.record_usage("t", 200.0, True)
        # round(0.5 * 2) + 1 = 2 successes out of 3
        assert third["average_response_time"] == pytest.approx(200.0)
        assert third["success_rate"] == pytest.approx(2 / 3)

        active = empty_registry.get_active("t")
        assert active.usage_count == 3

    def test_no_active_version_returns_none(self, empty_registry):
        assert empty_registry.record_usage("missing", 10.0, True) is None

    def test_statistics_belong_to_the_active_version(self, empty_registry):
        empty_registry.publish("t", "body", "v1")
        empty_registry.record_usage("t", 50.0, True)
        empty_registry.publish("t", "body 2", "v2")

        assert empty_registry.get_active("t").usage_count == 0
        v1 = [v for v in empty_registry.list_versions("t") if v.prompt_version == "v1"][0]
        assert v1.usage_count == 1
