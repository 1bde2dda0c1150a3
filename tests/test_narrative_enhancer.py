"""
Tests for enhanced phase text, consolidation with enhancements and the
AI-backed enhancement with its deterministic fallback.
"""
import asyncio

import pytest

from incident_capture.entities import AIRequestLog, Incident
from incident_capture.errors import NotFoundError, ValidationError
from incident_capture.narrative_enhancer import fallback_enhancement, format_clarification_qa
from incident_capture.prompts import ENHANCEMENT_TEMPLATE_NAME


@pytest.fixture
def narrative(backend, incident_id):
    backend.narratives.ensure(incident_id)
    backend.narratives.apply_phase_edit(
        incident_id,
        {"before_event": "Alex was at breakfast.", "during_event": "Alex fell from the chair."},
    )
    return incident_id


def answer_first_question(backend, incident_id, phase, text):
    result = asyncio.run(backend.ledger.ensure_questions(incident_id, phase, "Alex was at breakfast.", "corr_q"))
    qid = result["questions"][0]["question_id"]
    backend.ledger.submit_answer(incident_id, phase, qid, text)
    return result["questions"][0]


class TestEnhance:
    def test_writes_extra_and_bumps_version(self, backend, session_factory, narrative):
        before = backend.narratives.get(narrative)["version"]

        result = backend.enhancer.enhance(narrative, "before_event", "Alex was eating cereal at 8:15.")

        assert result["version"] == before + 1
        stored = backend.narratives.get(narrative)
        assert stored["before_event_extra"] == "Alex was eating cereal at 8:15."
        assert stored["before_event"] == "Alex was at breakfast."
        assert stored["enhanced_at"] is not None

        session = session_factory()
        try:
            assert session.get(Incident, narrative).narrative_enhanced is True
        finally:
            session.close()

    def test_empty_text_rejected(self, backend, narrative):
        with pytest.raises(ValidationError):
            backend.enhancer.enhance(narrative, "before_event", "  ")

    def test_requires_narrative(self, backend, incident_id):
        with pytest.raises(NotFoundError):
            backend.enhancer.enhance(incident_id, "before_event", "text")


class TestConsolidated:
    def test_enhanced_sections_follow_originals(self, backend, narrative):
        backend.enhancer.enhance(narrative, "before_event", "Cereal at 8:15.")

        text = backend.enhancer.get_consolidated(narrative)
        assert text == (
            "**Before Event**: Alex was at breakfast.\n\n"
            "**Before Event (Enhanced)**: Cereal at 8:15.\n\n"
            "**During Event**: Alex fell from the chair."
        )

    def test_memo_cleared_by_new_enhancement(self, backend, narrative):
        backend.enhancer.enhance(narrative, "before_event", "First.")
        assert "First." in backend.enhancer.get_consolidated(narrative)

        backend.enhancer.enhance(narrative, "before_event", "Second.")
        text = backend.enhancer.get_consolidated(narrative)
        assert "Second." in text
        assert "First." not in text


class TestGenerateEnhancement:
    @pytest.mark.asyncio
    async def test_ai_backed_enhancement(self, backend, ai_service, narrative):
        ai_service.script = lambda prompt: "```\nAlex was eating cereal at breakfast.\n```"

        result = await backend.enhancer.generate_enhancement(narrative, "before_event", "corr_e")

        assert result["ai_backed"] is True
        assert result["enhanced_content"] == "Alex was eating cereal at breakfast."
        assert backend.narratives.get(narrative)["before_event_extra"] == result["enhanced_content"]

    def test_prompt_includes_answers(self, backend, ai_service, narrative):
        question = answer_first_question(backend, narrative, "before_event", "Cereal with milk")
        ai_service.script = lambda prompt: "Enhanced text."

        asyncio.run(backend.enhancer.generate_enhancement(narrative, "before_event", "corr_e"))

        prompt = ai_service.calls[-1]
        assert f"Q: {question['question_text']}\nA: Cereal with milk" in prompt
        assert "Alex was at breakfast." in prompt

    def test_fallback_appends_answers(self, backend, ai_service, sleeper, session_factory, narrative):
        answer_first_question(backend, narrative, "before_event", "Cereal with milk")

        def down(prompt):
            raise ConnectionError("down")

        ai_service.script = down
        result = asyncio.run(backend.enhancer.generate_enhancement(narrative, "before_event", "corr_fb"))

        assert result["ai_backed"] is False
        assert result["attempts"] == 3
        assert result["enhanced_content"] == "Alex was at breakfast.\n\n**Additional Context:**\nCereal with milk."
        assert sleeper.delays == [1.0, 2.0]

        session = session_factory()
        try:
            log = session.query(AIRequestLog).filter_by(correlation_id="corr_fb").one()
        finally:
            session.close()
        assert log.operation == "enhance_narrative"
        assert log.fallback is True

    def test_domain_error_from_ai_still_falls_back(self, backend, ai_service, sleeper, narrative):
        def model_missing(prompt):
            raise NotFoundError("model not found")

        ai_service.script = model_missing
        result = asyncio.run(backend.enhancer.generate_enhancement(narrative, "during_event", "corr_nf"))

        assert result["ai_backed"] is False
        assert result["attempts"] == 3
        assert result["enhanced_content"] == "Alex fell from the chair."
        assert sleeper.delays == [1.0, 2.0]

    def test_unresolved_placeholder_skips_ai(self, backend, registry, ai_service, session_factory, narrative):
        registry.publish(
            ENHANCEMENT_TEMPLATE_NAME,
            "Rewrite {{original_narrative}} using {{care_plan_summary}}",
            "v9",
            ai_model="fake-model",
        )

        result = asyncio.run(backend.enhancer.generate_enhancement(narrative, "during_event", "corr_ph"))

        assert result["ai_backed"] is False
        assert result["enhanced_content"] == "Alex fell from the chair."
        assert ai_service.calls == []

        session = session_factory()
        try:
            log = session.query(AIRequestLog).filter_by(correlation_id="corr_ph").one()
        finally:
            session.close()
        assert log.error_message == "missing_placeholders:care_plan_summary"

    @pytest.mark.asyncio
    async def test_empty_phase_rejected(self, backend, narrative):
        with pytest.raises(ValidationError):
            await backend.enhancer.generate_enhancement(narrative, "post_event", "corr_e")


class TestHelpers:
    def test_format_clarification_qa(self):
        pairs = [
            {"question_text": "When?", "answer_text": "At 9."},
            {"question_text": "Who?", "answer_text": "Staff"},
        ]
        assert format_clarification_qa(pairs) == "Q: When?\nA: At 9.\n\nQ: Who?\nA: Staff"

    def test_fallback_without_answers_is_original(self):
        assert fallback_enhancement("  Fell   down. ", []) == "Fell down."
