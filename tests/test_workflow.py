"""
Tests for the incident status state machine.
"""
import pytest

from incident_capture.entities import Incident
from incident_capture.errors import ValidationError, WorkflowClosedError
from incident_capture.incidents import load_incident
from incident_capture.workflow import WorkflowStateMachine, derive_overall_status


@pytest.fixture
def workflow(session_factory):
    return WorkflowStateMachine(session_factory)


class TestDerivedStatus:
    @pytest.mark.parametrize(
        "capture,analysis,expected",
        [
            ("draft", "not_started", "capture_pending"),
            ("in_progress", "not_started", "capture_pending"),
            ("completed", "not_started", "ready_for_analysis"),
            ("completed", "in_progress", "ready_for_analysis"),
            ("completed", "completed", "completed"),
        ],
    )
    def test_overall_follows_capture_and_analysis(self, capture, analysis, expected):
        assert derive_overall_status(capture, analysis) == expected


class TestTransitions:
    def test_full_forward_path(self, workflow, session_factory, incident_id):
        assert workflow.on_phase_edited(incident_id) == "in_progress"
        # a second edit does not move anything
        assert workflow.on_phase_edited(incident_id) == "in_progress"

        finalized = workflow.finalize_capture(incident_id)
        assert finalized.capture_status == "completed"
        assert finalized.overall_status == "ready_for_analysis"

        started = workflow.start_analysis(incident_id)
        assert started.analysis_status == "in_progress"
        assert started.overall_status == "ready_for_analysis"

        done = workflow.complete_analysis(incident_id)
        assert done.analysis_status == "completed"
        assert done.overall_status == "completed"

    def test_finalize_from_draft_is_rejected(self, workflow, session_factory, incident_id):
        with pytest.raises(ValidationError):
            workflow.finalize_capture(incident_id)
        assert load_incident(session_factory, incident_id).capture_status == "draft"

    def test_finalize_twice_is_rejected(self, workflow, incident_id):
        workflow.on_phase_edited(incident_id)
        workflow.finalize_capture(incident_id)
        with pytest.raises(ValidationError):
            workflow.finalize_capture(incident_id)

    def test_analysis_requires_completed_capture(self, workflow, incident_id):
        workflow.on_phase_edited(incident_id)
        with pytest.raises(ValidationError):
            workflow.start_analysis(incident_id)
        with pytest.raises(ValidationError):
            workflow.complete_analysis(incident_id)

    def test_closed_capture_rejects_edits(self, workflow, session_factory, incident_id):
        workflow.on_phase_edited(incident_id)
        workflow.finalize_capture(incident_id)

        with pytest.raises(WorkflowClosedError):
            workflow.on_phase_edited(incident_id)
        with pytest.raises(WorkflowClosedError):
            workflow.assert_capture_open(load_incident(session_factory, incident_id))

    def test_answered_phases_keep_canonical_order(self, workflow, incident_id):
        workflow.on_answer_submitted(incident_id, "end_event")
        workflow.on_answer_submitted(incident_id, "before_event")
        assert workflow.on_answer_submitted(incident_id, "end_event") == ["before_event", "end_event"]

    def test_progress_flags(self, workflow, session_factory, incident_id):
        workflow.on_questions_generated(incident_id)
        workflow.on_narrative_enhanced(incident_id)

        session = session_factory()
        try:
            row = session.get(Incident, incident_id)
            assert row.questions_generated is True
            assert row.narrative_enhanced is True
            assert row.capture_status == "draft"
        finally:
            session.close()
