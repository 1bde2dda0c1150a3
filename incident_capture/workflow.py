# incident_capture/workflow.py
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session, sessionmaker

from incident_capture.entities import PHASES, Incident, utcnow
from incident_capture.errors import ValidationError, WorkflowClosedError
from incident_capture.incidents import IncidentContext, get_incident_row

logger = logging.getLogger("incident_capture")

CAPTURE_DRAFT = "draft"
CAPTURE_IN_PROGRESS = "in_progress"
CAPTURE_COMPLETED = "completed"

OVERALL_CAPTURE_PENDING = "capture_pending"
OVERALL_READY_FOR_ANALYSIS = "ready_for_analysis"
OVERALL_COMPLETED = "completed"

ANALYSIS_NOT_STARTED = "not_started"
ANALYSIS_IN_PROGRESS = "in_progress"
ANALYSIS_COMPLETED = "completed"


def derive_overall_status(capture_status: str, analysis_status: str) -> str:
    if capture_status == CAPTURE_COMPLETED and analysis_status == ANALYSIS_COMPLETED:
        return OVERALL_COMPLETED
    if capture_status == CAPTURE_COMPLETED:
        return OVERALL_READY_FOR_ANALYSIS
    return OVERALL_CAPTURE_PENDING


class WorkflowStateMachine:
    """
    Sole writer of Incident status fields. Transitions are forward-only:

        capture:  draft -> in_progress (first phase edit) -> completed (finalize)
        analysis: not_started -> in_progress -> completed (after capture)
        overall:  derived from capture + analysis

    Every hook accepts an open session so callers can fold the transition
    into their own transaction; without one it commits on its own.
    """

    def __init__(self, session_factory: sessionmaker):
        self.SessionFactory = session_factory

    @contextmanager
    def _session_scope(self, session: Session | None) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        own: Session = self.SessionFactory()
        try:
            yield own
            own.commit()
        except Exception:
            own.rollback()
            raise
        finally:
            own.close()

    # -----------------------
    # Guards
    # -----------------------

    def assert_capture_open(self, incident: Incident | IncidentContext) -> None:
        if incident.capture_status == CAPTURE_COMPLETED:
            raise WorkflowClosedError(
                f"Incident {incident.incident_id}: capture phase is completed; narrative and clarifications are read-only"
            )

    def assert_capture_open_by_id(self, incident_id: str, session: Session | None = None) -> Incident:
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            self.assert_capture_open(incident)
            return incident

    # -----------------------
    # Progress hooks
    # -----------------------

    def on_phase_edited(self, incident_id: str, session: Session | None = None) -> str:
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            self.assert_capture_open(incident)
            if incident.capture_status == CAPTURE_DRAFT:
                incident.capture_status = CAPTURE_IN_PROGRESS
                incident.overall_status = derive_overall_status(incident.capture_status, incident.analysis_status)
                incident.updated_at = utcnow()
                logger.info(f"[WORKFLOW] incident={incident_id} capture draft -> in_progress")
            return incident.capture_status

    def on_questions_generated(self, incident_id: str, session: Session | None = None) -> None:
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            if not incident.questions_generated:
                incident.questions_generated = True
                incident.updated_at = utcnow()

    def on_answer_submitted(self, incident_id: str, phase: str, session: Session | None = None) -> list:
        """
        Progress signal only; whether a phase is done is decided elsewhere.
        """
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            answered = list(incident.answered_phases or [])
            if phase not in answered:
                answered.append(phase)
                # keep the canonical phase order
                incident.answered_phases = [p for p in PHASES if p in answered]
                incident.updated_at = utcnow()
            return list(incident.answered_phases)

    def on_narrative_enhanced(self, incident_id: str, session: Session | None = None) -> None:
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            incident.narrative_enhanced = True
            incident.updated_at = utcnow()

    # -----------------------
    # Explicit transitions
    # -----------------------

    def finalize_capture(self, incident_id: str, session: Session | None = None) -> IncidentContext:
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            if incident.capture_status != CAPTURE_IN_PROGRESS:
                raise ValidationError(
                    f"Incident {incident_id}: cannot finalize capture from '{incident.capture_status}'"
                )
            incident.capture_status = CAPTURE_COMPLETED
            incident.capture_completed_at = utcnow()
            incident.overall_status = derive_overall_status(incident.capture_status, incident.analysis_status)
            incident.updated_at = utcnow()
            logger.info(f"[WORKFLOW] incident={incident_id} capture in_progress -> completed")
            return IncidentContext.from_row(incident)

    def start_analysis(self, incident_id: str, session: Session | None = None) -> IncidentContext:
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            if incident.capture_status != CAPTURE_COMPLETED:
                raise ValidationError(f"Incident {incident_id}: analysis requires a completed capture")
            if incident.analysis_status != ANALYSIS_NOT_STARTED:
                raise ValidationError(
                    f"Incident {incident_id}: cannot start analysis from '{incident.analysis_status}'"
                )
            incident.analysis_status = ANALYSIS_IN_PROGRESS
            incident.overall_status = derive_overall_status(incident.capture_status, incident.analysis_status)
            incident.updated_at = utcnow()
            return IncidentContext.from_row(incident)

    def complete_analysis(self, incident_id: str, session: Session | None = None) -> IncidentContext:
        with self._session_scope(session) as s:
            incident = get_incident_row(s, incident_id)
            if incident.analysis_status != ANALYSIS_IN_PROGRESS:
                raise ValidationError(
                    f"Incident {incident_id}: cannot complete analysis from '{incident.analysis_status}'"
                )
            incident.analysis_status = ANALYSIS_COMPLETED
            incident.analysis_generated = True
            incident.overall_status = derive_overall_status(incident.capture_status, incident.analysis_status)
            incident.updated_at = utcnow()
            return IncidentContext.from_row(incident)
