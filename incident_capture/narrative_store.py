# incident_capture/narrative_store.py
import logging
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from incident_capture.entities import PHASE_LABELS, PHASES, Narrative, utcnow
from incident_capture.errors import NotFoundError, ValidationError
from incident_capture.incidents import get_incident_row
from incident_capture.utils import fingerprint_text
from incident_capture.workflow import WorkflowStateMachine

logger = logging.getLogger("incident_capture")


def narrative_fingerprint(narrative: Narrative) -> str:
    return fingerprint_text("\x1f".join(getattr(narrative, p) or "" for p in PHASES))


def build_consolidated(phase_texts: Mapping[str, Optional[str]]) -> str:
    """
    Labeled, non-empty phases in fixed order, separated by a blank line.
    """
    sections = [
        f"**{PHASE_LABELS[p]}**: {phase_texts.get(p)}"
        for p in PHASES
        if (phase_texts.get(p) or "").strip()
    ]
    return "\n\n".join(sections)


def narrative_to_dict(narrative: Narrative) -> Dict[str, Any]:
    data = {
        "narrative_id": narrative.narrative_id,
        "incident_id": narrative.incident_id,
        "version": narrative.version,
        "content_fingerprint": narrative.content_fingerprint,
        "consolidated_narrative": narrative.consolidated_narrative,
        "created_at": narrative.created_at.isoformat() if narrative.created_at else None,
        "updated_at": narrative.updated_at.isoformat() if narrative.updated_at else None,
        "enhanced_at": narrative.enhanced_at.isoformat() if narrative.enhanced_at else None,
    }
    for p in PHASES:
        data[p] = getattr(narrative, p) or ""
        data[f"{p}_extra"] = getattr(narrative, f"{p}_extra")
    return data


def get_narrative_row(session: Session, incident_id: str) -> Narrative:
    narrative = (
        session.query(Narrative)
        .filter(Narrative.incident_id == str(incident_id))
        .one_or_none()
    )
    if narrative is None:
        raise NotFoundError(f"Narrative not found for incident {incident_id}. Create narrative first.")
    return narrative


class NarrativeStore:
    def __init__(self, session_factory: sessionmaker, workflow: WorkflowStateMachine):
        self.SessionFactory = session_factory
        self.workflow = workflow

    def ensure(self, incident_id: str, correlation_id: str | None = None) -> Dict[str, Any]:
        """
        Create the empty four-phase narrative if missing. An existing narrative
        is returned as-is; `created` tells the two cases apart.
        """
        session: Session = self.SessionFactory()
        try:
            get_incident_row(session, incident_id)
            existing = (
                session.query(Narrative)
                .filter(Narrative.incident_id == str(incident_id))
                .one_or_none()
            )
            if existing is not None:
                logger.info(
                    f"[NARRATIVE] already exists incident={incident_id} narrative={existing.narrative_id} "
                    f"correlation_id={correlation_id}"
                )
                return {"narrative": narrative_to_dict(existing), "created": False}

            now = utcnow()
            narrative = Narrative(
                incident_id=str(incident_id),
                before_event="",
                during_event="",
                end_event="",
                post_event="",
                version=1,
                created_at=now,
                updated_at=now,
            )
            narrative.content_fingerprint = narrative_fingerprint(narrative)
            session.add(narrative)
            try:
                session.commit()
            except IntegrityError:
                # lost a concurrent create; the winner's row is the narrative
                session.rollback()
                existing = get_narrative_row(session, incident_id)
                logger.info(
                    f"[NARRATIVE] concurrent create resolved to existing incident={incident_id} "
                    f"correlation_id={correlation_id}"
                )
                return {"narrative": narrative_to_dict(existing), "created": False}

            logger.info(
                f"[NARRATIVE] created incident={incident_id} narrative={narrative.narrative_id} "
                f"correlation_id={correlation_id}"
            )
            return {"narrative": narrative_to_dict(narrative), "created": True}
        finally:
            session.close()

    def get(self, incident_id: str) -> Dict[str, Any]:
        session: Session = self.SessionFactory()
        try:
            return narrative_to_dict(get_narrative_row(session, incident_id))
        finally:
            session.close()

    def apply_phase_edit(
        self,
        incident_id: str,
        phase_edits: Mapping[str, Optional[str]],
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        phase_edits = dict(phase_edits or {})
        unknown = [k for k in phase_edits if k not in PHASES]
        if unknown:
            raise ValidationError(f"Unknown narrative phase(s): {unknown}")

        supplied = {p: v for p, v in phase_edits.items() if v is not None}
        if not any((v or "").strip() for v in supplied.values()):
            raise ValidationError("At least one narrative phase must be provided")

        session: Session = self.SessionFactory()
        try:
            # closure check and status transition share the edit's transaction
            self.workflow.assert_capture_open_by_id(incident_id, session=session)
            narrative = get_narrative_row(session, incident_id)

            for phase, text in supplied.items():
                setattr(narrative, phase, text)

            narrative.version = (narrative.version or 1) + 1
            narrative.updated_at = utcnow()
            narrative.content_fingerprint = narrative_fingerprint(narrative)
            narrative.consolidated_narrative = None
            narrative.consolidated_enhanced = None

            self.workflow.on_phase_edited(incident_id, session=session)
            session.commit()

            logger.info(
                f"[NARRATIVE] updated incident={incident_id} version={narrative.version} "
                f"fields={sorted(supplied)} fingerprint={narrative.content_fingerprint[:12]} "
                f"correlation_id={correlation_id}"
            )
            return {
                "version": narrative.version,
                "fields_updated": sorted(supplied),
                "content_fingerprint": narrative.content_fingerprint,
            }
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def consolidate(self, incident_id: str, correlation_id: str | None = None) -> str:
        session: Session = self.SessionFactory()
        try:
            narrative = get_narrative_row(session, incident_id)
            if narrative.consolidated_narrative:
                logger.debug(f"[NARRATIVE] consolidated memo hit incident={incident_id}")
                return narrative.consolidated_narrative

            consolidated = build_consolidated({p: getattr(narrative, p) for p in PHASES})
            if consolidated:
                narrative.consolidated_narrative = consolidated
                session.commit()
                logger.info(
                    f"[NARRATIVE] consolidated incident={incident_id} length={len(consolidated)} "
                    f"correlation_id={correlation_id}"
                )
            return consolidated
        finally:
            session.close()
