# incident_capture/incidents.py

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session, sessionmaker

from incident_capture.entities import Incident, new_id
from incident_capture.errors import NotFoundError, ValidationError


@dataclass(frozen=True)
class IncidentContext:
    incident_id: str
    company_id: Optional[str]
    created_by: Optional[str]
    participant_name: str
    reporter_name: str
    location: str
    event_date_time: str
    capture_status: str
    overall_status: str
    analysis_status: str

    @classmethod
    def from_row(cls, row: Incident) -> "IncidentContext":
        return cls(
            incident_id=row.incident_id,
            company_id=row.company_id,
            created_by=row.created_by,
            participant_name=row.participant_name or "",
            reporter_name=row.reporter_name or "",
            location=row.location or "",
            event_date_time=row.event_date_time or "",
            capture_status=row.capture_status,
            overall_status=row.overall_status,
            analysis_status=row.analysis_status,
        )

    def template_variables(self) -> Dict[str, str]:
        return {
            "participant_name": self.participant_name or "Unknown",
            "reporter_name": self.reporter_name or "Unknown",
            "location": self.location or "Unknown",
            "event_date_time": self.event_date_time or "Unknown",
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def create_incident(
    session_factory: sessionmaker,
    *,
    reporter_name: str,
    participant_name: str,
    location: str = "",
    event_date_time: str = "",
    company_id: Optional[str] = None,
    created_by: Optional[str] = None,
    incident_id: Optional[str] = None,
) -> str:
    """
    Create an Incident row in capture 'draft' and return its id.
    """
    if not (reporter_name or "").strip() or not (participant_name or "").strip():
        raise ValidationError("reporter_name and participant_name are required")

    session: Session = session_factory()
    try:
        incident = Incident(
            incident_id=incident_id or new_id(),
            company_id=company_id,
            reporter_name=reporter_name.strip(),
            participant_name=participant_name.strip(),
            location=(location or "").strip(),
            event_date_time=(event_date_time or "").strip(),
            created_by=created_by,
            capture_status="draft",
            overall_status="capture_pending",
            analysis_status="not_started",
            answered_phases=[],
        )
        session.add(incident)
        session.commit()
        return incident.incident_id
    finally:
        session.close()


def get_incident_row(session: Session, incident_id: str) -> Incident:
    incident = session.get(Incident, str(incident_id))
    if incident is None:
        raise NotFoundError(f"Incident not found: {incident_id}")
    return incident


def load_incident(session_factory: sessionmaker, incident_id: str) -> IncidentContext:
    session: Session = session_factory()
    try:
        return IncidentContext.from_row(get_incident_row(session, incident_id))
    finally:
        session.close()
