# incident_capture/prompt_registry.py
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session, sessionmaker

from incident_capture.entities import ACTIVE, RETIRED, PromptTemplate, utcnow
from incident_capture.errors import NotFoundError, ValidationError
from incident_capture.prompts import DEFAULT_TEMPLATE_VERSION, DEFAULT_TEMPLATES, INCIDENTS_SUBSYSTEM

logger = logging.getLogger("incident_capture")

_PLACEHOLDER = re.compile(r"\{\{\s*(\w+)\s*\}\}")


@dataclass(frozen=True)
class PromptTemplateRecord:
    id: str
    prompt_name: str
    prompt_version: str
    prompt_template: str
    subsystem: str | None
    ai_model: str | None
    max_tokens: int | None
    temperature: float | None
    lifecycle: str
    created_at: datetime | None
    usage_count: int
    average_response_time: float
    success_rate: float

    @classmethod
    def from_row(cls, row: PromptTemplate) -> "PromptTemplateRecord":
        return cls(
            id=row.id,
            prompt_name=row.prompt_name,
            prompt_version=row.prompt_version,
            prompt_template=row.prompt_template,
            subsystem=row.subsystem,
            ai_model=row.ai_model,
            max_tokens=row.max_tokens,
            temperature=row.temperature,
            lifecycle=row.lifecycle,
            created_at=row.created_at,
            usage_count=row.usage_count or 0,
            average_response_time=row.average_response_time or 0.0,
            success_rate=row.success_rate if row.success_rate is not None else 1.0,
        )


@dataclass(frozen=True)
class RenderedPrompt:
    text: str
    substitutions: Dict[str, str] = field(default_factory=dict)
    missing_placeholders: List[str] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.missing_placeholders


class PromptTemplateRegistry:
    """
    Named, versioned prompt templates with one active version per name.

    Older versions are retired, never deleted, so every generated question can
    be traced back to the exact template text that produced it. Construct one
    per process and pass it to the components that need it.
    """

    def __init__(self, session_factory: sessionmaker):
        self.SessionFactory = session_factory
        self._usage_lock = threading.Lock()

    # -----------------------
    # Lookup
    # -----------------------

    def _active_query(self, session: Session, name: str, subsystem: str | None = None):
        q = (
            session.query(PromptTemplate)
            .filter(PromptTemplate.prompt_name == name)
            .filter(PromptTemplate.lifecycle == ACTIVE)
        )
        if subsystem:
            q = q.filter(PromptTemplate.subsystem == subsystem)
        return q.order_by(PromptTemplate.created_at.desc())

    def find_active(self, name: str, subsystem: str | None = None) -> Optional[PromptTemplateRecord]:
        session: Session = self.SessionFactory()
        try:
            row = self._active_query(session, name, subsystem).first()
            return PromptTemplateRecord.from_row(row) if row else None
        finally:
            session.close()

    def get_active(self, name: str, subsystem: str | None = None) -> PromptTemplateRecord:
        record = self.find_active(name, subsystem)
        if record is None:
            raise NotFoundError(f"Template not found: {name} (subsystem={subsystem})")
        return record

    def list_versions(self, name: str) -> List[PromptTemplateRecord]:
        session: Session = self.SessionFactory()
        try:
            rows = (
                session.query(PromptTemplate)
                .filter(PromptTemplate.prompt_name == name)
                .order_by(PromptTemplate.created_at.asc(), PromptTemplate.prompt_version.asc())
                .all()
            )
            return [PromptTemplateRecord.from_row(r) for r in rows]
        finally:
            session.close()

    # -----------------------
    # Versioning
    # -----------------------

    def publish(
        self,
        name: str,
        template: str,
        version: str,
        *,
        subsystem: str | None = INCIDENTS_SUBSYSTEM,
        description: str | None = None,
        workflow_step: str | None = None,
        ai_model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        created_by: str | None = None,
    ) -> PromptTemplateRecord:
        """
        Append `version` as the active template for `name` and retire the
        previously active version(s).
        """
        if not (name or "").strip():
            raise ValidationError("Prompt name is required")
        if not (template or "").strip():
            raise ValidationError("Prompt template text is required")

        session: Session = self.SessionFactory()
        try:
            clash = (
                session.query(PromptTemplate)
                .filter(PromptTemplate.prompt_name == name)
                .filter(PromptTemplate.prompt_version == version)
                .one_or_none()
            )
            if clash is not None:
                raise ValidationError(f"Prompt {name} version {version} already exists")

            now = utcnow()
            previous = (
                session.query(PromptTemplate)
                .filter(PromptTemplate.prompt_name == name)
                .filter(PromptTemplate.lifecycle == ACTIVE)
                .all()
            )
            for row in previous:
                row.lifecycle = RETIRED
                row.replaced_at = now
                row.replaced_by = version

            row = PromptTemplate(
                prompt_name=name,
                prompt_version=version,
                prompt_template=template,
                description=description,
                subsystem=subsystem,
                workflow_step=workflow_step,
                ai_model=ai_model,
                max_tokens=max_tokens,
                temperature=temperature,
                lifecycle=ACTIVE,
                created_at=now,
                created_by=created_by,
            )
            session.add(row)
            session.commit()

            logger.info(
                f"[PROMPTS] published {name} {version} "
                f"(retired={[p.prompt_version for p in previous]})"
            )
            return PromptTemplateRecord.from_row(row)
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def retire(self, name: str) -> int:
        session: Session = self.SessionFactory()
        try:
            rows = (
                session.query(PromptTemplate)
                .filter(PromptTemplate.prompt_name == name)
                .filter(PromptTemplate.lifecycle == ACTIVE)
                .all()
            )
            now = utcnow()
            for row in rows:
                row.lifecycle = RETIRED
                row.replaced_at = now
            session.commit()
            return len(rows)
        finally:
            session.close()

    def seed_defaults(self, ai_model: str | None = None) -> List[str]:
        """
        Install the default templates for names that have no active version.
        Returns the names that were created.
        """
        created = []
        for entry in DEFAULT_TEMPLATES:
            if self.find_active(entry["prompt_name"]) is not None:
                continue
            self.publish(
                entry["prompt_name"],
                entry["prompt_template"],
                DEFAULT_TEMPLATE_VERSION,
                subsystem=INCIDENTS_SUBSYSTEM,
                description=entry.get("description"),
                workflow_step=entry.get("workflow_step"),
                ai_model=ai_model,
                max_tokens=entry.get("max_tokens"),
                temperature=entry.get("temperature"),
            )
            created.append(entry["prompt_name"])
        return created

    # -----------------------
    # Rendering
    # -----------------------

    def render(self, template: PromptTemplateRecord | str, variables: Mapping[str, Any]) -> RenderedPrompt:
        """
        Replace {{key}} tokens. Tokens without a (non-None) value stay in the
        output verbatim and are listed in missing_placeholders.
        """
        text = template.prompt_template if isinstance(template, PromptTemplateRecord) else template
        variables = variables or {}
        substitutions: Dict[str, str] = {}
        missing: List[str] = []

        def replacer(match):
            key = match.group(1)
            value = variables.get(key)
            if value is None:
                if key not in missing:
                    missing.append(key)
                return match.group(0)
            substitutions[key] = str(value)
            return str(value)

        rendered = _PLACEHOLDER.sub(replacer, text or "")
        if missing:
            logger.info(f"[PROMPTS] unmatched placeholders left in rendered prompt: {', '.join(missing)}")
        return RenderedPrompt(text=rendered, substitutions=substitutions, missing_placeholders=missing)

    # -----------------------
    # Usage statistics
    # -----------------------

    def record_usage(self, name: str, latency_ms: float, success: bool) -> Optional[Dict[str, Any]]:
        """
        Fold one call into the active version's running statistics.
        Returns the new statistics, or None when no active version exists.
        """
        with self._usage_lock:
            session: Session = self.SessionFactory()
            try:
                row = self._active_query(session, name).first()
                if row is None:
                    return None

                n = row.usage_count or 0
                avg = row.average_response_time or 0.0
                rate = row.success_rate if row.success_rate is not None else 1.0

                new_count = n + 1
                new_avg = (avg * n + float(latency_ms)) / new_count
                success_count = round(rate * n) + (1 if success else 0)
                new_rate = success_count / new_count

                row.usage_count = new_count
                row.average_response_time = new_avg
                row.success_rate = new_rate
                session.commit()

                return {
                    "usage_count": new_count,
                    "average_response_time": new_avg,
                    "success_rate": new_rate,
                }
            finally:
                session.close()
