# incident_capture/narrative_enhancer.py
import asyncio
import logging
import re
import time
from typing import Any, Dict, List

from sqlalchemy.orm import Session, sessionmaker

from incident_capture.backoff import BackoffExecutor
from incident_capture.clarification_ledger import ClarificationLedger
from incident_capture.entities import AIRequestLog, PHASE_LABELS, PHASES, utcnow
from incident_capture.errors import RetryExhaustedError, ValidationError
from incident_capture.incidents import load_incident
from incident_capture.llm_client import AITextService, Completion
from incident_capture.narrative_store import get_narrative_row
from incident_capture.prompt_registry import PromptTemplateRegistry
from incident_capture.prompts import ENHANCEMENT_TEMPLATE_NAME, INCIDENTS_SUBSYSTEM
from incident_capture.utils import Utils
from incident_capture.workflow import WorkflowStateMachine

logger = logging.getLogger("incident_capture")


def format_clarification_qa(pairs: List[Dict[str, Any]]) -> str:
    return "\n\n".join(f"Q: {p['question_text']}\nA: {p['answer_text']}" for p in pairs)


def fallback_enhancement(original_narrative: str, pairs: List[Dict[str, Any]]) -> str:
    """
    Original text followed by the answers as an "Additional Context" block.
    """
    enhanced = re.sub(r"\s+", " ", original_narrative or "").strip()
    details = []
    for p in pairs:
        detail = re.sub(r"\s+", " ", p.get("answer_text") or "").strip()
        if not detail:
            continue
        if not detail.endswith((".", "!", "?")):
            detail += "."
        details.append(detail)
    if details:
        enhanced += "\n\n**Additional Context:**\n" + " ".join(details)
    return enhanced


class NarrativeEnhancer(Utils):
    def __init__(
        self,
        session_factory: sessionmaker,
        workflow: WorkflowStateMachine,
        registry: PromptTemplateRegistry,
        ai_service: AITextService,
        backoff: BackoffExecutor,
        ledger: ClarificationLedger,
    ):
        self.SessionFactory = session_factory
        self.workflow = workflow
        self.registry = registry
        self.ai_service = ai_service
        self.backoff = backoff.without_terminal_errors()
        self.ledger = ledger

    def enhance(
        self,
        incident_id: str,
        phase: str,
        enhanced_text: str,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        """
        Store the enhanced text of one phase next to the original.
        """
        if phase not in PHASES:
            raise ValidationError(f"Invalid phase: {phase}")
        if not (enhanced_text or "").strip():
            raise ValidationError("Enhanced text cannot be empty")

        session: Session = self.SessionFactory()
        try:
            narrative = get_narrative_row(session, incident_id)
            now = utcnow()
            setattr(narrative, f"{phase}_extra", enhanced_text)
            narrative.enhanced_at = now
            narrative.updated_at = now
            narrative.version = (narrative.version or 1) + 1
            narrative.consolidated_enhanced = None

            self.workflow.on_narrative_enhanced(incident_id, session=session)
            session.commit()

            logger.info(
                f"[ENHANCE] stored enhanced {phase} incident={incident_id} version={narrative.version} "
                f"length={len(enhanced_text)} correlation_id={correlation_id}"
            )
            return {
                "phase": phase,
                "version": narrative.version,
                "enhanced_at": now.isoformat(),
            }
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_consolidated(self, incident_id: str) -> str:
        session: Session = self.SessionFactory()
        try:
            narrative = get_narrative_row(session, incident_id)
            if narrative.consolidated_enhanced:
                return narrative.consolidated_enhanced

            sections = []
            for p in PHASES:
                original = getattr(narrative, p) or ""
                extra = getattr(narrative, f"{p}_extra") or ""
                if original.strip():
                    sections.append(f"**{PHASE_LABELS[p]}**: {original}")
                if extra.strip():
                    sections.append(f"**{PHASE_LABELS[p]} (Enhanced)**: {extra}")
            consolidated = "\n\n".join(sections)

            if consolidated:
                narrative.consolidated_enhanced = consolidated
                session.commit()
            return consolidated
        finally:
            session.close()

    async def generate_enhancement(self, incident_id: str, phase: str, correlation_id: str) -> Dict[str, Any]:
        """
        Merge a phase's original text with its answered clarifications through
        the AI service, or deterministically when the service is unavailable,
        and store the result via `enhance`.
        """
        if phase not in PHASES:
            raise ValidationError(f"Invalid phase: {phase}")

        incident = load_incident(self.SessionFactory, incident_id)
        session: Session = self.SessionFactory()
        try:
            original = getattr(get_narrative_row(session, incident_id), phase) or ""
        finally:
            session.close()
        if not original.strip():
            raise ValidationError(f"Narrative text for phase {phase} is empty; nothing to enhance")

        pairs = [
            q for q in self.ledger.get_questions(incident_id, phase)
            if q["answered"] and (q["answer_text"] or "").strip()
        ]

        start = time.monotonic()
        template = self.registry.find_active(ENHANCEMENT_TEMPLATE_NAME, INCIDENTS_SUBSYSTEM)
        completion: Completion | None = None
        attempts = 0
        error = None

        if template is None:
            error = "template_not_found"
        else:
            rendered = self.registry.render(
                template,
                {
                    "participant_name": incident.participant_name or "Unknown",
                    "phase": phase,
                    "original_narrative": original,
                    "clarification_qa": format_clarification_qa(pairs) or "(no clarification answers)",
                },
            )
            if not rendered.complete:
                error = f"missing_placeholders:{','.join(rendered.missing_placeholders)}"
            else:
                try:
                    completion, attempts = await self.backoff.call_traced(
                        lambda: asyncio.to_thread(self.ai_service.complete, rendered.text, template.ai_model),
                        label=f"enhance_narrative:{phase}",
                        correlation_id=correlation_id,
                    )
                except RetryExhaustedError as e:
                    attempts = e.attempts
                    error = str(e.last_error)

        latency_ms = (time.monotonic() - start) * 1000.0
        enhanced_text = self.clean_triple_backticks(completion.text).strip() if completion else ""
        ai_backed = bool(enhanced_text)
        if not ai_backed:
            self.color_print(
                f"[ENHANCE] using fallback enhancement incident={incident_id} phase={phase} "
                f"attempts={attempts} reason={error or 'empty_response'} correlation_id={correlation_id}",
                "yellow",
                logging.WARNING,
            )
            enhanced_text = fallback_enhancement(original, pairs)
        if template is not None:
            self.registry.record_usage(ENHANCEMENT_TEMPLATE_NAME, latency_ms, ai_backed)

        self._log_request(
            incident_id,
            phase,
            correlation_id,
            model=completion.model if ai_backed else "fallback",
            latency_ms=latency_ms,
            tokens_used=completion.tokens_used if completion else None,
            cost_usd=completion.cost_usd if completion else None,
            attempts=attempts,
            success=ai_backed,
            error=error,
        )

        stored = self.enhance(incident_id, phase, enhanced_text, correlation_id=correlation_id)
        return {
            **stored,
            "enhanced_content": enhanced_text,
            "ai_backed": ai_backed,
            "attempts": attempts,
            "answers_used": len(pairs),
            "latency_ms": latency_ms,
        }

    def _log_request(self, incident_id, phase, correlation_id, *, model, latency_ms, tokens_used,
                     cost_usd, attempts, success, error) -> None:
        session: Session = self.SessionFactory()
        try:
            session.add(
                AIRequestLog(
                    correlation_id=correlation_id,
                    operation="enhance_narrative",
                    model=model,
                    prompt_template=ENHANCEMENT_TEMPLATE_NAME,
                    incident_id=incident_id,
                    phase=phase,
                    processing_time_ms=latency_ms,
                    tokens_used=tokens_used,
                    cost_usd=cost_usd,
                    attempts=attempts,
                    success=success,
                    fallback=not success,
                    error_message=error,
                )
            )
            session.commit()
        finally:
            session.close()
