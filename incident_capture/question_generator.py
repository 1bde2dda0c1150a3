# incident_capture/question_generator.py
import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session, sessionmaker

from incident_capture.backoff import BackoffExecutor
from incident_capture.entities import AIRequestLog, PHASES
from incident_capture.errors import ParseError, RetryExhaustedError, ValidationError
from incident_capture.incidents import IncidentContext
from incident_capture.llm_client import AITextService, Completion
from incident_capture.prompt_registry import PromptTemplateRecord, PromptTemplateRegistry
from incident_capture.prompts import FALLBACK_QUESTIONS, INCIDENTS_SUBSYSTEM, question_template_name
from incident_capture.utils import Utils

logger = logging.getLogger("incident_capture")

FALLBACK_MODEL_ID = "fallback"


def make_question_id(phase: str, generation: int, n: int) -> str:
    return f"{phase}_g{generation}_q{n}"


@dataclass
class GenerationResult:
    phase: str
    questions: List[Dict[str, Any]]
    ai_backed: bool
    model_id: str
    template_version: Optional[str]
    correlation_id: str
    generation: int
    latency_ms: float = 0.0
    tokens_used: Optional[int] = None
    cost_usd: Optional[float] = None
    attempts: int = 0
    error: Optional[str] = None


class QuestionGenerator(Utils):
    """
    Turns one phase's narrative text into an ordered batch of clarification
    questions. AI failure never escapes: exhausted retries or a missing
    template produce the phase's fixed fallback set instead.
    """

    def __init__(
        self,
        registry: PromptTemplateRegistry,
        ai_service: AITextService,
        backoff: BackoffExecutor,
        session_factory: sessionmaker,
    ):
        self.registry = registry
        self.ai_service = ai_service
        # AI failures of any kind end in the fallback set
        self.backoff = backoff.without_terminal_errors()
        self.SessionFactory = session_factory

    # -----------------------
    # Response contract
    # -----------------------

    def parse_questions(self, raw_text: str) -> List[str]:
        """
        Accepts a JSON array of questions or an object with a "questions"
        array. Items are strings or objects with "question_text"/"question".
        """
        if not (raw_text or "").strip():
            raise ParseError("AI response was empty")
        try:
            data = self.load_fault_tolerant_json(raw_text)
        except ValueError as e:
            raise ParseError(f"AI response is not JSON: {e}") from e

        if isinstance(data, dict):
            data = data.get("questions")
        if not isinstance(data, list):
            raise ParseError("AI response must be a list of questions or an object with a 'questions' list")

        questions: List[str] = []
        for item in data:
            if isinstance(item, dict):
                text = item.get("question_text") or item.get("question")
            else:
                text = item
            if isinstance(text, str) and text.strip():
                questions.append(text.strip())

        if not questions:
            raise ParseError("AI response contained no usable questions")
        return questions

    # -----------------------
    # Generation
    # -----------------------

    def _batch(self, phase: str, generation: int, texts: List[str]) -> List[Dict[str, Any]]:
        return [
            {
                "question_id": make_question_id(phase, generation, i + 1),
                "question_text": text,
                "question_order": i + 1,
            }
            for i, text in enumerate(texts)
        ]

    def fallback_result(
        self,
        phase: str,
        *,
        correlation_id: str,
        generation: int,
        latency_ms: float = 0.0,
        attempts: int = 0,
        error: str | None = None,
        template_version: str | None = None,
    ) -> GenerationResult:
        return GenerationResult(
            phase=phase,
            questions=self._batch(phase, generation, list(FALLBACK_QUESTIONS[phase])),
            ai_backed=False,
            model_id=FALLBACK_MODEL_ID,
            template_version=template_version,
            correlation_id=correlation_id,
            generation=generation,
            latency_ms=latency_ms,
            attempts=attempts,
            error=error,
        )

    async def generate_for_phase(
        self,
        incident_context: IncidentContext,
        phase: str,
        narrative_text: str,
        *,
        correlation_id: str,
        generation: int,
    ) -> GenerationResult:
        if phase not in PHASES:
            raise ValidationError(f"Invalid phase: {phase}")

        template_name = question_template_name(phase)
        template: PromptTemplateRecord | None = self.registry.find_active(template_name, INCIDENTS_SUBSYSTEM)
        if template is None:
            self.color_print(
                f"[QUESTIONS] no active template {template_name}; using fallback questions "
                f"incident={incident_context.incident_id} phase={phase} correlation_id={correlation_id}",
                "yellow",
                logging.WARNING,
            )
            result = self.fallback_result(
                phase, correlation_id=correlation_id, generation=generation, error="template_not_found"
            )
            self._log_request(incident_context.incident_id, result, template_name)
            return result

        variables = dict(incident_context.template_variables())
        variables["phase"] = phase
        variables["narrative_content"] = narrative_text
        rendered = self.registry.render(template, variables)
        if not rendered.complete:
            self.color_print(
                f"[QUESTIONS] template {template_name} v{template.prompt_version} left placeholders "
                f"{rendered.missing_placeholders} unresolved; using fallback questions "
                f"incident={incident_context.incident_id} phase={phase} correlation_id={correlation_id}",
                "yellow",
                logging.WARNING,
            )
            result = self.fallback_result(
                phase,
                correlation_id=correlation_id,
                generation=generation,
                error=f"missing_placeholders:{','.join(rendered.missing_placeholders)}",
                template_version=template.prompt_version,
            )
            self._log_request(incident_context.incident_id, result, template_name)
            return result

        def attempt():
            # blocking client call runs off the event loop, outside any lock
            async def run():
                completion: Completion = await asyncio.to_thread(
                    self.ai_service.complete, rendered.text, template.ai_model
                )
                return completion, self.parse_questions(completion.text)
            return run()

        start = time.monotonic()
        try:
            (completion, texts), attempts = await self.backoff.call_traced(
                attempt,
                label=f"generate_questions:{phase}",
                correlation_id=correlation_id,
            )
        except RetryExhaustedError as e:
            latency_ms = (time.monotonic() - start) * 1000.0
            self.color_print(
                f"[QUESTIONS] AI exhausted after {e.attempts} attempts; using fallback questions "
                f"incident={incident_context.incident_id} phase={phase} correlation_id={correlation_id}",
                "yellow",
                logging.WARNING,
            )
            self.registry.record_usage(template_name, latency_ms, False)
            result = self.fallback_result(
                phase,
                correlation_id=correlation_id,
                generation=generation,
                latency_ms=latency_ms,
                attempts=e.attempts,
                error=str(e.last_error),
                template_version=template.prompt_version,
            )
            self._log_request(incident_context.incident_id, result, template_name)
            return result

        latency_ms = (time.monotonic() - start) * 1000.0
        self.registry.record_usage(template_name, latency_ms, True)
        result = GenerationResult(
            phase=phase,
            questions=self._batch(phase, generation, texts),
            ai_backed=True,
            model_id=completion.model,
            template_version=template.prompt_version,
            correlation_id=correlation_id,
            generation=generation,
            latency_ms=latency_ms,
            tokens_used=completion.tokens_used,
            cost_usd=completion.cost_usd,
            attempts=attempts,
        )
        logger.info(
            f"[QUESTIONS] generated {len(texts)} questions incident={incident_context.incident_id} "
            f"phase={phase} model={completion.model} attempts={attempts} latency_ms={latency_ms:.0f} "
            f"tokens={completion.tokens_used} cost_usd={completion.cost_usd} correlation_id={correlation_id}"
        )
        self._log_request(incident_context.incident_id, result, template_name)
        return result

    def _log_request(self, incident_id: str, result: GenerationResult, template_name: str) -> None:
        session: Session = self.SessionFactory()
        try:
            session.add(
                AIRequestLog(
                    correlation_id=result.correlation_id,
                    operation="generate_clarification_questions",
                    model=result.model_id,
                    prompt_template=template_name,
                    incident_id=incident_id,
                    phase=result.phase,
                    processing_time_ms=result.latency_ms,
                    tokens_used=result.tokens_used,
                    cost_usd=result.cost_usd,
                    attempts=result.attempts,
                    success=result.ai_backed,
                    fallback=not result.ai_backed,
                    error_message=result.error,
                )
            )
            session.commit()
        finally:
            session.close()
