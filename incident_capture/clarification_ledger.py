# incident_capture/clarification_ledger.py
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from incident_capture.entities import (
    ACTIVE,
    PHASES,
    RETIRED,
    ClarificationAnswer,
    ClarificationPhaseState,
    ClarificationQuestion,
    utcnow,
)
from incident_capture.errors import AnswerValidationError, NotFoundError, ValidationError
from incident_capture.google_helpers import ANSWER_COMPLETE_MIN_CHARS
from incident_capture.incidents import IncidentContext, get_incident_row
from incident_capture.phase_locks import PhaseLockRegistry
from incident_capture.question_generator import GenerationResult, QuestionGenerator, make_question_id
from incident_capture.utils import count_words, fingerprint_text
from incident_capture.workflow import WorkflowStateMachine

logger = logging.getLogger("incident_capture")

OUTCOME_CACHED = "cached"
OUTCOME_AI_GENERATED = "ai_generated"
OUTCOME_FALLBACK = "fallback"
OUTCOME_SUPERSEDED = "superseded"


def _validate_phase(phase: str) -> None:
    if phase not in PHASES:
        raise ValidationError(f"Invalid phase: {phase}. Expected one of {list(PHASES)}")


def question_to_dict(q: ClarificationQuestion) -> Dict[str, Any]:
    return {
        "question_id": q.question_id,
        "phase": q.phase,
        "question_text": q.question_text,
        "question_order": q.question_order,
        "generation": q.generation,
        "lifecycle": q.lifecycle,
        "ai_backed": q.ai_backed,
        "ai_model": q.ai_model,
        "prompt_version": q.prompt_version,
        "correlation_id": q.correlation_id,
        "generated_at": q.generated_at.isoformat() if q.generated_at else None,
        "retired_at": q.retired_at.isoformat() if q.retired_at else None,
    }


def answer_to_dict(a: ClarificationAnswer) -> Dict[str, Any]:
    return {
        "answer_id": a.id,
        "question_id": a.question_id,
        "phase": a.phase,
        "answer_text": a.answer_text,
        "character_count": a.character_count,
        "word_count": a.word_count,
        "is_complete": a.is_complete,
        "answered_by": a.answered_by,
        "answered_at": a.answered_at.isoformat() if a.answered_at else None,
        "updated_at": a.updated_at.isoformat() if a.updated_at else None,
    }


class ClarificationLedger:
    """
    Per-(incident, phase) question batches keyed by the fingerprint of the
    narrative text they were generated from, plus the answers to them.

    Same text -> the stored batch comes back untouched (cached).
    New text  -> a new generation replaces the active batch; the old one is
                 retired and stays queryable together with its answers.
    Stale text -> a batch generated from a read older than the active batch
                 is stored retired and the active batch is left alone.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        generator: QuestionGenerator,
        workflow: WorkflowStateMachine,
        locks: PhaseLockRegistry | None = None,
        min_complete_chars: int = ANSWER_COMPLETE_MIN_CHARS,
    ):
        self.SessionFactory = session_factory
        self.generator = generator
        self.workflow = workflow
        self.locks = locks or PhaseLockRegistry()
        self.min_complete_chars = min_complete_chars

    # -----------------------
    # Helpers
    # -----------------------

    def _phase_state(self, session: Session, incident_id: str, phase: str) -> Optional[ClarificationPhaseState]:
        return (
            session.query(ClarificationPhaseState)
            .filter(ClarificationPhaseState.incident_id == str(incident_id))
            .filter(ClarificationPhaseState.phase == phase)
            .one_or_none()
        )

    def _active_questions(self, session: Session, incident_id: str, phase: str) -> List[ClarificationQuestion]:
        return (
            session.query(ClarificationQuestion)
            .filter(ClarificationQuestion.incident_id == str(incident_id))
            .filter(ClarificationQuestion.phase == phase)
            .filter(ClarificationQuestion.lifecycle == ACTIVE)
            .order_by(ClarificationQuestion.question_order.asc())
            .all()
        )

    def _cached_response(
        self,
        incident_id: str,
        phase: str,
        fingerprint: str,
        state: ClarificationPhaseState,
        questions: List[ClarificationQuestion],
        correlation_id: str,
    ) -> Dict[str, Any]:
        return {
            "incident_id": incident_id,
            "phase": phase,
            "questions": [question_to_dict(q) for q in questions],
            "cached": True,
            "outcome": OUTCOME_CACHED,
            "ai_backed": all(q.ai_backed for q in questions),
            "model_id": questions[0].ai_model if questions else None,
            "template_version": questions[0].prompt_version if questions else None,
            "generation": questions[0].generation if questions else state.generation,
            "fingerprint": fingerprint,
            "correlation_id": correlation_id,
        }

    # -----------------------
    # Questions
    # -----------------------

    async def ensure_questions(
        self,
        incident_id: str,
        phase: str,
        narrative_text: str,
        correlation_id: str,
    ) -> Dict[str, Any]:
        _validate_phase(phase)
        if not (narrative_text or "").strip():
            raise ValidationError(f"Narrative text for phase {phase} is empty; nothing to clarify")

        fingerprint = fingerprint_text(narrative_text)

        with self.locks.hold(incident_id, phase):
            session: Session = self.SessionFactory()
            try:
                incident = get_incident_row(session, incident_id)
                self.workflow.assert_capture_open(incident)
                incident_context = IncidentContext.from_row(incident)

                state = self._phase_state(session, incident_id, phase)
                active = self._active_questions(session, incident_id, phase)
                if active and state is not None and state.narrative_fingerprint == fingerprint:
                    logger.info(
                        f"[LEDGER] cache hit incident={incident_id} phase={phase} "
                        f"fingerprint={fingerprint[:12]} generation={state.generation} "
                        f"correlation_id={correlation_id}"
                    )
                    return self._cached_response(incident_id, phase, fingerprint, state, active, correlation_id)
                next_generation = (state.generation if state is not None else 0) + 1
            finally:
                session.close()

        logger.info(
            f"[LEDGER] cache miss incident={incident_id} phase={phase} fingerprint={fingerprint[:12]} "
            f"generation={next_generation} correlation_id={correlation_id}"
        )
        result: GenerationResult = await self.generator.generate_for_phase(
            incident_context,
            phase,
            narrative_text,
            correlation_id=correlation_id,
            generation=next_generation,
        )

        with self.locks.hold(incident_id, phase):
            return self._store_batch(incident_id, phase, fingerprint, result, correlation_id)

    def _store_batch(
        self,
        incident_id: str,
        phase: str,
        fingerprint: str,
        result: GenerationResult,
        correlation_id: str,
    ) -> Dict[str, Any]:
        session: Session = self.SessionFactory()
        try:
            incident = get_incident_row(session, incident_id)
            self.workflow.assert_capture_open(incident)

            state = self._phase_state(session, incident_id, phase)
            active = self._active_questions(session, incident_id, phase)
            if active and state is not None and state.narrative_fingerprint == fingerprint:
                # a concurrent caller stored a batch for the same text first
                logger.info(
                    f"[LEDGER] discarding generated batch, already stored by a concurrent call "
                    f"incident={incident_id} phase={phase} fingerprint={fingerprint[:12]} "
                    f"correlation_id={correlation_id}"
                )
                return self._cached_response(incident_id, phase, fingerprint, state, active, correlation_id)

            if state is None:
                state = ClarificationPhaseState(incident_id=str(incident_id), phase=phase, generation=0)
                session.add(state)

            # the active batch was stored after our read (for other text); it stays active
            read_generation = result.generation - 1
            superseded = any(q.generation > read_generation for q in active)
            generation = (state.generation or 0) + 1
            questions = result.questions
            if generation != result.generation:
                questions = [
                    dict(q, question_id=make_question_id(phase, generation, q["question_order"]))
                    for q in questions
                ]

            now = utcnow()
            if not superseded:
                for old in active:
                    old.lifecycle = RETIRED
                    old.retired_at = now

            rows = []
            for q in questions:
                row = ClarificationQuestion(
                    incident_id=str(incident_id),
                    phase=phase,
                    question_id=q["question_id"],
                    question_text=q["question_text"],
                    question_order=q["question_order"],
                    generation=generation,
                    ai_model=result.model_id,
                    prompt_version=result.template_version,
                    ai_backed=result.ai_backed,
                    correlation_id=correlation_id,
                    generated_at=now,
                    lifecycle=RETIRED if superseded else ACTIVE,
                    retired_at=now if superseded else None,
                )
                session.add(row)
                rows.append(row)

            # generation only ever grows so ids stay unique; the fingerprint follows the active batch
            state.generation = generation
            if not superseded:
                state.narrative_fingerprint = fingerprint
                state.last_generated_at = now
                state.last_correlation_id = correlation_id
                self.workflow.on_questions_generated(incident_id, session=session)
            session.commit()

            if superseded:
                outcome = OUTCOME_SUPERSEDED
                logger.warning(
                    f"[LEDGER] stored {len(rows)} questions as retired, a newer batch landed while generating "
                    f"incident={incident_id} phase={phase} generation={generation} "
                    f"fingerprint={fingerprint[:12]} correlation_id={correlation_id}"
                )
            else:
                outcome = OUTCOME_AI_GENERATED if result.ai_backed else OUTCOME_FALLBACK
                logger.info(
                    f"[LEDGER] stored {len(rows)} questions incident={incident_id} phase={phase} "
                    f"generation={generation} retired={len(active)} ai_backed={result.ai_backed} "
                    f"fingerprint={fingerprint[:12]} correlation_id={correlation_id}"
                )

            return {
                "incident_id": incident_id,
                "phase": phase,
                "questions": [question_to_dict(r) for r in rows],
                "cached": False,
                "outcome": outcome,
                "ai_backed": result.ai_backed,
                "model_id": result.model_id,
                "template_version": result.template_version,
                "generation": generation,
                "fingerprint": fingerprint,
                "attempts": result.attempts,
                "latency_ms": result.latency_ms,
                "tokens_used": result.tokens_used,
                "cost_usd": result.cost_usd,
                "correlation_id": correlation_id,
            }
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def get_questions(
        self,
        incident_id: str,
        phase: str | None = None,
        include_retired: bool = False,
    ) -> List[Dict[str, Any]]:
        if phase is not None:
            _validate_phase(phase)

        session: Session = self.SessionFactory()
        try:
            get_incident_row(session, incident_id)
            q = session.query(ClarificationQuestion).filter(ClarificationQuestion.incident_id == str(incident_id))
            if phase is not None:
                q = q.filter(ClarificationQuestion.phase == phase)
            if not include_retired:
                q = q.filter(ClarificationQuestion.lifecycle == ACTIVE)
            questions = q.all()

            answers = {
                (a.phase, a.question_id): a
                for a in session.query(ClarificationAnswer)
                .filter(ClarificationAnswer.incident_id == str(incident_id))
                .all()
            }
        finally:
            session.close()

        questions.sort(key=lambda r: (PHASES.index(r.phase), r.generation, r.question_order))
        out = []
        for row in questions:
            item = question_to_dict(row)
            answer = answers.get((row.phase, row.question_id))
            item["answered"] = answer is not None
            item["answer_id"] = answer.id if answer else None
            item["answer_text"] = answer.answer_text if answer else None
            item["is_complete"] = answer.is_complete if answer else False
            out.append(item)
        return out

    # -----------------------
    # Answers
    # -----------------------

    def submit_answer(
        self,
        incident_id: str,
        phase: str,
        question_id: str,
        text: str,
        actor_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        _validate_phase(phase)
        if not isinstance(text, str) or not text.strip():
            raise AnswerValidationError("Answer text cannot be empty")

        character_count = len(text)
        word_count = count_words(text)
        is_complete = character_count > self.min_complete_chars

        with self.locks.hold(incident_id, phase):
            session: Session = self.SessionFactory()
            try:
                incident = get_incident_row(session, incident_id)
                self.workflow.assert_capture_open(incident)

                question = (
                    session.query(ClarificationQuestion)
                    .filter(ClarificationQuestion.incident_id == str(incident_id))
                    .filter(ClarificationQuestion.phase == phase)
                    .filter(ClarificationQuestion.question_id == question_id)
                    .filter(ClarificationQuestion.lifecycle == ACTIVE)
                    .one_or_none()
                )
                if question is None:
                    raise NotFoundError(f"No active question {question_id} for incident {incident_id} phase {phase}")

                answer = self._find_answer(session, incident_id, phase, question_id)
                created = answer is None
                now = utcnow()
                if created:
                    answer = ClarificationAnswer(
                        incident_id=str(incident_id),
                        phase=phase,
                        question_id=question_id,
                        answered_at=now,
                    )
                    session.add(answer)
                answer.answer_text = text
                answer.character_count = character_count
                answer.word_count = word_count
                answer.is_complete = is_complete
                answer.answered_by = actor_id
                answer.updated_at = now

                self.workflow.on_answer_submitted(incident_id, phase, session=session)
                try:
                    session.commit()
                except IntegrityError:
                    # another process inserted the same key; fall back to updating it
                    session.rollback()
                    answer = self._find_answer(session, incident_id, phase, question_id)
                    if answer is None:
                        raise
                    created = False
                    answer.answer_text = text
                    answer.character_count = character_count
                    answer.word_count = word_count
                    answer.is_complete = is_complete
                    answer.answered_by = actor_id
                    answer.updated_at = utcnow()
                    self.workflow.on_answer_submitted(incident_id, phase, session=session)
                    session.commit()

                logger.info(
                    f"[LEDGER] answer {'created' if created else 'updated'} incident={incident_id} "
                    f"phase={phase} question={question_id} chars={character_count} "
                    f"complete={is_complete} correlation_id={correlation_id}"
                )
                return {
                    "answer_id": answer.id,
                    "question_id": question_id,
                    "phase": phase,
                    "character_count": character_count,
                    "word_count": word_count,
                    "is_complete": is_complete,
                    "created": created,
                }
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    def _find_answer(self, session: Session, incident_id: str, phase: str, question_id: str):
        return (
            session.query(ClarificationAnswer)
            .filter(ClarificationAnswer.incident_id == str(incident_id))
            .filter(ClarificationAnswer.phase == phase)
            .filter(ClarificationAnswer.question_id == question_id)
            .one_or_none()
        )

    def get_answers(self, incident_id: str, phase: str | None = None) -> List[Dict[str, Any]]:
        if phase is not None:
            _validate_phase(phase)
        session: Session = self.SessionFactory()
        try:
            get_incident_row(session, incident_id)
            q = session.query(ClarificationAnswer).filter(ClarificationAnswer.incident_id == str(incident_id))
            if phase is not None:
                q = q.filter(ClarificationAnswer.phase == phase)
            rows = q.all()
            rows.sort(key=lambda a: (PHASES.index(a.phase), a.answered_at))
            return [answer_to_dict(a) for a in rows]
        finally:
            session.close()
