# incident_capture/backend.py

import asyncio
import json
import logging
import os
from typing import Any, Dict, Mapping, Optional

import commentjson
from sqlalchemy.orm import sessionmaker

from incident_capture.auth import (
    ACCESS_LLM_FEATURES,
    EDIT_OWN_INCIDENT_CAPTURE,
    VIEW_ALL_COMPANY_INCIDENTS,
    Actor,
    Authorizer,
    StaticTokenAuthorizer,
)
from incident_capture.backoff import BackoffExecutor
from incident_capture.clarification_ledger import ClarificationLedger
from incident_capture.entities import PHASES, Base
from incident_capture.errors import AuthError, IncidentCaptureError, ValidationError
from incident_capture.google_helpers import (
    DEFAULT_LLM_MODEL,
    LLM_TIMEOUT,
    PROJECT_ID,
    REGION,
    create_session_factory,
    get_db_engine,
)
from incident_capture.incidents import IncidentContext, create_incident, load_incident
from incident_capture.llm_client import AITextService, LlmTextService
from incident_capture.narrative_enhancer import NarrativeEnhancer
from incident_capture.narrative_store import NarrativeStore
from incident_capture.phase_locks import PhaseLockRegistry
from incident_capture.prompt_registry import PromptTemplateRegistry
from incident_capture.question_generator import QuestionGenerator
from incident_capture.utils import Utils, new_correlation_id
from incident_capture.workflow import WorkflowStateMachine

logger = logging.getLogger("incident_capture")

OUTCOME_SKIPPED_EMPTY = "skipped_empty"
OUTCOME_FAILED = "failed"


class IncidentCaptureBackend(Utils):
    """
    Entry points of the capture core. Every call takes the actor token first,
    opens a correlation id, authorizes the actor before loading the incident and
    returns a dict carrying `status` and `correlation_id`.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        authorizer: Authorizer,
        ai_service: AITextService,
        *,
        registry: PromptTemplateRegistry | None = None,
        backoff: BackoffExecutor | None = None,
        locks: PhaseLockRegistry | None = None,
    ):
        self.SessionFactory = session_factory
        self.authorizer = authorizer
        self.backoff = backoff or BackoffExecutor()
        self.registry = registry or PromptTemplateRegistry(session_factory)
        self.workflow = WorkflowStateMachine(session_factory)
        self.narratives = NarrativeStore(session_factory, self.workflow)
        self.generator = QuestionGenerator(self.registry, ai_service, self.backoff, session_factory)
        self.ledger = ClarificationLedger(session_factory, self.generator, self.workflow, locks or PhaseLockRegistry())
        self.enhancer = NarrativeEnhancer(
            session_factory, self.workflow, self.registry, ai_service, self.backoff, self.ledger
        )

    # -----------------------
    # Entry checks
    # -----------------------

    async def _lookup_incident(self, incident_id: str, correlation_id: str) -> IncidentContext:
        if not incident_id:
            raise ValidationError("incident_id is required", correlation_id=correlation_id)
        return await self.backoff.call(
            lambda: load_incident(self.SessionFactory, incident_id),
            label=f"incident_lookup:{incident_id}",
            correlation_id=correlation_id,
        )

    async def _authorize(self, token: str, capability: str, resource_context: Dict[str, Any], correlation_id: str) -> Actor:
        return await self.backoff.call(
            lambda: self.authorizer.authorize(token, capability, resource_context),
            label=f"authorize:{capability}",
            correlation_id=correlation_id,
        )

    async def _enter(self, token: str, incident_id: str, capability: str, correlation_id: str):
        # authorize before touching the incident so unauthenticated callers learn nothing about it
        actor = await self._authorize(token, capability, {"incident_id": incident_id}, correlation_id)
        incident = await self._lookup_incident(incident_id, correlation_id)
        if incident.company_id and actor.company_id and incident.company_id != actor.company_id:
            raise AuthError("Access denied: incident belongs to different company", correlation_id=correlation_id)
        return incident, actor

    def _ok(self, correlation_id: str, **data) -> Dict[str, Any]:
        return {"status": "success", "correlation_id": correlation_id, **data}

    def _stored_phase_texts(self, incident_id: str) -> Dict[str, str]:
        narrative = self.narratives.get(incident_id)
        return {p: narrative.get(p) or "" for p in PHASES}

    # -----------------------
    # Incidents & narratives
    # -----------------------

    async def create_incident(
        self,
        token: str,
        *,
        reporter_name: str,
        participant_name: str,
        location: str = "",
        event_date_time: str = "",
        company_id: str | None = None,
        incident_id: str | None = None,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        actor = await self._authorize(token, EDIT_OWN_INCIDENT_CAPTURE, {"company_id": company_id}, correlation_id)
        new_id = create_incident(
            self.SessionFactory,
            reporter_name=reporter_name,
            participant_name=participant_name,
            location=location,
            event_date_time=event_date_time,
            company_id=company_id or actor.company_id,
            created_by=actor.actor_id,
            incident_id=incident_id,
        )
        logger.info(f"[INCIDENT] created incident={new_id} by={actor.actor_id} correlation_id={correlation_id}")
        return self._ok(correlation_id, incident_id=new_id)

    async def create_narrative(self, token: str, incident_id: str, correlation_id: str | None = None) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, EDIT_OWN_INCIDENT_CAPTURE, correlation_id)
        result = self.narratives.ensure(incident_id, correlation_id=correlation_id)
        narrative = result["narrative"]
        return self._ok(
            correlation_id,
            narrative_id=narrative["narrative_id"],
            created=result["created"],
            narrative=narrative,
        )

    async def update_narrative_phases(
        self,
        token: str,
        incident_id: str,
        phase_edits: Mapping[str, Optional[str]],
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, EDIT_OWN_INCIDENT_CAPTURE, correlation_id)
        result = self.narratives.apply_phase_edit(incident_id, phase_edits, correlation_id=correlation_id)
        return self._ok(correlation_id, **result)

    async def finalize_capture(self, token: str, incident_id: str, correlation_id: str | None = None) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, EDIT_OWN_INCIDENT_CAPTURE, correlation_id)
        incident = self.workflow.finalize_capture(incident_id)
        return self._ok(correlation_id, incident=incident.to_dict())

    # -----------------------
    # Clarification questions
    # -----------------------

    async def generate_clarification_questions(
        self,
        token: str,
        incident_id: str,
        phase: str,
        narrative_text: str | None = None,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        """
        Questions for one phase. Without `narrative_text` the stored phase
        text is used.
        """
        correlation_id = correlation_id or new_correlation_id()
        incident, _ = await self._enter(token, incident_id, ACCESS_LLM_FEATURES, correlation_id)
        self.workflow.assert_capture_open(incident)
        if phase not in PHASES:
            raise ValidationError(f"Invalid phase: {phase}", correlation_id=correlation_id)
        if narrative_text is None:
            narrative_text = self._stored_phase_texts(incident_id)[phase]

        result = await self.ledger.ensure_questions(incident_id, phase, narrative_text, correlation_id)
        return self._ok(**result)

    async def generate_all_clarification_questions(
        self,
        token: str,
        incident_id: str,
        phase_texts: Mapping[str, Optional[str]] | None = None,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        """
        Runs the four phase pipelines concurrently. Once the entry checks pass
        the batch itself never fails: each phase reports its own outcome.
        """
        correlation_id = correlation_id or new_correlation_id()
        incident, _ = await self._enter(token, incident_id, ACCESS_LLM_FEATURES, correlation_id)
        self.workflow.assert_capture_open(incident)

        if phase_texts is None:
            texts = self._stored_phase_texts(incident_id)
        else:
            unknown = [k for k in phase_texts if k not in PHASES]
            if unknown:
                raise ValidationError(f"Unknown narrative phase(s): {unknown}", correlation_id=correlation_id)
            texts = {p: phase_texts.get(p) or "" for p in PHASES}

        pending = [p for p in PHASES if texts[p].strip()]
        results = await asyncio.gather(
            *(self.ledger.ensure_questions(incident_id, p, texts[p], correlation_id) for p in pending),
            return_exceptions=True,
        )
        by_phase = dict(zip(pending, results))

        outcomes = []
        for phase in PHASES:
            if phase not in by_phase:
                logger.info(
                    f"[BATCH] skipping empty phase incident={incident_id} phase={phase} correlation_id={correlation_id}"
                )
                outcomes.append({"phase": phase, "outcome": OUTCOME_SKIPPED_EMPTY, "questions": []})
                continue

            result = by_phase[phase]
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                error_code = getattr(result, "error_code", "internal_error")
                logger.error(
                    f"[BATCH] phase failed incident={incident_id} phase={phase} "
                    f"error_code={error_code} correlation_id={correlation_id}: {result!r}"
                )
                outcomes.append({
                    "phase": phase,
                    "outcome": OUTCOME_FAILED,
                    "questions": [],
                    "error_code": error_code,
                    "message": str(result),
                })
                continue

            outcomes.append({
                "phase": phase,
                "outcome": result["outcome"],
                "cached": result["cached"],
                "ai_backed": result["ai_backed"],
                "generation": result["generation"],
                "questions": result["questions"],
            })

        failed = [o["phase"] for o in outcomes if o["outcome"] == OUTCOME_FAILED]
        return {
            "status": "partial" if failed else "success",
            "correlation_id": correlation_id,
            "incident_id": incident_id,
            "outcomes": outcomes,
            "failed_phases": failed,
        }

    async def get_clarification_questions(
        self,
        token: str,
        incident_id: str,
        phase: str | None = None,
        include_retired: bool = False,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, VIEW_ALL_COMPANY_INCIDENTS, correlation_id)
        questions = self.ledger.get_questions(incident_id, phase, include_retired=include_retired)
        return self._ok(correlation_id, incident_id=incident_id, questions=questions)

    # -----------------------
    # Answers
    # -----------------------

    async def submit_clarification_answer(
        self,
        token: str,
        incident_id: str,
        phase: str,
        question_id: str,
        answer_text: str,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        _, actor = await self._enter(token, incident_id, EDIT_OWN_INCIDENT_CAPTURE, correlation_id)
        result = self.ledger.submit_answer(
            incident_id,
            phase,
            question_id,
            answer_text,
            actor_id=actor.actor_id,
            correlation_id=correlation_id,
        )
        return self._ok(correlation_id, **result)

    async def get_clarification_answers(
        self,
        token: str,
        incident_id: str,
        phase: str | None = None,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, VIEW_ALL_COMPANY_INCIDENTS, correlation_id)
        answers = self.ledger.get_answers(incident_id, phase)
        return self._ok(correlation_id, incident_id=incident_id, answers=answers)

    # -----------------------
    # Enhancement & consolidation
    # -----------------------

    async def enhance_narrative(
        self,
        token: str,
        incident_id: str,
        phase: str,
        enhanced_text: str,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, ACCESS_LLM_FEATURES, correlation_id)
        result = self.enhancer.enhance(incident_id, phase, enhanced_text, correlation_id=correlation_id)
        return self._ok(correlation_id, **result)

    async def generate_enhancement(
        self,
        token: str,
        incident_id: str,
        phase: str,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, ACCESS_LLM_FEATURES, correlation_id)
        result = await self.enhancer.generate_enhancement(incident_id, phase, correlation_id)
        return self._ok(correlation_id, **result)

    async def get_consolidated_narrative(
        self,
        token: str,
        incident_id: str,
        include_enhanced: bool = True,
        correlation_id: str | None = None,
    ) -> Dict[str, Any]:
        correlation_id = correlation_id or new_correlation_id()
        await self._enter(token, incident_id, VIEW_ALL_COMPANY_INCIDENTS, correlation_id)
        if include_enhanced:
            text = self.enhancer.get_consolidated(incident_id)
        else:
            text = self.narratives.consolidate(incident_id, correlation_id=correlation_id)
        return self._ok(correlation_id, incident_id=incident_id, consolidated_narrative=text)

    # -----------------------
    # Message dispatch
    # -----------------------

    async def process_request(self, request_data: dict) -> dict:
        """
        Dispatch a {"type", "token", "payload"} message to an entry point.
        Domain errors come back as {"status": "error", ...}; anything else
        propagates to the transport.
        """
        request_type = request_data.get("type")
        token = request_data.get("token") or ""
        payload = request_data.get("payload") or {}
        correlation_id = request_data.get("correlation_id") or new_correlation_id()
        incident_id = payload.get("incident_id")

        try:
            preview = json.dumps({k: v for k, v in request_data.items() if k != "token"}, indent=2)
        except (TypeError, ValueError):
            preview = str(request_type)
        logger.debug(f"process_request request {preview}")

        try:
            if request_type == "create_incident":
                response_data = await self.create_incident(
                    token,
                    reporter_name=payload.get("reporter_name"),
                    participant_name=payload.get("participant_name"),
                    location=payload.get("location", ""),
                    event_date_time=payload.get("event_date_time", ""),
                    company_id=payload.get("company_id"),
                    incident_id=incident_id,
                    correlation_id=correlation_id,
                )

            elif request_type == "create_narrative":
                response_data = await self.create_narrative(token, incident_id, correlation_id=correlation_id)

            elif request_type == "update_narrative_phases":
                response_data = await self.update_narrative_phases(
                    token, incident_id, payload.get("phase_edits") or {}, correlation_id=correlation_id
                )

            elif request_type == "generate_clarification_questions":
                response_data = await self.generate_clarification_questions(
                    token,
                    incident_id,
                    payload.get("phase"),
                    payload.get("narrative_text"),
                    correlation_id=correlation_id,
                )

            elif request_type == "generate_all_clarification_questions":
                response_data = await self.generate_all_clarification_questions(
                    token, incident_id, payload.get("phase_texts"), correlation_id=correlation_id
                )

            elif request_type == "submit_clarification_answer":
                response_data = await self.submit_clarification_answer(
                    token,
                    incident_id,
                    payload.get("phase"),
                    payload.get("question_id"),
                    payload.get("answer_text"),
                    correlation_id=correlation_id,
                )

            elif request_type == "get_clarification_questions":
                response_data = await self.get_clarification_questions(
                    token,
                    incident_id,
                    payload.get("phase"),
                    include_retired=bool(payload.get("include_retired", False)),
                    correlation_id=correlation_id,
                )

            elif request_type == "get_clarification_answers":
                response_data = await self.get_clarification_answers(
                    token, incident_id, payload.get("phase"), correlation_id=correlation_id
                )

            elif request_type == "enhance_narrative":
                response_data = await self.enhance_narrative(
                    token,
                    incident_id,
                    payload.get("phase"),
                    payload.get("enhanced_text"),
                    correlation_id=correlation_id,
                )

            elif request_type == "generate_enhancement":
                response_data = await self.generate_enhancement(
                    token, incident_id, payload.get("phase"), correlation_id=correlation_id
                )

            elif request_type == "get_consolidated_narrative":
                response_data = await self.get_consolidated_narrative(
                    token,
                    incident_id,
                    include_enhanced=bool(payload.get("include_enhanced", True)),
                    correlation_id=correlation_id,
                )

            elif request_type == "finalize_capture":
                response_data = await self.finalize_capture(token, incident_id, correlation_id=correlation_id)

            else:
                response_data = {
                    "status": "error",
                    "error_code": "unknown_request_type",
                    "message": f"Unknown request type: {request_type}",
                    "correlation_id": correlation_id,
                }

        except IncidentCaptureError as e:
            logger.warning(
                f"[REQUEST] {request_type} failed error_code={e.error_code} "
                f"incident={incident_id} correlation_id={correlation_id}: {e}"
            )
            response_data = {
                "status": "error",
                "error_code": e.error_code,
                "message": str(e),
                "correlation_id": e.correlation_id or correlation_id,
            }
        except Exception as e:
            logger.exception(f"Error while processing request {request_type} correlation_id={correlation_id}: {e}")
            raise

        logger.debug(f"response status={response_data.get('status')} correlation_id={correlation_id}")
        return response_data


def load_actor_grants(path: str | None = None) -> Dict[str, Actor]:
    """
    Read a {token: {actor_id, company_id, capabilities}} table from a
    JSON-with-comments file (ACTOR_GRANTS_PATH).
    """
    path = path or os.getenv("ACTOR_GRANTS_PATH")
    if not path or not os.path.exists(path):
        logger.warning(f"No actor grants file found at {path!r}; every request will be denied")
        return {}
    with open(path, "r", encoding="utf-8") as f:
        raw = commentjson.load(f)
    return {
        token: Actor(
            actor_id=str(entry["actor_id"]),
            company_id=entry.get("company_id"),
            capabilities=frozenset(entry.get("capabilities") or []),
        )
        for token, entry in raw.items()
    }


def build_default_backend(session_factory: sessionmaker | None = None) -> IncidentCaptureBackend:
    """
    Wire the production backend: configured database, default prompt
    templates, LLM text service and the static token authorizer.
    """
    if session_factory is None:
        engine = get_db_engine()
        Base.metadata.create_all(engine)
        session_factory = create_session_factory(engine)

    registry = PromptTemplateRegistry(session_factory)
    seeded = registry.seed_defaults(ai_model=DEFAULT_LLM_MODEL)
    if seeded:
        logger.info(f"Seeded default prompt templates: {seeded}")

    ai_service = LlmTextService(
        DEFAULT_LLM_MODEL,
        vertex_project=PROJECT_ID,
        vertex_region=REGION,
        timeout=LLM_TIMEOUT,
    )
    return IncidentCaptureBackend(
        session_factory,
        StaticTokenAuthorizer(load_actor_grants()),
        ai_service,
        registry=registry,
    )
