"""
Shared fixtures: in-memory SQLite database, scripted AI service, recorded
backoff sleeps and a static token table.
"""
import json
import re
import threading
from typing import Callable, List, Optional

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from incident_capture.auth import (
    ACCESS_LLM_FEATURES,
    EDIT_OWN_INCIDENT_CAPTURE,
    VIEW_ALL_COMPANY_INCIDENTS,
    Actor,
    StaticTokenAuthorizer,
)
from incident_capture.backend import IncidentCaptureBackend
from incident_capture.backoff import BackoffExecutor
from incident_capture.entities import Base
from incident_capture.google_helpers import create_session_factory
from incident_capture.incidents import create_incident
from incident_capture.prompt_registry import PromptTemplateRegistry
from incident_capture.llm_client import Completion

REPORTER_TOKEN = "tok-reporter"
VIEWER_TOKEN = "tok-viewer"
OUTSIDER_TOKEN = "tok-outsider"
COMPANY_ID = "company-1"

ALL_CAPABILITIES = frozenset({EDIT_OWN_INCIDENT_CAPTURE, VIEW_ALL_COMPANY_INCIDENTS, ACCESS_LLM_FEATURES})

_PHASE_IN_PROMPT = re.compile(r"Current Phase: (\w+)")


class FakeAIService:
    """
    Scripted stand-in for the LLM text service.

    `script(prompt)` returns the response text or raises; the default
    answers every question prompt with three phase-specific questions.
    """

    def __init__(self, script: Optional[Callable[[str], str]] = None, model: str = "fake-model"):
        self.script = script or self.default_script
        self.model = model
        self.calls: List[str] = []
        self._lock = threading.Lock()

    @staticmethod
    def phase_of(prompt: str) -> Optional[str]:
        m = _PHASE_IN_PROMPT.search(prompt)
        return m.group(1) if m else None

    def default_script(self, prompt: str) -> str:
        phase = self.phase_of(prompt) or "narrative"
        return json.dumps([
            {"question_text": f"What happened first during {phase}?"},
            {"question_text": f"Who else was present during {phase}?"},
            {"question_text": f"What was said during {phase}?"},
        ])

    def calls_for(self, phase: str) -> List[str]:
        return [p for p in self.calls if self.phase_of(p) == phase]

    def complete(self, rendered_prompt: str, model_hint: str | None = None) -> Completion:
        with self._lock:
            self.calls.append(rendered_prompt)
        text = self.script(rendered_prompt)
        return Completion(text=text, model=model_hint or self.model, tokens_used=42, cost_usd=0.0001)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def registry(session_factory):
    reg = PromptTemplateRegistry(session_factory)
    reg.seed_defaults(ai_model="fake-model")
    return reg


@pytest.fixture
def ai_service():
    return FakeAIService()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def backoff(sleeper):
    return BackoffExecutor(sleep=sleeper)


@pytest.fixture
def authorizer():
    return StaticTokenAuthorizer({
        REPORTER_TOKEN: Actor("user-reporter", COMPANY_ID, ALL_CAPABILITIES),
        VIEWER_TOKEN: Actor("user-viewer", COMPANY_ID, frozenset({VIEW_ALL_COMPANY_INCIDENTS})),
        OUTSIDER_TOKEN: Actor("user-outsider", "company-2", ALL_CAPABILITIES),
    })


@pytest.fixture
def backend(session_factory, authorizer, ai_service, registry, backoff):
    return IncidentCaptureBackend(
        session_factory,
        authorizer,
        ai_service,
        registry=registry,
        backoff=backoff,
    )


@pytest.fixture
def incident_id(session_factory):
    return create_incident(
        session_factory,
        reporter_name="Sam Reporter",
        participant_name="Alex Participant",
        location="Day program, room 2",
        event_date_time="2026-03-14 10:30",
        company_id=COMPANY_ID,
        created_by="user-reporter",
        incident_id="I1",
    )
