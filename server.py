import asyncio
import os
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from incident_capture.backend import IncidentCaptureBackend, build_default_backend

app = FastAPI(title="Incident Capture")

# CORS configuration
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ALLOW_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS = {
    "auth_denied": 403,
    "not_found": 404,
    "validation_error": 422,
    "answer_validation_error": 422,
    "parse_error": 422,
    "workflow_closed": 409,
    "retry_exhausted": 503,
    "unknown_request_type": 400,
}

_backend: IncidentCaptureBackend | None = None


def get_backend() -> IncidentCaptureBackend:
    global _backend
    if _backend is None:
        _backend = build_default_backend()
    return _backend


def bearer_token(authorization: Optional[str] = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Authentication required")
    return authorization.split(" ", 1)[1].strip()


class IncidentIn(BaseModel):
    reporter_name: str
    participant_name: str
    location: str = ""
    event_date_time: str = ""
    company_id: Optional[str] = None
    incident_id: Optional[str] = None


class PhaseEdits(BaseModel):
    before_event: Optional[str] = None
    during_event: Optional[str] = None
    end_event: Optional[str] = None
    post_event: Optional[str] = None


class QuestionRequest(BaseModel):
    narrative_text: Optional[str] = None


class BatchQuestionRequest(BaseModel):
    phase_texts: Optional[PhaseEdits] = None


class AnswerIn(BaseModel):
    answer_text: str


class EnhancementIn(BaseModel):
    enhanced_text: str


def _run_request(backend: IncidentCaptureBackend, request: Dict[str, Any]) -> Dict[str, Any]:
    return asyncio.run(backend.process_request(request))


async def dispatch(
    backend: IncidentCaptureBackend,
    request_type: str,
    token: str,
    payload: Dict[str, Any],
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    request = {"type": request_type, "token": token, "payload": payload, "correlation_id": correlation_id}
    # blocking DB work runs on its own loop in a worker thread, off the server loop
    response = await asyncio.to_thread(_run_request, backend, request)
    if response.get("status") == "error":
        code = response.get("error_code")
        status_code = ERROR_STATUS.get(code, 500)
        if code == "auth_denied" and response.get("message") == "Authentication required":
            status_code = 401
        raise HTTPException(status_code=status_code, detail=response)
    return response


@app.post("/incidents")
async def create_incident(body: IncidentIn, token: str = Depends(bearer_token), backend=Depends(get_backend)):
    return await dispatch(backend, "create_incident", token, body.model_dump())


@app.post("/incidents/{incident_id}/narrative")
async def create_narrative(incident_id: str, token: str = Depends(bearer_token), backend=Depends(get_backend)):
    return await dispatch(backend, "create_narrative", token, {"incident_id": incident_id})


@app.patch("/incidents/{incident_id}/narrative")
async def update_narrative_phases(
    incident_id: str, body: PhaseEdits, token: str = Depends(bearer_token), backend=Depends(get_backend)
):
    edits = body.model_dump(exclude_none=True)
    return await dispatch(backend, "update_narrative_phases", token, {"incident_id": incident_id, "phase_edits": edits})


@app.get("/incidents/{incident_id}/narrative/consolidated")
async def get_consolidated_narrative(
    incident_id: str,
    include_enhanced: bool = True,
    token: str = Depends(bearer_token),
    backend=Depends(get_backend),
):
    return await dispatch(
        backend,
        "get_consolidated_narrative",
        token,
        {"incident_id": incident_id, "include_enhanced": include_enhanced},
    )


@app.post("/incidents/{incident_id}/clarifications/{phase}/questions")
async def generate_clarification_questions(
    incident_id: str,
    phase: str,
    body: QuestionRequest | None = None,
    token: str = Depends(bearer_token),
    backend=Depends(get_backend),
):
    payload = {"incident_id": incident_id, "phase": phase}
    if body is not None and body.narrative_text is not None:
        payload["narrative_text"] = body.narrative_text
    return await dispatch(backend, "generate_clarification_questions", token, payload)


@app.post("/incidents/{incident_id}/clarifications/questions")
async def generate_all_clarification_questions(
    incident_id: str,
    body: BatchQuestionRequest | None = None,
    token: str = Depends(bearer_token),
    backend=Depends(get_backend),
):
    payload: Dict[str, Any] = {"incident_id": incident_id}
    if body is not None and body.phase_texts is not None:
        payload["phase_texts"] = body.phase_texts.model_dump()
    return await dispatch(backend, "generate_all_clarification_questions", token, payload)


@app.get("/incidents/{incident_id}/clarifications/questions")
async def get_clarification_questions(
    incident_id: str,
    phase: Optional[str] = None,
    include_retired: bool = False,
    token: str = Depends(bearer_token),
    backend=Depends(get_backend),
):
    return await dispatch(
        backend,
        "get_clarification_questions",
        token,
        {"incident_id": incident_id, "phase": phase, "include_retired": include_retired},
    )


@app.put("/incidents/{incident_id}/clarifications/{phase}/answers/{question_id}")
async def submit_clarification_answer(
    incident_id: str,
    phase: str,
    question_id: str,
    body: AnswerIn,
    token: str = Depends(bearer_token),
    backend=Depends(get_backend),
):
    return await dispatch(
        backend,
        "submit_clarification_answer",
        token,
        {"incident_id": incident_id, "phase": phase, "question_id": question_id, "answer_text": body.answer_text},
    )


@app.get("/incidents/{incident_id}/clarifications/answers")
async def get_clarification_answers(
    incident_id: str,
    phase: Optional[str] = None,
    token: str = Depends(bearer_token),
    backend=Depends(get_backend),
):
    return await dispatch(backend, "get_clarification_answers", token, {"incident_id": incident_id, "phase": phase})


@app.put("/incidents/{incident_id}/narrative/{phase}/enhanced")
async def enhance_narrative(
    incident_id: str,
    phase: str,
    body: EnhancementIn,
    token: str = Depends(bearer_token),
    backend=Depends(get_backend),
):
    return await dispatch(
        backend,
        "enhance_narrative",
        token,
        {"incident_id": incident_id, "phase": phase, "enhanced_text": body.enhanced_text},
    )


@app.post("/incidents/{incident_id}/narrative/{phase}/enhance")
async def generate_enhancement(
    incident_id: str, phase: str, token: str = Depends(bearer_token), backend=Depends(get_backend)
):
    return await dispatch(backend, "generate_enhancement", token, {"incident_id": incident_id, "phase": phase})


@app.post("/incidents/{incident_id}/finalize")
async def finalize_capture(incident_id: str, token: str = Depends(bearer_token), backend=Depends(get_backend)):
    return await dispatch(backend, "finalize_capture", token, {"incident_id": incident_id})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
