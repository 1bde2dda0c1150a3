# incident_capture/llm_client.py
import logging
import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from langchain_core.messages import HumanMessage, SystemMessage
from langchain_google_vertexai import ChatVertexAI
from openai import OpenAI

from incident_capture.model_props import estimate_cost_usd, is_openai_model, parse_model_name

logger = logging.getLogger("incident_capture")

SYSTEM_INSTRUCTION = (
    "You support incident reporting for a care provider. "
    "Follow the output format requested in the prompt exactly."
)


@dataclass(frozen=True)
class Completion:
    text: str
    model: str
    tokens_used: Optional[int] = None
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    cost_usd: Optional[float] = None


class AITextService(Protocol):
    def complete(self, rendered_prompt: str, model_hint: str | None = None) -> Completion: ...


class LlmClient:
    """
    Single-model completion client:

        completion = llm.complete("some prompt")

    Under the hood:
    - Vertex: ChatVertexAI.invoke([SystemMessage, HumanMessage])
    - OpenAI: Responses API (client.responses.create)

    No retries here; callers wrap complete() in a BackoffExecutor.
    """

    def __init__(
        self,
        model_name: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        self.provider = "openai" if is_openai_model(model_name) else "vertex"
        self.model_name = model_name
        self._timeout = timeout
        self._openai_params: Dict[str, Any] = {}

        if self.provider == "vertex":
            vertex_kwargs: Dict[str, Any] = {
                "project": vertex_project,
                "location": vertex_region,
                "model_name": model_name,
                "timeout": timeout,
            }
            if max_tokens is not None:
                vertex_kwargs["max_output_tokens"] = max_tokens
            if temperature is not None:
                vertex_kwargs["temperature"] = temperature
            self._vertex = ChatVertexAI(**vertex_kwargs)
            self._client = None
        else:
            self._vertex = None
            self.model_name, self._openai_params = parse_model_name(self.model_name)
            if max_tokens is not None:
                self._openai_params["max_output_tokens"] = max_tokens
            client_kwargs: Dict[str, Any] = {"max_retries": 0}
            if timeout is not None:
                client_kwargs["timeout"] = timeout
            self._client = OpenAI(**client_kwargs)

    def _vertex_usage(self, resp: Any) -> Dict[str, int]:
        usage_md = getattr(resp, "usage_metadata", None)
        if usage_md is None:
            rm = getattr(resp, "response_metadata", None)
            if isinstance(rm, dict):
                usage_md = rm.get("usage_metadata")
        if not usage_md:
            return {}

        def get(*keys: str) -> int:
            for k in keys:
                v = usage_md.get(k) if isinstance(usage_md, dict) else getattr(usage_md, k, None)
                if v:
                    return int(v)
            return 0

        return {
            "prompt_tokens": get("input_tokens", "prompt_token_count"),
            "completion_tokens": get("output_tokens", "candidates_token_count"),
            "total_tokens": get("total_tokens", "total_token_count"),
        }

    def _openai_usage(self, resp: Any) -> Dict[str, int]:
        usage = getattr(resp, "usage", None)
        if usage is None:
            return {}
        return {
            "prompt_tokens": getattr(usage, "input_tokens", 0) or 0,
            "completion_tokens": getattr(usage, "output_tokens", 0) or 0,
            "total_tokens": getattr(usage, "total_tokens", 0) or 0,
        }

    def complete(self, prompt: str) -> Completion:
        """
        Single HTTP call without retries/backoff.
        """
        if self.provider == "vertex":
            resp = self._vertex.invoke([SystemMessage(content=SYSTEM_INSTRUCTION), HumanMessage(content=prompt)])
            usage = self._vertex_usage(resp)
            text = resp if isinstance(resp, str) else getattr(resp, "content", str(resp))
        else:
            resp = self._client.responses.create(
                model=self.model_name,
                instructions=SYSTEM_INSTRUCTION,
                input=prompt,
                **self._openai_params,
            )
            usage = self._openai_usage(resp)
            text = getattr(resp, "output_text", "") or ""

        cost = None
        if usage:
            cost = estimate_cost_usd(
                llm_model_name=self.model_name,
                prompt_tokens=int(usage.get("prompt_tokens", 0)),
                completion_tokens=int(usage.get("completion_tokens", 0)),
                service_tier=self._openai_params.get("service_tier"),
            )

        return Completion(
            text=str(text).strip(),
            model=self.model_name,
            tokens_used=usage.get("total_tokens") if usage else None,
            prompt_tokens=usage.get("prompt_tokens") if usage else None,
            completion_tokens=usage.get("completion_tokens") if usage else None,
            cost_usd=cost,
        )


class LlmTextService:
    """
    AITextService backed by per-model LlmClient instances, built lazily and
    reused across requests.
    """

    def __init__(
        self,
        default_model: str,
        *,
        vertex_project: str,
        vertex_region: str,
        timeout: float | None = None,
    ):
        self.default_model = default_model
        self._vertex_project = vertex_project
        self._vertex_region = vertex_region
        self._timeout = timeout
        self._lock = threading.Lock()
        self._clients: Dict[str, LlmClient] = {}

    def _client_for(self, model_name: str) -> LlmClient:
        with self._lock:
            client = self._clients.get(model_name)
            if client is None:
                client = LlmClient(
                    model_name,
                    vertex_project=self._vertex_project,
                    vertex_region=self._vertex_region,
                    timeout=self._timeout,
                )
                self._clients[model_name] = client
            return client

    def complete(self, rendered_prompt: str, model_hint: str | None = None) -> Completion:
        model_name = (model_hint or "").strip() or self.default_model
        return self._client_for(model_name).complete(rendered_prompt)
