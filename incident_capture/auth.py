# incident_capture/auth.py
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Mapping, Protocol

from incident_capture.errors import AuthError

EDIT_OWN_INCIDENT_CAPTURE = "edit_own_incident_capture"
VIEW_ALL_COMPANY_INCIDENTS = "view_all_company_incidents"
ACCESS_LLM_FEATURES = "access_llm_features"


@dataclass(frozen=True)
class Actor:
    actor_id: str
    company_id: str | None = None
    capabilities: FrozenSet[str] = field(default_factory=frozenset)


class Authorizer(Protocol):
    def authorize(self, actor_token: str, capability: str, resource_context: Dict[str, Any]) -> Actor: ...


class StaticTokenAuthorizer:
    """
    Token -> Actor table. Stands in for the platform's session/permission
    service in the worker, the dev server and the tests.
    """

    def __init__(self, grants: Mapping[str, Actor]):
        self._grants = dict(grants)

    def authorize(self, actor_token: str, capability: str, resource_context: Dict[str, Any]) -> Actor:
        actor = self._grants.get(actor_token or "")
        if actor is None:
            raise AuthError("Authentication required")
        if capability not in actor.capabilities:
            raise AuthError(f"Capability '{capability}' denied for actor {actor.actor_id}")

        company_id = (resource_context or {}).get("company_id")
        if company_id and actor.company_id and company_id != actor.company_id:
            raise AuthError("Access denied: incident belongs to different company")
        return actor
