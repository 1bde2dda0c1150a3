# worker_main.py
"""
DB Queue Worker for the incident capture core

Receiver
--------
Each QueueMessage row has a receiver_id column. This worker process is
identified by QUEUE_RECEIVER_ID and polls ONLY messages where
    QueueMessage.receiver_id == QUEUE_RECEIVER_ID

The client picks the worker by writing receiver_id = <that worker's id>.

Routing
-------
Routing is done by sender_id prefix, read as
    "<app_key><app_key_delim><incident_id>"

  - "incident_capture::inc_123" -> IncidentCaptureApp, incident_id="inc_123"

There is no fallback app: an unknown prefix is answered with an error.

Message payload
---------------
    {"token": "<actor token>", "correlation_id": "...", ...entry point kwargs}

The response is written back to the original sender_id with type
"<type>_response".
"""

import os
import asyncio
import logging
from typing import Any, Dict, List, Tuple

from dotenv import load_dotenv

load_dotenv()

from incident_capture.backend import IncidentCaptureBackend, build_default_backend
from incident_capture.entities import Base, QueueMessage
from incident_capture.google_helpers import create_session_factory, get_db_engine


logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s | %(levelname)s | %(name)s\n%(message)s\n",
)
logger = logging.getLogger("incident_worker")

QUEUE_RECEIVER_ID = os.getenv("QUEUE_RECEIVER_ID")
CONCURRENT_INSTANCES = int(os.getenv("CONCURRENT_INSTANCES", "4"))
POLL_INTERVAL = float(os.getenv("QUEUE_POLL_INTERVAL", "1.0"))


class AppHost:
    def __init__(self, Session, receiver_id: str, apps: List[Any]):
        self.SessionFactory = Session
        self.receiver_id = receiver_id
        self.apps = list(apps or [])

    def sweep(self) -> None:
        for app in self.apps:
            fn = getattr(app, "sweep", None)
            if callable(fn):
                fn()

    def _send_queue_message(
        self,
        to_receiver_id: str,
        msg_type: str,
        payload: Dict[str, Any],
        from_sender_id: str,
    ) -> None:
        session = self.SessionFactory()
        try:
            session.add(
                QueueMessage(
                    sender_id=str(from_sender_id),
                    receiver_id=str(to_receiver_id),
                    type=msg_type,
                    payload=payload,
                )
            )
            session.commit()
        finally:
            session.close()

    def _resolve_app(self, sender_full: str) -> Tuple[Any, str, str]:
        """
        Must match a registered app prefix.
        Returns: (app, matched_prefix, incident_id)
        """
        candidates: List[Tuple[int, str, Any]] = []

        for app in self.apps:
            key = getattr(app, "key", "")
            delim = getattr(app, "key_delim", "")
            prefix = f"{key}{delim}"
            if not prefix:
                continue
            if sender_full.startswith(prefix):
                candidates.append((len(prefix), prefix, app))

        if not candidates:
            known = [f"{getattr(a,'key','')}{getattr(a,'key_delim','')}" for a in self.apps]
            raise RuntimeError(f"No app matched sender_id='{sender_full}'. Known prefixes: {known}")

        candidates.sort(key=lambda x: x[0], reverse=True)
        _, prefix, app = candidates[0]
        return app, prefix, sender_full[len(prefix):]

    def process_queue_job(self, job: Dict[str, Any]) -> None:
        sender_full = str(job.get("sender_id") or "")
        msg_type = job.get("type") or "unknown"
        incident_id = ""

        try:
            app, _, incident_id = self._resolve_app(sender_full)
            response_payload = app.handle(job, incident_id)
        except Exception as e:
            logger.exception(f"Error processing job id={job.get('id')} type={msg_type}: {e}")
            response_payload = {
                "status": "error",
                "error_code": "internal_error",
                "message": str(e),
                "incident_id": incident_id,
                "correlation_id": (job.get("payload") or {}).get("correlation_id") or job.get("id"),
            }

        self._send_queue_message(
            to_receiver_id=sender_full,
            msg_type=f"{msg_type}_response",
            payload=response_payload,
            from_sender_id=str(job.get("receiver_id")),
        )


class IncidentCaptureApp:
    """
    Routes any request type supported by IncidentCaptureBackend.process_request.
    sender_id must start with "incident_capture::".
    """
    key = "incident_capture"
    key_delim = "::"

    def __init__(self, backend: IncidentCaptureBackend) -> None:
        self.backend = backend

    def sweep(self) -> None:
        removed = self.backend.ledger.locks.sweep_idle()
        if removed:
            logger.debug(f"PhaseLockRegistry sweep: removed {removed} idle locks")

    def build_request(self, job: Dict[str, Any], incident_id: str) -> Dict[str, Any]:
        payload = dict(job.get("payload") or {})
        token = payload.pop("token", "")
        correlation_id = payload.pop("correlation_id", None) or f"corr_{job.get('id')}"
        payload.setdefault("incident_id", incident_id or None)
        return {
            "type": job.get("type"),
            "token": token,
            "correlation_id": correlation_id,
            "payload": payload,
        }

    def handle(self, job: Dict[str, Any], incident_id: str) -> Dict[str, Any]:
        # runs on an executor thread; each job gets its own event loop
        return asyncio.run(self.backend.process_request(self.build_request(job, incident_id)))


class Executor:
    def __init__(self, host: AppHost):
        self.host = host

    def execute(self, job: Dict[str, Any]) -> None:
        self.host.process_queue_job(job)


class AsyncGuard:
    def __init__(
        self,
        host: AppHost,
        receiver_id: str,
        poll_interval: float = 1.0,
        max_concurrent: int = 4,
    ):
        self.host = host
        self.receiver_id = receiver_id
        self.poll_interval = poll_interval
        self.max_concurrent = max_concurrent
        self._in_flight = set()
        self.SessionFactory = host.SessionFactory

    async def _run_executor_for_message(self, job: Dict[str, Any]) -> None:
        executor = Executor(self.host)
        try:
            await asyncio.to_thread(executor.execute, job)
        finally:
            self._in_flight.discard(job["id"])

    def claim_jobs(self, limit: int) -> List[Dict[str, Any]]:
        session = self.SessionFactory()
        try:
            rows = (
                session.query(QueueMessage)
                .filter(QueueMessage.receiver_id == str(self.receiver_id))
                .order_by(QueueMessage.created_at.asc())
                .with_for_update(skip_locked=True)
                .limit(limit)
                .all()
            )

            jobs = [
                {
                    "id": r.id,
                    "sender_id": r.sender_id,
                    "receiver_id": r.receiver_id,
                    "type": r.type,
                    "payload": r.payload,
                }
                for r in rows
            ]

            for r in rows:
                session.delete(r)

            session.commit()
            return jobs
        finally:
            session.close()

    async def run(self) -> None:
        logger.info(f"AsyncGuard running - receiver_id={self.receiver_id} (max_concurrent={self.max_concurrent})")

        while True:
            self.host.sweep()

            available_slots = self.max_concurrent - len(self._in_flight)
            if available_slots <= 0:
                await asyncio.sleep(self.poll_interval)
                continue

            jobs = await asyncio.to_thread(self.claim_jobs, available_slots)
            if not jobs:
                await asyncio.sleep(self.poll_interval)
                continue

            for job in jobs:
                if job["id"] in self._in_flight:
                    continue
                self._in_flight.add(job["id"])
                asyncio.create_task(self._run_executor_for_message(job))

            await asyncio.sleep(self.poll_interval)


def main() -> None:
    if not QUEUE_RECEIVER_ID:
        raise RuntimeError("QUEUE_RECEIVER_ID env var is required for DB queue mode")

    engine = get_db_engine()
    Base.metadata.create_all(engine)
    session_factory = create_session_factory(engine)

    backend = build_default_backend(session_factory)
    host = AppHost(session_factory, receiver_id=QUEUE_RECEIVER_ID, apps=[IncidentCaptureApp(backend)])
    guard = AsyncGuard(
        host=host,
        receiver_id=QUEUE_RECEIVER_ID,
        poll_interval=POLL_INTERVAL,
        max_concurrent=CONCURRENT_INSTANCES,
    )
    asyncio.run(guard.run())


if __name__ == "__main__":
    main()
