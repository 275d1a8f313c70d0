"""Fire-and-forget delegation of chronology computation.

`AsyncDelegationClient.dispatch` puts a request id on a bounded queue and
returns at once. A background worker later loads the request, posts its
text to the external calculator (`POST /calculate-chrono`) and records
the outcome on the job. Failures are logged as `DependencyError`s; they
never reach the caller that completed the request and are not retried.
The calculator reports its result back through the ingestion endpoint.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

import httpx
from sqlmodel import Session

from . import repositories
from .config import settings
from .credentials import CredentialProvider, get_credentials
from .database import engine
from .errors import DependencyError, NotFoundError
from .utils.dispatch_queue import DispatchQueue

logger = logging.getLogger("chrono.dispatch")


class ChronoServiceClient:
    """Thin HTTP client for the external calculator."""

    def __init__(self, base_url: str, timeout: float = 20.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    def calculate(self, payload: dict) -> None:
        """POST `payload` to `/calculate-chrono`; anything but HTTP 200 raises."""
        url = f"{self.base_url}/calculate-chrono"
        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                resp = client.post(url, json=payload)
        except httpx.HTTPError as exc:
            raise DependencyError(f"calculator unreachable: {exc}") from exc
        if resp.status_code != 200:
            raise DependencyError(
                f"calculator returned HTTP {resp.status_code}", status_code=resp.status_code
            )


class AsyncDelegationClient:
    """Queue-backed dispatcher for completed requests."""

    def __init__(
        self,
        service: ChronoServiceClient,
        credentials: CredentialProvider,
        session_factory: Callable[[], Session] = lambda: Session(engine),
        max_queue: int = 100,
        max_jobs: int = 500,
    ):
        self.service = service
        self.credentials = credentials
        self.session_factory = session_factory
        self.jobs = DispatchQueue(self._send, max_queue=max_queue, max_jobs=max_jobs)

    def dispatch(self, request_id: int, trace_id: str = "") -> dict:
        """Enqueue `request_id` for delegation and return the job record.

        Never raises: a full queue is reported as a `rejected` job.
        """
        job = self.jobs.submit(request_id, trace_id=trace_id)
        logger.info("dispatch_enqueued request_id=%s job_id=%s status=%s", request_id, job["job_id"], job["status"])
        return job

    def build_payload(self, session: Session, request_id: int) -> Optional[dict]:
        """Return the outbound JSON body, or `None` when there is no text."""
        req = repositories.ResearchRequestRepository(session).get(request_id)
        if req is None:
            raise NotFoundError(f"research request {request_id} not found")
        if not req.text_for_analysis or not req.text_for_analysis.strip():
            return None
        return {
            "research_request_id": req.id,
            "auth_token": self.credentials.token_for(req.id),
            "text_for_analysis": req.text_for_analysis,
            "purpose": req.purpose,
            "user_id": req.user_id,
        }

    def _send(self, request_id: int) -> dict:
        with self.session_factory() as session:
            payload = self.build_payload(session, request_id)
        if payload is None:
            logger.warning("dispatch_skipped request_id=%s reason=empty_text", request_id)
            return {"status": "skipped"}
        try:
            self.service.calculate(payload)
        except DependencyError as exc:
            logger.error("dispatch_dependency_error request_id=%s error=%s", request_id, exc.message)
            raise
        logger.info("dispatch_sent request_id=%s", request_id)
        return {"status": "sent"}


_dispatcher: Optional[AsyncDelegationClient] = None


def get_dispatcher() -> AsyncDelegationClient:
    """Return the process-wide dispatcher configured from settings."""
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = AsyncDelegationClient(
            ChronoServiceClient(settings.CHRONO_SERVICE_URL, timeout=settings.DISPATCH_TIMEOUT_SECONDS),
            get_credentials(),
            max_queue=settings.DISPATCH_QUEUE_SIZE,
            max_jobs=settings.DISPATCH_MAX_JOBS,
        )
    return _dispatcher
