"""Business logic services used by HTTP controllers.

This module holds small service classes that coordinate repositories,
the lexicon store, the matching engine and the dispatcher. Services
validate input, enforce ownership and lifecycle rules, and raise the
domain errors from `errors.py`; they never build HTTP responses.
"""

import logging
import time
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Tuple

import jwt
from passlib.context import CryptContext
from sqlmodel import Session

from . import models, repositories
from .config import settings
from .credentials import CredentialVerifier, get_credentials
from .errors import (
    AuthError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .lexicon import LexiconStore
from .matching import MatchResult, match

PWD_CTX = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

lifecycle_logger = logging.getLogger("chrono.lifecycle")
ingestion_logger = logging.getLogger("chrono.ingestion")


class AuthService:
    """Authentication related operations (register + authenticate)."""
    def __init__(self, session: Session):
        self.session = session
        self.user_repo = repositories.UserRepository(session)

    def register(self, username: str, password: str, email: Optional[str] = None) -> models.User:
        """Create a new user with a hashed password.

        Returns the persisted `User` instance.
        """
        hashed = PWD_CTX.hash(password)
        u = models.User(username=username, password_hash=hashed, email=email)
        return self.user_repo.create(u)

    def authenticate(self, username: str, password: str):
        """Verify credentials and return a signed JWT token on success.

        Returns `None` if authentication fails. The token carries the
        moderator flag so route guards do not need a second lookup.
        """
        user = self.user_repo.get_by_username(username)
        if not user or not user.is_active:
            return None
        if not PWD_CTX.verify(password, user.password_hash):
            return None
        expire = datetime.now(timezone.utc) + timedelta(hours=settings.JWT_EXPIRE_HOURS)
        payload = {
            "user_id": user.id,
            "username": user.username,
            "is_moderator": user.is_moderator,
            "exp": int(expire.timestamp()),
        }
        return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


class LogoutService:
    """Token revocation shared by every worker through the database."""
    def __init__(self, session: Session):
        self.revoked_repo = repositories.RevokedTokenRepository(session)

    def revoke(self, token: str, expires_at: int) -> None:
        self.revoked_repo.revoke(token, expires_at)

    def is_revoked(self, token: str) -> bool:
        return self.revoked_repo.is_revoked(token, int(time.time()))


class LayerService:
    """Catalog management for historical layers."""
    def __init__(self, session: Session):
        self.session = session
        self.layer_repo = repositories.LayerRepository(session)

    def list_active(self) -> List[models.Layer]:
        return self.layer_repo.list_active()

    def get(self, layer_id: int) -> models.Layer:
        layer = self.layer_repo.get_active(layer_id)
        if not layer:
            raise NotFoundError(f"layer {layer_id} not found")
        return layer

    def create(self, values: dict) -> models.Layer:
        """Create an active layer after checking name and year range."""
        self._validate_years(values.get("year_from"), values.get("year_to"))
        if self.layer_repo.get_by_name(values["name"]):
            raise ValidationError(f"layer name already exists: {values['name']}")
        layer = models.Layer(**values, status=models.LAYER_ACTIVE)
        return self.layer_repo.create(layer)

    def update(self, layer_id: int, values: dict) -> models.Layer:
        """Apply a partial update; omitted fields keep their value."""
        layer = self.get(layer_id)
        for key in ("name", "words", "year_from", "year_to"):
            if key in values and values[key] is None:
                raise ValidationError(f"{key} must not be null")
        self._validate_years(values.get("year_from", layer.year_from), values.get("year_to", layer.year_to))
        new_name = values.get("name")
        if new_name and new_name != layer.name:
            other = self.layer_repo.get_by_name(new_name)
            if other and other.id != layer.id:
                raise ValidationError(f"layer name already exists: {new_name}")
        return self.layer_repo.update(layer, values)

    def delete(self, layer_id: int) -> None:
        if self.layer_repo.soft_delete(layer_id) == 0:
            raise NotFoundError(f"layer {layer_id} not found")

    @staticmethod
    def _validate_years(year_from: Optional[int], year_to: Optional[int]):
        if year_from is None or year_to is None:
            raise ValidationError("year_from and year_to are required")
        if year_from > year_to:
            raise ValidationError("year_from must not be greater than year_to")


class RequestLifecycleService:
    """Status transitions and the completion procedure for research requests.

    Every transition is a conditional update keyed on the current status,
    so of two concurrent attempts exactly one wins; the loser sees zero
    affected rows and gets `InvalidStateError`.

    `strategy` decides what completion does besides the status change:
    `local` matches in-process, `async` hands the request to the
    dispatcher, `both` does both.
    """
    def __init__(self, session: Session, dispatcher=None, strategy: Optional[str] = None):
        self.session = session
        self.user_repo = repositories.UserRepository(session)
        self.request_repo = repositories.ResearchRequestRepository(session)
        self.link_repo = repositories.RequestLayerRepository(session)
        self.layer_repo = repositories.LayerRepository(session)
        self.lexicon = LexiconStore(session)
        self.dispatcher = dispatcher
        self.strategy = strategy or settings.COMPLETION_STRATEGY

    # -- transitions -------------------------------------------------------

    def form_request(self, request_id: int, caller_id: int) -> dict:
        """draft -> formed, by the owning user."""
        caller = self._caller(caller_id)
        req = self._owned(request_id, caller)
        self._expect_status(req, models.STATUS_DRAFT, "only draft requests can be formed")
        values = {"status": models.STATUS_FORMED, "formed_at": models.utcnow()}
        self._transition(request_id, models.STATUS_DRAFT, values, user_id=caller.id)
        self.session.commit()
        lifecycle_logger.info("request_formed request_id=%s user_id=%s", request_id, caller.id)
        return {"status": models.STATUS_FORMED}

    def delete_request(self, request_id: int, caller_id: int) -> dict:
        """draft -> deleted (soft delete), by the owning user."""
        caller = self._caller(caller_id)
        req = self._owned(request_id, caller)
        self._expect_status(req, models.STATUS_DRAFT, "only draft requests can be deleted")
        self._transition(request_id, models.STATUS_DRAFT, {"status": models.STATUS_DELETED}, user_id=caller.id)
        self.session.commit()
        lifecycle_logger.info("request_deleted request_id=%s user_id=%s", request_id, caller.id)
        return {"status": models.STATUS_DELETED}

    def complete_request(self, request_id: int, caller_id: int, trace_id: str = "") -> dict:
        """formed -> completed, by a moderator.

        The status claim, the link upserts and the result fields are
        committed together. Dispatch (when enabled) happens after the
        commit and cannot fail this call.
        """
        caller = self._caller(caller_id)
        if not caller.is_moderator:
            raise UnauthorizedError("moderator role required to complete requests")
        req = self.request_repo.get(request_id)
        if req is None or req.status == models.STATUS_DELETED:
            raise NotFoundError(f"research request {request_id} not found")
        self._expect_status(req, models.STATUS_FORMED, "only formed requests can be completed")
        text = req.text_for_analysis
        if not text or not text.strip():
            raise ValidationError("text_for_analysis is required to complete a request")

        values = {
            "status": models.STATUS_COMPLETED,
            "completed_at": models.utcnow(),
            "moderator_id": caller.id,
        }
        self._transition(request_id, models.STATUS_FORMED, values)
        result = None
        if self.strategy in ("local", "both"):
            result = match(text, self.lexicon.active_layers())
            self._store_result(request_id, result)
        self.session.commit()
        lifecycle_logger.info(
            "request_completed request_id=%s moderator_id=%s strategy=%s matched=%s",
            request_id, caller.id, self.strategy, result.matched_count if result else None,
        )
        if self.strategy in ("async", "both") and self.dispatcher is not None:
            self.dispatcher.dispatch(request_id, trace_id=trace_id)
        return {"status": models.STATUS_COMPLETED}

    def _store_result(self, request_id: int, result: MatchResult) -> None:
        for layer_id, count in sorted(result.matched.items()):
            self.link_repo.upsert_match_count(request_id, layer_id, count)
        values = {"matched_layer_count": result.matched_count}
        if result.matched_count > 0:
            values["result_year_from"] = result.year_from
            values["result_year_to"] = result.year_to
        self.request_repo.update_fields(request_id, values)

    # -- drafts ------------------------------------------------------------

    def get_cart(self, caller_id: int) -> dict:
        """Return the caller's draft id (or None) and how many layers it holds."""
        draft = self.request_repo.get_draft_for_user(caller_id)
        if draft is None:
            return {"request_id": None, "count": 0}
        return {"request_id": draft.id, "count": self.link_repo.count_for_request(draft.id)}

    def add_layer_to_draft(self, layer_id: int, caller_id: int) -> dict:
        """Attach an active layer to the caller's draft, creating the draft if needed."""
        caller = self._caller(caller_id)
        if self.layer_repo.get_active(layer_id) is None:
            raise NotFoundError(f"layer {layer_id} not found")
        draft = self.request_repo.get_draft_for_user(caller.id)
        if draft is None:
            draft = self.request_repo.create_draft(caller.id)
        self.link_repo.add(draft.id, layer_id)
        return {"request_id": draft.id, "count": self.link_repo.count_for_request(draft.id)}

    def update_draft(self, request_id: int, caller_id: int, values: dict) -> models.ResearchRequest:
        """Set `text_for_analysis` and/or `purpose` on the caller's draft."""
        caller = self._caller(caller_id)
        req = self._owned(request_id, caller)
        self._expect_status(req, models.STATUS_DRAFT, "only draft requests can be edited")
        if values:
            self._transition(request_id, models.STATUS_DRAFT, values, user_id=caller.id)
            self.session.commit()
        self.session.refresh(req)
        return req

    def remove_layer(self, request_id: int, layer_id: int, caller_id: int) -> None:
        caller = self._caller(caller_id)
        req = self._owned(request_id, caller)
        self._expect_status(req, models.STATUS_DRAFT, "layers can only be removed from drafts")
        if self.link_repo.remove(request_id, layer_id) == 0:
            raise NotFoundError(f"layer {layer_id} is not part of request {request_id}")

    def set_link_comment(self, request_id: int, layer_id: int, caller_id: int, comment: Optional[str]) -> None:
        caller = self._caller(caller_id)
        if self.request_repo.get_visible(request_id, caller.id, caller.is_moderator) is None:
            raise NotFoundError(f"research request {request_id} not found")
        if self.link_repo.set_comment(request_id, layer_id, comment) == 0:
            raise NotFoundError(f"layer {layer_id} is not part of request {request_id}")

    # -- reads -------------------------------------------------------------

    def list_requests(self, caller_id: int, status: Optional[str] = None) -> List[Tuple[models.ResearchRequest, int]]:
        """Return `(request, layer link count)` pairs visible to the caller."""
        caller = self._caller(caller_id)
        if status and status not in (models.STATUS_FORMED, models.STATUS_COMPLETED):
            raise ValidationError("status filter must be 'formed' or 'completed'")
        reqs = self.request_repo.list_for(caller.id, caller.is_moderator, status)
        counts = self.link_repo.counts_for_requests([r.id for r in reqs])
        return [(r, counts.get(r.id, 0)) for r in reqs]

    def get_request(self, request_id: int, caller_id: int) -> Tuple[models.ResearchRequest, List[models.RequestLayer]]:
        caller = self._caller(caller_id)
        req = self.request_repo.get_visible(request_id, caller.id, caller.is_moderator)
        if req is None:
            raise NotFoundError(f"research request {request_id} not found")
        return req, self.link_repo.list_for_request(request_id)

    # -- helpers -----------------------------------------------------------

    def _caller(self, caller_id: int) -> models.User:
        user = self.user_repo.get(caller_id)
        if user is None or not user.is_active:
            raise UnauthorizedError("unknown or inactive user")
        return user

    def _owned(self, request_id: int, caller: models.User) -> models.ResearchRequest:
        req = self.request_repo.get(request_id)
        if req is None or req.status == models.STATUS_DELETED:
            raise NotFoundError(f"research request {request_id} not found")
        if req.user_id != caller.id:
            raise UnauthorizedError("only the owner can change this request")
        return req

    @staticmethod
    def _expect_status(req: models.ResearchRequest, expected: str, message: str) -> None:
        if req.status != expected:
            raise InvalidStateError(f"{message} (current status: {req.status})", current_status=req.status)

    def _transition(self, request_id: int, expected: str, values: dict, user_id: Optional[int] = None) -> None:
        if self.request_repo.transition(request_id, expected, values, user_id=user_id) == 0:
            self.session.rollback()
            lifecycle_logger.warning("transition_lost request_id=%s expected=%s", request_id, expected)
            raise InvalidStateError(f"research request {request_id} is no longer {expected}")


class ResultIngestionService:
    """Apply results computed by the external calculator.

    Only the fields present are written, as absolute values, so applying
    the same result twice leaves the same state. Status is never touched:
    a result may arrive before or after the synchronous completion.
    """
    def __init__(self, session: Session, verifier: Optional[CredentialVerifier] = None):
        self.session = session
        self.request_repo = repositories.ResearchRequestRepository(session)
        self.verifier = verifier or get_credentials()

    def apply_result(
        self,
        request_id: int,
        shared_secret: Optional[str],
        *,
        year_from: Optional[int] = None,
        year_to: Optional[int] = None,
        matched_count: Optional[int] = None,
    ) -> dict:
        if not self.verifier.verify(shared_secret, request_id):
            ingestion_logger.warning("ingestion_auth_failed request_id=%s", request_id)
            raise AuthError("invalid auth token")
        if self.request_repo.get(request_id) is None:
            raise NotFoundError(f"research request {request_id} not found")
        values = {}
        if year_from is not None:
            values["result_year_from"] = year_from
        if year_to is not None:
            values["result_year_to"] = year_to
        if matched_count is not None:
            values["matched_layer_count"] = matched_count
        self.request_repo.update_fields(request_id, values)
        self.session.commit()
        ingestion_logger.info("ingestion_applied request_id=%s fields=%s", request_id, sorted(values))
        return {"status": "updated", "request_id": request_id}
