"""Repository classes encapsulating database operations.

Each repository is small and focused on a single aggregate (users,
layers, research requests, request/layer links). Simple CRUD methods
commit on their own; the status transitions and link upserts used by the
lifecycle service do not, so a completion can be committed as one unit.
"""

import hashlib
import time
from typing import Dict, List, Optional
from sqlmodel import Session, select
from sqlalchemy import delete, func, update
from sqlalchemy.dialects import postgresql, sqlite
from . import models


class UserRepository:
    """CRUD operations for `User` objects."""
    def __init__(self, session: Session):
        self.session = session

    def create(self, user: models.User) -> models.User:
        """Persist a new user and return the managed instance."""
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user

    def get_by_username(self, username: str) -> Optional[models.User]:
        """Return a `User` by username or `None` if not found."""
        stmt = select(models.User).where(models.User.username == username)
        return self.session.exec(stmt).first()

    def get(self, user_id: int) -> Optional[models.User]:
        """Get a `User` by primary key."""
        return self.session.get(models.User, user_id)

    def set_moderator(self, user: models.User, is_moderator: bool = True) -> models.User:
        user.is_moderator = is_moderator
        self.session.add(user)
        self.session.commit()
        self.session.refresh(user)
        return user


class LayerRepository:
    """Queries and soft-delete aware writes for `Layer` records."""
    def __init__(self, session: Session):
        self.session = session

    def list_active(self) -> List[models.Layer]:
        """Return all active layers ordered by id."""
        stmt = (
            select(models.Layer)
            .where(models.Layer.status == models.LAYER_ACTIVE)
            .order_by(models.Layer.id)
        )
        return self.session.exec(stmt).all()

    def get_active(self, layer_id: int) -> Optional[models.Layer]:
        """Fetch a layer by id unless it has been soft deleted."""
        stmt = select(models.Layer).where(
            models.Layer.id == layer_id,
            models.Layer.status == models.LAYER_ACTIVE,
        )
        return self.session.exec(stmt).first()

    def get_by_name(self, name: str) -> Optional[models.Layer]:
        stmt = select(models.Layer).where(models.Layer.name == name)
        return self.session.exec(stmt).first()

    def create(self, layer: models.Layer) -> models.Layer:
        self.session.add(layer)
        self.session.commit()
        self.session.refresh(layer)
        return layer

    def update(self, layer: models.Layer, values: dict) -> models.Layer:
        """Apply `values` to an existing layer and commit."""
        for key, value in values.items():
            setattr(layer, key, value)
        self.session.add(layer)
        self.session.commit()
        self.session.refresh(layer)
        return layer

    def soft_delete(self, layer_id: int) -> int:
        """Mark an active layer deleted; returns the affected row count."""
        stmt = (
            update(models.Layer)
            .where(models.Layer.id == layer_id, models.Layer.status == models.LAYER_ACTIVE)
            .values(status=models.LAYER_DELETED)
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount


class ResearchRequestRepository:
    """Reads and conditional writes for `ResearchRequest` rows."""
    def __init__(self, session: Session):
        self.session = session

    def get(self, request_id: int) -> Optional[models.ResearchRequest]:
        """Fetch a request by primary key regardless of status."""
        return self.session.get(models.ResearchRequest, request_id)

    def get_visible(self, request_id: int, user_id: int, is_moderator: bool) -> Optional[models.ResearchRequest]:
        """Fetch a non-deleted request; non-moderators only see their own."""
        stmt = select(models.ResearchRequest).where(
            models.ResearchRequest.id == request_id,
            models.ResearchRequest.status != models.STATUS_DELETED,
        )
        if not is_moderator:
            stmt = stmt.where(models.ResearchRequest.user_id == user_id)
        return self.session.exec(stmt).first()

    def get_draft_for_user(self, user_id: int) -> Optional[models.ResearchRequest]:
        stmt = select(models.ResearchRequest).where(
            models.ResearchRequest.user_id == user_id,
            models.ResearchRequest.status == models.STATUS_DRAFT,
        ).order_by(models.ResearchRequest.id)
        return self.session.exec(stmt).first()

    def create_draft(self, user_id: int) -> models.ResearchRequest:
        req = models.ResearchRequest(user_id=user_id, status=models.STATUS_DRAFT)
        self.session.add(req)
        self.session.commit()
        self.session.refresh(req)
        return req

    def list_for(self, user_id: int, is_moderator: bool, status: Optional[str] = None) -> List[models.ResearchRequest]:
        """List formed and completed requests, newest first.

        Non-moderators only get their own requests. `status` narrows the
        result to one of the two listed statuses.
        """
        stmt = select(models.ResearchRequest).where(
            models.ResearchRequest.status.in_([models.STATUS_FORMED, models.STATUS_COMPLETED])
        )
        if not is_moderator:
            stmt = stmt.where(models.ResearchRequest.user_id == user_id)
        if status:
            stmt = stmt.where(models.ResearchRequest.status == status)
        stmt = stmt.order_by(models.ResearchRequest.created_at.desc(), models.ResearchRequest.id.desc())
        return self.session.exec(stmt).all()

    def transition(self, request_id: int, expected_status: str, values: dict, user_id: Optional[int] = None) -> int:
        """Conditionally update a request that is still in `expected_status`.

        Runs `UPDATE ... WHERE id = ? AND status = ?` (plus the owner when
        `user_id` is given) and returns the number of affected rows; 0 means
        the request was not in the expected state when the write ran. The
        caller owns the commit.
        """
        stmt = update(models.ResearchRequest).where(
            models.ResearchRequest.id == request_id,
            models.ResearchRequest.status == expected_status,
        )
        if user_id is not None:
            stmt = stmt.where(models.ResearchRequest.user_id == user_id)
        result = self.session.exec(stmt.values(**values))
        return result.rowcount

    def update_fields(self, request_id: int, values: dict) -> int:
        """Write `values` onto a request without any status guard."""
        if not values:
            return 0
        stmt = update(models.ResearchRequest).where(models.ResearchRequest.id == request_id).values(**values)
        result = self.session.exec(stmt)
        return result.rowcount


class RequestLayerRepository:
    """Request/layer links keyed by the (request_id, layer_id) pair."""
    def __init__(self, session: Session):
        self.session = session

    def _dialect_insert(self):
        name = self.session.get_bind().dialect.name
        if name == "sqlite":
            return sqlite.insert
        if name == "postgresql":
            return postgresql.insert
        return None

    def upsert_match_count(self, request_id: int, layer_id: int, match_count: int) -> None:
        """Insert a link or overwrite its `match_count`, atomically.

        SQLite and PostgreSQL get `INSERT ... ON CONFLICT DO UPDATE`; other
        backends fall back to a read-modify-write inside the caller's
        transaction. The existing comment is kept. No commit.
        """
        insert = self._dialect_insert()
        if insert is not None:
            stmt = insert(models.RequestLayer).values(
                request_id=request_id, layer_id=layer_id, match_count=match_count
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["request_id", "layer_id"],
                set_={"match_count": stmt.excluded.match_count},
            )
            self.session.exec(stmt)
            return
        link = self.session.get(models.RequestLayer, (request_id, layer_id), with_for_update=True)
        if link is None:
            link = models.RequestLayer(request_id=request_id, layer_id=layer_id)
        link.match_count = match_count
        self.session.add(link)
        self.session.flush()

    def add(self, request_id: int, layer_id: int) -> None:
        """Attach a layer to a request with `match_count = 0`; no-op if present."""
        insert = self._dialect_insert()
        if insert is not None:
            stmt = insert(models.RequestLayer).values(
                request_id=request_id, layer_id=layer_id, match_count=0
            ).on_conflict_do_nothing(index_elements=["request_id", "layer_id"])
            self.session.exec(stmt)
        elif self.session.get(models.RequestLayer, (request_id, layer_id)) is None:
            self.session.add(models.RequestLayer(request_id=request_id, layer_id=layer_id))
        self.session.commit()

    def list_for_request(self, request_id: int) -> List[models.RequestLayer]:
        stmt = (
            select(models.RequestLayer)
            .where(models.RequestLayer.request_id == request_id)
            .order_by(models.RequestLayer.layer_id)
        )
        return self.session.exec(stmt).all()

    def count_for_request(self, request_id: int) -> int:
        stmt = select(func.count()).select_from(models.RequestLayer).where(
            models.RequestLayer.request_id == request_id
        )
        return self.session.exec(stmt).one()

    def counts_for_requests(self, request_ids: List[int]) -> Dict[int, int]:
        """Return `{request_id: link count}` for the given requests."""
        if not request_ids:
            return {}
        stmt = (
            select(models.RequestLayer.request_id, func.count())
            .where(models.RequestLayer.request_id.in_(request_ids))
            .group_by(models.RequestLayer.request_id)
        )
        return {rid: count for rid, count in self.session.exec(stmt).all()}

    def remove(self, request_id: int, layer_id: int) -> int:
        stmt = delete(models.RequestLayer).where(
            models.RequestLayer.request_id == request_id,
            models.RequestLayer.layer_id == layer_id,
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount

    def set_comment(self, request_id: int, layer_id: int, comment: Optional[str]) -> int:
        stmt = (
            update(models.RequestLayer)
            .where(
                models.RequestLayer.request_id == request_id,
                models.RequestLayer.layer_id == layer_id,
            )
            .values(comment=comment)
        )
        result = self.session.exec(stmt)
        self.session.commit()
        return result.rowcount


class RevokedTokenRepository:
    """Logged-out tokens, keyed by the digest of the raw token."""
    def __init__(self, session: Session):
        self.session = session

    @staticmethod
    def _digest(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def revoke(self, token: str, expires_at: int) -> None:
        """Record `token` as revoked and drop entries that already expired."""
        self.session.exec(delete(models.RevokedToken).where(models.RevokedToken.expires_at <= int(time.time())))
        self.session.merge(models.RevokedToken(token_hash=self._digest(token), expires_at=expires_at))
        self.session.commit()

    def is_revoked(self, token: str, now: int) -> bool:
        stmt = select(models.RevokedToken).where(
            models.RevokedToken.token_hash == self._digest(token),
            models.RevokedToken.expires_at > now,
        )
        return self.session.exec(stmt).first() is not None
