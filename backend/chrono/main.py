"""FastAPI application entrypoint and HTTP controllers.

This module defines the HTTP endpoints of the chrono research-request
backend. Controllers are intentionally thin: they accept requests,
delegate to services, and return JSON responses. Domain errors raised by
services are translated to status codes by a single exception handler.

Endpoints implemented:
- POST /api/users/register, /api/users/login, /api/users/logout
- GET /api/users/me
- GET/POST /api/layers, GET/PUT/DELETE /api/layers/{id}
- POST /api/layers/{id}/add-to-request
- GET /api/chrono/cart, GET /api/chrono
- GET/PUT/DELETE /api/chrono/{id}
- PUT /api/chrono/{id}/form, PUT /api/chrono/{id}/complete
- PUT/DELETE /api/request-layers/{request_id}/{layer_id}
- POST /api/chrono/async-result
"""

from fastapi import FastAPI, Depends, HTTPException, Request, Security
from fastapi.responses import JSONResponse, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.security import HTTPAuthorizationCredentials
from sqlmodel import Session
from typing import Optional
import json
import logging
import time
import uuid
from .database import create_db_and_tables, get_session
from . import dispatch, models, repositories, services
from .auth import bearer_scheme, get_current_user, require_moderator, revoke_token
from .config import settings
from .errors import (
    AuthError,
    ChronoError,
    DependencyError,
    InvalidStateError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .schemas import AsyncResultIn, LayerCommentIn, LayerIn, LayerUpdate, RegisterIn, RequestUpdate

app = FastAPI(title="Chrono Research Requests API")
logger = logging.getLogger("chrono.api")
if not logger.handlers:
    logging.basicConfig(level=settings.LOG_LEVEL)

ERROR_STATUS = {
    NotFoundError: 404,
    InvalidStateError: 400,
    ValidationError: 400,
    UnauthorizedError: 403,
    AuthError: 403,
    DependencyError: 502,
}

# Wide-open CORS keeps local HTML testers working without extra config in dev.
if settings.ALLOW_DEV_CORS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

create_db_and_tables()


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    req_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)
    request.state.request_id = req_id
    started = time.perf_counter()
    response: Response
    try:
        response = await call_next(request)
    except Exception:
        elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
        logger.exception(
            "request_failed %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "duration_ms": elapsed_ms,
                },
                ensure_ascii=True,
            ),
        )
        raise
    response.headers["X-Request-ID"] = req_id
    elapsed_ms = round((time.perf_counter() - started) * 1000.0, 2)
    if request.url.path.startswith("/api/chrono"):
        logger.info(
            "request_done %s",
            json.dumps(
                {
                    "request_id": req_id,
                    "path": request.url.path,
                    "method": request.method,
                    "status_code": response.status_code,
                    "duration_ms": elapsed_ms,
                    "client": request.client.host if request.client else "unknown",
                },
                ensure_ascii=True,
            ),
        )
    return response


@app.exception_handler(ChronoError)
async def chrono_error_handler(request: Request, exc: ChronoError):
    status_code = ERROR_STATUS.get(type(exc), 500)
    return JSONResponse(status_code=status_code, content={"detail": exc.message})


def _layer_out(layer: models.Layer) -> dict:
    return {
        'id': layer.id,
        'name': layer.name,
        'description': layer.description,
        'image_url': layer.image_url,
        'year_from': layer.year_from,
        'year_to': layer.year_to,
        'status': layer.status,
        'words': layer.words,
    }


def _request_out(req: models.ResearchRequest) -> dict:
    return {
        'id': req.id,
        'user_id': req.user_id,
        'moderator_id': req.moderator_id,
        'status': req.status,
        'created_at': req.created_at.isoformat() if req.created_at else None,
        'formed_at': req.formed_at.isoformat() if req.formed_at else None,
        'completed_at': req.completed_at.isoformat() if req.completed_at else None,
        'text_for_analysis': req.text_for_analysis,
        'purpose': req.purpose,
        'result_from_year': req.result_year_from,
        'result_to_year': req.result_year_to,
        'matched_layers': req.matched_layer_count,
    }


def _lifecycle(db: Session) -> services.RequestLifecycleService:
    return services.RequestLifecycleService(db, dispatcher=dispatch.get_dispatcher())


# -- users -----------------------------------------------------------------

@app.post('/api/users/register')
def register(payload: RegisterIn, db: Session = Depends(get_session)):
    """Register a new user (idempotent).

    Returns existing user if the username already exists to make the
    operation idempotent (useful for automation/tests).
    """
    existing = repositories.UserRepository(db).get_by_username(payload.username)
    if existing:
        return {'id': existing.id, 'username': existing.username}
    user = services.AuthService(db).register(payload.username, payload.password, payload.email)
    return {'id': user.id, 'username': user.username}


@app.post('/api/users/login')
def login(payload: RegisterIn, db: Session = Depends(get_session)):
    """Authenticate a user and return a short-lived JWT token.

    The returned token contains `user_id`, `username` and `is_moderator`
    and is signed using the configured JWT secret.
    """
    token = services.AuthService(db).authenticate(payload.username, payload.password)
    if not token:
        raise HTTPException(status_code=401, detail='invalid credentials')
    return {'access_token': token}


@app.post('/api/users/logout')
def logout(credentials: HTTPAuthorizationCredentials = Security(bearer_scheme)):
    """Revoke the presented bearer token."""
    revoke_token(credentials.credentials)
    return {'status': 'logged out'}


@app.get('/api/users/me')
def me(user: models.User = Depends(get_current_user)):
    return {'id': user.id, 'username': user.username, 'email': user.email, 'is_moderator': user.is_moderator}


# -- layers ----------------------------------------------------------------

@app.get('/api/layers')
def list_layers(db: Session = Depends(get_session)):
    """List all active layers."""
    return [_layer_out(layer) for layer in services.LayerService(db).list_active()]


@app.get('/api/layers/{layer_id}')
def get_layer(layer_id: int, db: Session = Depends(get_session)):
    return _layer_out(services.LayerService(db).get(layer_id))


@app.post('/api/layers', status_code=201)
def create_layer(payload: LayerIn, db: Session = Depends(get_session), user: models.User = Depends(require_moderator)):
    """Create a layer (moderators only)."""
    layer = services.LayerService(db).create(payload.model_dump())
    return _layer_out(layer)


@app.put('/api/layers/{layer_id}')
def update_layer(layer_id: int, payload: LayerUpdate, db: Session = Depends(get_session), user: models.User = Depends(require_moderator)):
    """Partially update a layer (moderators only)."""
    layer = services.LayerService(db).update(layer_id, payload.model_dump(exclude_unset=True))
    return _layer_out(layer)


@app.delete('/api/layers/{layer_id}')
def delete_layer(layer_id: int, db: Session = Depends(get_session), user: models.User = Depends(require_moderator)):
    """Soft delete a layer; it stops taking part in matching."""
    services.LayerService(db).delete(layer_id)
    return {'status': 'deleted'}


@app.post('/api/layers/{layer_id}/add-to-request')
def add_layer_to_request(layer_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Add a layer to the caller's draft, creating the draft when needed."""
    return _lifecycle(db).add_layer_to_draft(layer_id, user.id)


# -- research requests -----------------------------------------------------

@app.get('/api/chrono/cart')
def cart(db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _lifecycle(db).get_cart(user.id)


@app.get('/api/chrono')
def list_requests(status: Optional[str] = None, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """List formed and completed requests.

    Moderators see every request, other users only their own.
    """
    out = []
    for req, count in _lifecycle(db).list_requests(user.id, status):
        item = _request_out(req)
        item['layer_count'] = count
        out.append(item)
    return out


@app.post('/api/chrono/async-result')
def async_result(payload: AsyncResultIn, db: Session = Depends(get_session)):
    """Accept a result computed by the external calculator.

    Authorized by the shared secret in `auth_token`; only the result
    fields present in the body are written.
    """
    svc = services.ResultIngestionService(db)
    return svc.apply_result(
        payload.research_request_id,
        payload.auth_token,
        year_from=payload.result_from_year,
        year_to=payload.result_to_year,
        matched_count=payload.matched_layers,
    )


@app.get('/api/chrono/{request_id}')
def get_request(request_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Return a request with its layer links."""
    req, links = _lifecycle(db).get_request(request_id, user.id)
    out = _request_out(req)
    out['layers'] = [
        {'layer_id': link.layer_id, 'match_count': link.match_count, 'comment': link.comment}
        for link in links
    ]
    return out


@app.put('/api/chrono/{request_id}')
def update_request(request_id: int, payload: RequestUpdate, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Edit the text and purpose of the caller's draft."""
    req = _lifecycle(db).update_draft(request_id, user.id, payload.model_dump(exclude_none=True))
    return _request_out(req)


@app.delete('/api/chrono/{request_id}')
def delete_request(request_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    return _lifecycle(db).delete_request(request_id, user.id)


@app.put('/api/chrono/{request_id}/form')
def form_request(request_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    """Submit a draft for moderation (draft -> formed)."""
    return _lifecycle(db).form_request(request_id, user.id)


@app.put('/api/chrono/{request_id}/complete')
def complete_request(request: Request, request_id: int, db: Session = Depends(get_session), user: models.User = Depends(require_moderator)):
    """Complete a formed request (formed -> completed), moderators only.

    Depending on `COMPLETION_STRATEGY` the match is computed here, handed
    to the external calculator, or both. The response never waits for
    the calculator.
    """
    trace_id = getattr(request.state, "request_id", "")
    return _lifecycle(db).complete_request(request_id, user.id, trace_id=trace_id)


# -- request/layer links ---------------------------------------------------

@app.delete('/api/request-layers/{request_id}/{layer_id}')
def remove_request_layer(request_id: int, layer_id: int, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    _lifecycle(db).remove_layer(request_id, layer_id, user.id)
    return {'status': 'removed'}


@app.put('/api/request-layers/{request_id}/{layer_id}')
def update_request_layer(request_id: int, layer_id: int, payload: LayerCommentIn, db: Session = Depends(get_session), user: models.User = Depends(get_current_user)):
    _lifecycle(db).set_link_comment(request_id, layer_id, user.id, payload.comment)
    return {'status': 'updated'}


@app.get("/health")
def health():
    """Lightweight health check for uptime monitoring."""
    return {"status": "ok", "completion_strategy": settings.COMPLETION_STRATEGY}
