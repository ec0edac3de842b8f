"""Shared request dependencies for the API routers.

Every authenticated route resolves one AuthContext through a FastAPI
dependency and passes it down explicitly; nothing about the caller is kept
in module state.

Pattern:
- Read the body once (JSON or form) and cache it on request.state
- Authenticate from body fields, falling back to query parameters
- Agents pass the quota gate; its X-AI-RateLimit-* headers are stored on
  request.state so both success responses and error responses carry them
- A newly crossed usage threshold schedules one operator alert as a
  background task
"""

import enum
import json
from dataclasses import dataclass, field
from typing import Any, TypeVar

import structlog
from fastapi import BackgroundTasks, Depends, Request
from fastapi.responses import Response
from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from app.clients.settlement import SettlementClient
from app.clients.settlement import get_settlement_client as _settlement_client
from app.constants import ADMIN_TOKEN_HEADER
from app.database import get_session
from app.exceptions import ConfigurationError, RequestValidationFailed
from app.schemas.task import CREDENTIAL_FIELDS
from app.services.credential_service import CredentialService
from app.services.idempotency import StoredResponse, render_json
from app.services.quota_manager import consume_quota, notify_quota_warning

log = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

_credentials = CredentialService()

FORM_CONTENT_TYPES = ("application/x-www-form-urlencoded", "multipart/form-data")


class Role(enum.Enum):
    AGENT = "agent"
    WORKER = "worker"
    ADMIN = "admin"


@dataclass(frozen=True)
class AuthContext:
    """Authenticated caller for one request.

    Attributes:
        role: Agent (tenant), worker or operator.
        actor_id: ai_account_id for agents, human_id for workers, "admin".
        rate_limit_headers: Quota headers for agent requests.
        warning_threshold: Highest monthly usage threshold crossed, if any.
    """

    role: Role
    actor_id: str
    rate_limit_headers: dict[str, str] = field(default_factory=dict)
    warning_threshold: int | None = None

    @property
    def is_agent(self) -> bool:
        return self.role is Role.AGENT


async def read_payload(request: Request) -> dict[str, Any]:
    """Parse the request body as JSON or form data (cached per request).

    Raises:
        RequestValidationFailed: Malformed JSON or a non-object body.
    """
    cached = getattr(request.state, "payload", None)
    if cached is not None:
        return cached

    payload: dict[str, Any] = {}
    if request.method not in ("GET", "HEAD", "DELETE"):
        content_type = request.headers.get("content-type", "").lower()
        if content_type.startswith(FORM_CONTENT_TYPES):
            form = await request.form()
            payload = {key: value for key, value in form.items() if isinstance(value, str)}
        else:
            body = await request.body()
            if body.strip():
                try:
                    parsed = json.loads(body)
                except ValueError as e:
                    raise RequestValidationFailed(
                        detail={"message": "request body is not valid JSON"}
                    ) from e
                if not isinstance(parsed, dict):
                    raise RequestValidationFailed(
                        detail={"message": "request body must be a JSON object"}
                    )
                payload = parsed

    request.state.payload = payload
    return payload


def parse_body(model: type[ModelT], payload: dict[str, Any]) -> ModelT:
    """Validate ``payload`` into a request model.

    Raises:
        RequestValidationFailed: With the pydantic error list under ``errors``.
    """
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        raise RequestValidationFailed(
            detail={"errors": e.errors(include_url=False, include_context=False)}
        ) from e


def business_payload(payload: dict[str, Any]) -> dict[str, Any]:
    """Request body without credential fields (used for idempotency hashing)."""
    return {key: value for key, value in payload.items() if key not in CREDENTIAL_FIELDS}


def _credential(request: Request, payload: dict[str, Any], name: str) -> str | None:
    value = payload.get(name)
    if value is None:
        value = request.query_params.get(name)
    if value is None:
        return None
    return str(value).strip() or None


async def require_agent(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> AuthContext:
    """Authenticate an agent and consume one request from its quota."""
    account = await _credentials.authenticate_agent(
        _credential(request, payload, "ai_account_id"),
        _credential(request, payload, "ai_api_key"),
        session,
    )
    decision = await consume_quota(session, account)
    request.state.rate_limit_headers = decision.headers

    if decision.new_warning_threshold is not None:
        background_tasks.add_task(
            notify_quota_warning, account.id, decision.new_warning_threshold
        )

    return AuthContext(
        role=Role.AGENT,
        actor_id=account.id,
        rate_limit_headers=decision.headers,
        warning_threshold=decision.warning_threshold,
    )


async def require_worker(
    request: Request,
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> AuthContext:
    human = await _credentials.authenticate_worker(
        _credential(request, payload, "human_id"),
        _credential(request, payload, "human_api_key"),
        session,
    )
    return AuthContext(role=Role.WORKER, actor_id=human.id)


async def require_agent_or_worker(
    request: Request,
    background_tasks: BackgroundTasks,
    payload: dict[str, Any] = Depends(read_payload),
    session: AsyncSession = Depends(get_session),
) -> AuthContext:
    """Agent credentials win when present; otherwise worker credentials are required."""
    if _credential(request, payload, "ai_account_id") or _credential(
        request, payload, "ai_api_key"
    ):
        return await require_agent(request, background_tasks, payload, session)
    return await require_worker(request, payload, session)


async def require_admin(request: Request) -> AuthContext:
    _credentials.verify_admin_token(request.headers.get(ADMIN_TOKEN_HEADER))
    return AuthContext(role=Role.ADMIN, actor_id="admin")


def get_settlement_client() -> SettlementClient:
    """Dependency wrapper so tests can override the provider client."""
    return _settlement_client()


def get_optional_settlement_client() -> SettlementClient | None:
    """Like get_settlement_client, but None when the provider is not configured."""
    try:
        return _settlement_client()
    except ConfigurationError as e:
        log.error("settlement_client_unavailable", error=str(e))
        return None


def response_headers(request: Request) -> dict[str, str]:
    return dict(getattr(request.state, "rate_limit_headers", None) or {})


def respond(request: Request, body: dict[str, Any], status_code: int = 200) -> Response:
    """Render a JSON body with the request's quota headers attached."""
    return Response(
        content=render_json(body),
        status_code=status_code,
        media_type="application/json",
        headers=response_headers(request),
    )


def respond_stored(request: Request, stored: StoredResponse) -> Response:
    """Send a (possibly replayed) idempotent response verbatim."""
    return Response(
        content=stored.body,
        status_code=stored.status_code,
        media_type="application/json",
        headers=response_headers(request),
    )
