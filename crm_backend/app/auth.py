from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from crm_backend.app.controller import ControllerRegistry, DashboardController
from crm_backend.app.models import utc_now
from crm_backend.app.session import SessionContext
from crm_backend.app.settings import Settings

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    controller: DashboardController
    session: SessionContext

    @property
    def employee_id(self) -> str:
        return self.session.employee_id


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_registry(request: Request) -> ControllerRegistry:
    return request.app.state.controllers


def issue_session_token(
    settings: Settings, controller: DashboardController, session: SessionContext
) -> tuple[str, datetime]:
    expires_at = utc_now() + timedelta(hours=settings.session_ttl_hours)
    payload = {
        "sub": session.identity.uid,
        "sid": controller.id,
        "emp": session.employee_id,
        "exp": expires_at,
    }
    token = jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)
    return token, expires_at


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _discard_expired_session(request: Request, token: str, settings: Settings) -> None:
    # signature is still checked; only the expiry is waived to recover the sid
    try:
        payload = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_exp": False},
        )
    except jwt.InvalidTokenError:
        return
    controller_id = payload.get("sid")
    if isinstance(controller_id, str):
        get_registry(request).discard(controller_id)


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> AuthContext:
    settings = get_settings(request)
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")

    try:
        payload = jwt.decode(
            credentials.credentials,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
        )
    except jwt.ExpiredSignatureError as exc:
        _discard_expired_session(request, credentials.credentials, settings)
        raise _unauthorized("session token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid session token") from exc

    subject = payload.get("sub")
    controller_id = payload.get("sid")
    if not isinstance(subject, str) or not isinstance(controller_id, str):
        raise _unauthorized("session token missing subject")

    controller = get_registry(request).get(controller_id)
    session = controller.session if controller else None
    if controller is None or session is None or session.closed:
        raise _unauthorized("session has ended")
    if session.identity.uid != subject:
        raise _unauthorized("session token does not match the signed-in identity")
    return AuthContext(controller=controller, session=session)
