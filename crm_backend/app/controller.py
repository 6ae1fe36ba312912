from __future__ import annotations

import logging
from datetime import datetime
from threading import RLock
from typing import Optional
from uuid import uuid4

from crm_backend.app.identity import Identity, IdentityError, IdentityErrorCode, IdentityGateway
from crm_backend.app.models import utc_now
from crm_backend.app.services.authorization import (
    AuthorizationRejectedError,
    AuthorizationResult,
    RejectionReason,
    authorize,
    derive_employee_id,
    precheck_sign_in,
    precheck_sign_up,
)
from crm_backend.app.services.bulk import BulkMutationEngine
from crm_backend.app.services.exam_results import ExamResultsService
from crm_backend.app.services.lifecycle import LeadLifecycleEngine
from crm_backend.app.services.records import RecordService
from crm_backend.app.session import SessionContext
from crm_backend.app.store import RecordStore, StoreError

logger = logging.getLogger("coaching_crm.controller")

SIGN_IN_MESSAGES = {
    IdentityErrorCode.invalid_credential: (
        "Invalid email or password. Please check your credentials and try again."
    ),
}
SIGN_IN_FALLBACK = "An unexpected error occurred during sign-in."

FEDERATED_MESSAGES = {
    IdentityErrorCode.popup_closed: "",
    IdentityErrorCode.account_exists_different_credential: (
        "An account already exists with this email. Please sign in with your original method."
    ),
}
FEDERATED_FALLBACK = "Failed to sign in with Google. Please try again."

SIGN_UP_MESSAGES = {
    IdentityErrorCode.email_in_use: "This email address is already registered.",
    IdentityErrorCode.weak_password: "Password is too weak. Please use at least 6 characters.",
    IdentityErrorCode.invalid_email: "Please enter a valid email address.",
}
SIGN_UP_FALLBACK = "Failed to create an account. Please try again."


def sign_in_message(exc: IdentityError) -> str:
    return SIGN_IN_MESSAGES.get(exc.code, SIGN_IN_FALLBACK)


def federated_message(exc: IdentityError) -> str:
    return FEDERATED_MESSAGES.get(exc.code, FEDERATED_FALLBACK)


def sign_up_message(exc: IdentityError) -> str:
    return SIGN_UP_MESSAGES.get(exc.code, SIGN_UP_FALLBACK)


class SessionRequiredError(Exception):
    pass


class DashboardController:
    """One client of the dashboard: identity changes in, admitted session out.

    The gate runs on every identity change. Admission opens a session context
    with live channels over every collection; rejection forces the identity
    gateway to sign out so no authenticated state outlives the decision.
    """

    def __init__(
        self,
        store: RecordStore,
        gateway: IdentityGateway,
        controller_id: Optional[str] = None,
    ) -> None:
        self.id = controller_id or uuid4().hex
        self.store = store
        self.gateway = gateway
        self.session: Optional[SessionContext] = None
        self.last_rejection: Optional[AuthorizationResult] = None
        self.expires_at: Optional[datetime] = None
        self._lock = RLock()
        self._unsubscribe_identity = gateway.on_identity_change(self._handle_identity_change)

    def sign_in(self, email: str, password: str) -> SessionContext:
        precheck_sign_in(self.store, email)
        try:
            self.gateway.sign_in_with_credential(email, password)
        except IdentityError as exc:
            logger.error("sign_in_failed code=%s", exc.code.value)
            raise
        return self._require_session()

    def sign_in_federated(self, id_token: Optional[str]) -> SessionContext:
        try:
            self.gateway.sign_in_with_federated(id_token)
        except IdentityError as exc:
            logger.error("federated_sign_in_failed code=%s", exc.code.value)
            raise
        return self._require_session()

    def sign_up(self, email: str, password: str) -> SessionContext:
        precheck_sign_up(self.store, email)
        try:
            self.gateway.sign_up_with_credential(email, password)
        except IdentityError as exc:
            logger.error("sign_up_failed code=%s", exc.code.value)
            raise
        return self._require_session()

    def sign_out(self) -> None:
        try:
            self.gateway.sign_out()
        except IdentityError as exc:
            logger.error("sign_out_failed controller_id=%s code=%s", self.id, exc.code.value)

    def close(self) -> None:
        self._unsubscribe_identity()
        with self._lock:
            self._close_session()

    def expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def require_session(self) -> SessionContext:
        session = self.session
        if session is None or session.closed:
            raise SessionRequiredError("no admitted session")
        return session

    def lifecycle(self) -> LeadLifecycleEngine:
        return LeadLifecycleEngine(self.require_session())

    def bulk(self) -> BulkMutationEngine:
        return BulkMutationEngine(self.require_session())

    def records(self) -> RecordService:
        return RecordService(self.require_session())

    def exam_results(self) -> ExamResultsService:
        return ExamResultsService(self.require_session())

    def _require_session(self) -> SessionContext:
        if self.session is None:
            raise AuthorizationRejectedError(
                self.last_rejection or AuthorizationResult(admitted=False)
            )
        return self.session

    def _handle_identity_change(self, identity: Optional[Identity]) -> None:
        with self._lock:
            if identity is None:
                self._close_session()
                return
            if self.session and self.session.identity.uid == identity.uid:
                return
            self._close_session()
            result = self._authorize(identity)
            if result.admitted and result.employee_id:
                self.last_rejection = None
                self.session = SessionContext(self.store, identity, result.employee_id).open()
                return
            self.last_rejection = result
            logger.warning(
                "authorization_rejected uid=%s reason=%s",
                identity.uid,
                result.reason.value if result.reason else "unknown",
            )
        self.sign_out()

    def _authorize(self, identity: Identity) -> AuthorizationResult:
        try:
            return authorize(self.store, identity)
        except StoreError:
            logger.exception("authorization_lookup_failed uid=%s", identity.uid)
            return AuthorizationResult(
                admitted=False,
                employee_id=derive_employee_id(identity.email or ""),
                reason=RejectionReason.lookup_failed,
            )

    def _close_session(self) -> None:
        if self.session is not None:
            self.session.close()
            self.session = None


class ControllerRegistry:
    """Live controllers keyed by session id.

    Controllers whose session token has expired are closed on the next
    `add` or `get`, so abandoned sign-ins release their store subscriptions.
    """

    def __init__(self) -> None:
        self._lock = RLock()
        self._controllers: dict[str, DashboardController] = {}

    def add(self, controller: DashboardController) -> DashboardController:
        self.sweep_expired()
        with self._lock:
            self._controllers[controller.id] = controller
        return controller

    def get(self, controller_id: str) -> Optional[DashboardController]:
        self.sweep_expired()
        with self._lock:
            return self._controllers.get(controller_id)

    def discard(self, controller_id: str) -> None:
        with self._lock:
            controller = self._controllers.pop(controller_id, None)
        if controller:
            controller.close()

    def sweep_expired(self, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        with self._lock:
            expired = [
                self._controllers.pop(controller_id)
                for controller_id, controller in list(self._controllers.items())
                if controller.expired(now)
            ]
        for controller in expired:
            controller.close()
            logger.info("session_expired controller_id=%s", controller.id)
        return len(expired)

    def open_session_count(self) -> int:
        with self._lock:
            controllers = list(self._controllers.values())
        return sum(1 for controller in controllers if controller.session is not None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._controllers)
