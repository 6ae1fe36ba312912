from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from crm_backend.app.identity import Identity
from crm_backend.app.models import APPROVED_EMPLOYEE_STATUS, Collection
from crm_backend.app.store import RecordStore, join_path

_NON_ALPHANUMERIC = re.compile(r"[^a-zA-Z0-9]")

GATE_REJECTION_MESSAGE = "You are not authorised to access the platform"


def derive_employee_id(email: str) -> str:
    """Allow-list key for an email: every non-ASCII-alphanumeric character removed."""
    return _NON_ALPHANUMERIC.sub("", email)


class RejectionReason(str, Enum):
    no_email = "no_email"
    not_found = "not_found"
    not_approved = "not_approved"
    lookup_failed = "lookup_failed"


@dataclass(frozen=True)
class AuthorizationResult:
    admitted: bool
    employee_id: Optional[str] = None
    reason: Optional[RejectionReason] = None

    @property
    def message(self) -> Optional[str]:
        return None if self.admitted else GATE_REJECTION_MESSAGE


class AuthorizationRejectedError(Exception):
    def __init__(self, result: AuthorizationResult) -> None:
        super().__init__(GATE_REJECTION_MESSAGE)
        self.result = result
        self.user_message = GATE_REJECTION_MESSAGE


class PrecheckError(Exception):
    """Raised before the identity provider is contacted."""

    user_message = ""

    def __init__(self, employee_id: str) -> None:
        super().__init__(self.user_message)
        self.employee_id = employee_id


class EmployeeNotFoundError(PrecheckError):
    user_message = "You are not authorized to access this platform."


class EmployeeNotApprovedError(PrecheckError):
    user_message = "Ask admin to approve your account"


class EmployeeNotRegisteredError(PrecheckError):
    user_message = "You are not registered as an employee. Please contact an administrator."


def load_employee(store: RecordStore, employee_id: str) -> Optional[dict]:
    if not employee_id:
        return None
    row = store.read_once(join_path(Collection.employees.value, employee_id))
    return row if isinstance(row, dict) else None


def _is_approved(row: dict) -> bool:
    return row.get("status") == APPROVED_EMPLOYEE_STATUS


def authorize(store: RecordStore, identity: Identity) -> AuthorizationResult:
    if not identity.email:
        return AuthorizationResult(admitted=False, reason=RejectionReason.no_email)
    employee_id = derive_employee_id(identity.email)
    row = load_employee(store, employee_id)
    if row is None:
        return AuthorizationResult(
            admitted=False, employee_id=employee_id, reason=RejectionReason.not_found
        )
    if not _is_approved(row):
        return AuthorizationResult(
            admitted=False, employee_id=employee_id, reason=RejectionReason.not_approved
        )
    return AuthorizationResult(admitted=True, employee_id=employee_id)


def precheck_sign_in(store: RecordStore, email: str) -> str:
    employee_id = derive_employee_id(email)
    row = load_employee(store, employee_id)
    if row is None:
        raise EmployeeNotFoundError(employee_id)
    if not _is_approved(row):
        raise EmployeeNotApprovedError(employee_id)
    return employee_id


def precheck_sign_up(store: RecordStore, email: str) -> str:
    employee_id = derive_employee_id(email)
    if load_employee(store, employee_id) is None:
        raise EmployeeNotRegisteredError(employee_id)
    return employee_id


def register_employee(store: RecordStore, email: str, name: str, status: str) -> Optional[str]:
    """Pre-register an allow-list row; existing rows are left untouched."""
    employee_id = derive_employee_id(email)
    if not employee_id:
        return None
    if load_employee(store, employee_id) is not None:
        return None
    store.write(
        join_path(Collection.employees.value, employee_id), {"name": name, "status": status}
    )
    return employee_id
