from __future__ import annotations

import pytest

from crm_backend.app.identity import Identity
from crm_backend.app.services.authorization import (
    GATE_REJECTION_MESSAGE,
    EmployeeNotApprovedError,
    EmployeeNotFoundError,
    EmployeeNotRegisteredError,
    RejectionReason,
    authorize,
    derive_employee_id,
    precheck_sign_in,
    precheck_sign_up,
    register_employee,
)
from crm_backend.app.store import InMemoryRecordStore


def _identity(email: str | None) -> Identity:
    return Identity(uid="uid-1", email=email)


def test_derive_employee_id_strips_non_alphanumerics() -> None:
    assert derive_employee_id("Asha.Rao+crm@inst-x.co.in") == "AshaRaocrminstxcoin"
    assert derive_employee_id("a_b@c.com") == "abccom"


def test_derive_employee_id_is_idempotent() -> None:
    once = derive_employee_id("ravi.k@institute.test")
    assert derive_employee_id(once) == once


def test_approved_employee_is_admitted(store: InMemoryRecordStore) -> None:
    store.write("employees/ashainstitutetest", {"name": "Asha", "status": "approved"})
    result = authorize(store, _identity("asha@institute.test"))
    assert result.admitted is True
    assert result.employee_id == "ashainstitutetest"
    assert result.message is None


@pytest.mark.parametrize("status", ["Approved", "pending", "rejected", ""])
def test_status_must_be_exactly_approved(store: InMemoryRecordStore, status: str) -> None:
    store.write("employees/ashainstitutetest", {"name": "Asha", "status": status})
    result = authorize(store, _identity("asha@institute.test"))
    assert result.admitted is False
    assert result.reason == RejectionReason.not_approved
    assert result.message == GATE_REJECTION_MESSAGE


def test_missing_employee_is_rejected(store: InMemoryRecordStore) -> None:
    result = authorize(store, _identity("stranger@institute.test"))
    assert result.admitted is False
    assert result.reason == RejectionReason.not_found


def test_identity_without_email_is_rejected(store: InMemoryRecordStore) -> None:
    result = authorize(store, _identity(None))
    assert result.admitted is False
    assert result.reason == RejectionReason.no_email
    assert result.employee_id is None


def test_sign_in_precheck(store: InMemoryRecordStore) -> None:
    register_employee(store, "ravi@institute.test", "Ravi", "pending")
    with pytest.raises(EmployeeNotFoundError) as missing:
        precheck_sign_in(store, "nobody@institute.test")
    assert missing.value.user_message == "You are not authorized to access this platform."
    with pytest.raises(EmployeeNotApprovedError) as pending:
        precheck_sign_in(store, "ravi@institute.test")
    assert pending.value.user_message == "Ask admin to approve your account"


def test_sign_up_precheck_only_needs_a_row(store: InMemoryRecordStore) -> None:
    register_employee(store, "ravi@institute.test", "Ravi", "pending")
    assert precheck_sign_up(store, "ravi@institute.test") == "raviinstitutetest"
    with pytest.raises(EmployeeNotRegisteredError):
        precheck_sign_up(store, "nobody@institute.test")


def test_register_employee_keeps_existing_rows(store: InMemoryRecordStore) -> None:
    assert register_employee(store, "asha@institute.test", "Asha", "approved") == (
        "ashainstitutetest"
    )
    assert register_employee(store, "asha@institute.test", "Asha R", "pending") is None
    assert store.read_once("employees/ashainstitutetest") == {
        "name": "Asha",
        "status": "approved",
    }
