from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from crm_backend.app.models import (
    EnrollmentRequest,
    InquiryCreateRequest,
    InquiryStatus,
    InquiryUpdateRequest,
    PotentialUpdateRequest,
)
from crm_backend.app.services.lifecycle import LeadLifecycleEngine
from crm_backend.app.store import RecordNotFoundError


def _inquiry(name: str = "Meera Iyer", phone: str = "9000000001", **extra) -> InquiryCreateRequest:
    payload = {
        "name": name,
        "phone": phone,
        "email": "meera@example.com",
        "programOfInterestId": "prog-jee",
        "employeeId": "ashaRaoinstitutetest",
        "source": "Referral",
        "inquiryDate": "2026-10-15",
    }
    payload.update(extra)
    return InquiryCreateRequest.model_validate(payload)


def test_create_inquiry_has_no_timestamps(session) -> None:
    engine = LeadLifecycleEngine(session)
    inquiry_id = engine.create_inquiry(_inquiry())
    stored = session.store.read_once(f"inquiries/{inquiry_id}")
    assert stored["name"] == "Meera Iyer"
    assert stored["status"] == "New"
    assert "createdAt" not in stored
    assert "updatedAt" not in stored
    assert inquiry_id in session.inquiries


def test_edit_inquiry_writes_only_changed_fields(session) -> None:
    engine = LeadLifecycleEngine(session)
    inquiry_id = engine.create_inquiry(_inquiry())
    engine.edit_inquiry(
        inquiry_id,
        InquiryUpdateRequest(status=InquiryStatus.follow_up, follow_up_date="2026-10-20"),
    )
    stored = session.store.read_once(f"inquiries/{inquiry_id}")
    assert stored["status"] == "Follow-up"
    assert stored["followUpDate"] == "2026-10-20"
    assert stored["phone"] == "9000000001"

    with pytest.raises(RecordNotFoundError):
        engine.edit_inquiry("missing", InquiryUpdateRequest(notes="x"))


def test_edit_inquiry_clears_optional_fields_set_to_null(session) -> None:
    engine = LeadLifecycleEngine(session)
    inquiry_id = engine.create_inquiry(
        _inquiry(notes="call after exams", followUpDate="2026-10-20")
    )
    engine.edit_inquiry(
        inquiry_id,
        InquiryUpdateRequest.model_validate({"followUpDate": None, "notes": None}),
    )
    stored = session.store.read_once(f"inquiries/{inquiry_id}")
    assert "followUpDate" not in stored
    assert "notes" not in stored
    assert stored["email"] == "meera@example.com"

    with pytest.raises(ValidationError):
        InquiryUpdateRequest.model_validate({"name": None})


def test_move_to_potential_is_one_atomic_write(session) -> None:
    engine = LeadLifecycleEngine(session)
    inquiry_id = engine.create_inquiry(_inquiry(notes="asked about fees"))
    deliveries: list = []
    session.store.subscribe("", deliveries.append)

    potential_id = engine.move_to_potential(inquiry_id, "Interested in weekend batch")

    assert len(deliveries) == 2
    assert potential_id and potential_id != inquiry_id
    assert inquiry_id not in session.inquiries
    potential = session.potentials[potential_id]
    assert potential.remark == "Interested in weekend batch"
    assert potential.name == "Meera Iyer"
    assert potential.notes == "asked about fees"
    assert potential.program_of_interest_id == "prog-jee"


def test_move_of_unknown_inquiry_is_a_no_op(session) -> None:
    engine = LeadLifecycleEngine(session)
    engine.create_inquiry(_inquiry())
    before = session.store.read_once("")
    assert engine.move_to_potential("missing", "remark") is None
    assert session.store.read_once("") == before


def test_move_many_skips_unknown_ids(session) -> None:
    engine = LeadLifecycleEngine(session)
    first = engine.create_inquiry(_inquiry("Meera"))
    second = engine.create_inquiry(_inquiry("Arjun", "9000000002"))

    result = engine.move_many_to_potentials([first, "missing", second, first], "Call back")

    assert set(result.moved) == {first, second}
    assert result.skipped == ["missing"]
    assert not session.inquiries
    assert {item.name for item in session.potentials.values()} == {"Meera", "Arjun"}
    assert all(item.remark == "Call back" for item in session.potentials.values())


def test_edit_potential_replaces_the_record(session) -> None:
    engine = LeadLifecycleEngine(session)
    potential_id = engine.move_to_potential(engine.create_inquiry(_inquiry()), "first remark")
    update = PotentialUpdateRequest.model_validate(
        {**_inquiry(phone="9111111111").model_dump(by_alias=True), "remark": "second remark"}
    )
    engine.edit_potential(potential_id, update)
    potential = session.potentials[potential_id]
    assert potential.phone == "9111111111"
    assert potential.remark == "second remark"

    with pytest.raises(RecordNotFoundError):
        engine.edit_potential("missing", update)


def test_enroll_potential_creates_student_and_removes_potential(session) -> None:
    engine = LeadLifecycleEngine(session)
    potential_id = engine.move_to_potential(engine.create_inquiry(_inquiry()), "ready")
    deliveries: list = []
    session.store.subscribe("", deliveries.append)

    result = engine.enroll_potential(EnrollmentRequest(batch_id="batch-a"), potential_id)

    assert result is not None
    assert len(deliveries) == 2
    assert re.fullmatch(r"ENR\d+", result.enrollment_id)
    assert potential_id not in session.potentials
    student = session.students[result.student_id]
    assert student.full_name == "Meera Iyer"
    assert student.enrollment_id == result.enrollment_id
    assert student.program_id == "prog-jee"
    assert student.batch_id == "batch-a"
    assert student.medium == "English"
    assert student.board == "CBSE"
    assert student.employee_id == "ashaRaoinstitutetest"
    assert student.created_at and student.created_at == student.updated_at


def test_enrollment_form_overrides_prefilled_fields(session) -> None:
    engine = LeadLifecycleEngine(session)
    potential_id = engine.move_to_potential(engine.create_inquiry(_inquiry()), "ready")
    result = engine.enroll_potential(
        EnrollmentRequest(full_name="Meera S Iyer", enrollment_id="ENR42", medium="Hindi"),
        potential_id,
    )
    student = session.students[result.student_id]
    assert student.full_name == "Meera S Iyer"
    assert student.enrollment_id == "ENR42"
    assert student.medium == "Hindi"


def test_enroll_unknown_potential_is_a_no_op(session) -> None:
    engine = LeadLifecycleEngine(session)
    assert engine.enroll_potential(EnrollmentRequest(), "missing") is None
    assert not session.students
