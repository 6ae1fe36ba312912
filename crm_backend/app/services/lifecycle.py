from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from crm_backend.app.models import (
    Collection,
    EnrollmentRequest,
    InquiryCreateRequest,
    InquiryRecord,
    InquiryUpdateRequest,
    PotentialRecord,
    PotentialUpdateRequest,
    StudentRecord,
    StudentStatus,
    iso_timestamp,
    utc_now,
)
from crm_backend.app.session import SessionContext
from crm_backend.app.store import RecordNotFoundError, join_path

logger = logging.getLogger("coaching_crm.lifecycle")

DEFAULT_MEDIUM = "English"
DEFAULT_BOARD = "CBSE"
ENROLLMENT_ID_PREFIX = "ENR"


def generate_enrollment_id(now: Optional[datetime] = None) -> str:
    moment = now or utc_now()
    return f"{ENROLLMENT_ID_PREFIX}{int(moment.timestamp() * 1000)}"


def potential_from_inquiry(inquiry: InquiryRecord, remark: str) -> PotentialRecord:
    return PotentialRecord(**inquiry.model_dump(), remark=remark)


def enrollment_draft(
    potential: PotentialRecord,
    overrides: EnrollmentRequest,
    *,
    now: Optional[datetime] = None,
    fallback_program_id: str = "",
) -> StudentRecord:
    """Student pre-populated from the potential; any field set on `overrides` wins."""
    moment = now or utc_now()
    timestamp = iso_timestamp(moment)
    fields = {
        "full_name": potential.name,
        "enrollment_id": generate_enrollment_id(moment),
        "program_id": potential.program_of_interest_id or fallback_program_id,
        "medium": DEFAULT_MEDIUM,
        "board": DEFAULT_BOARD,
        "phone": potential.phone,
        "email": potential.email or "",
        "address": potential.address or "",
        "status": StudentStatus.active,
        "employee_id": potential.employee_id or None,
    }
    fields.update(overrides.model_dump(exclude_none=True))
    return StudentRecord(id=potential.id, created_at=timestamp, updated_at=timestamp, **fields)


@dataclass
class BulkMoveResult:
    moved: dict[str, str] = field(default_factory=dict)
    skipped: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class EnrollmentResult:
    student_id: str
    enrollment_id: str


class LeadLifecycleEngine:
    """Moves contacts Inquiry -> Potential -> Student.

    Every transition reads the session snapshot, never the store, and never
    patches the snapshot itself: the change shows up through the session's
    subscription once the store applies it.
    """

    def __init__(self, session: SessionContext) -> None:
        self.session = session
        self.store = session.store

    def create_inquiry(self, request: InquiryCreateRequest) -> str:
        # inquiries carry no createdAt/updatedAt stamps
        inquiry_id = self.store.push_create(Collection.inquiries.value, request.to_document())
        logger.info("inquiry_created inquiry_id=%s", inquiry_id)
        return inquiry_id

    def edit_inquiry(self, inquiry_id: str, request: InquiryUpdateRequest) -> None:
        if inquiry_id not in self.session.inquiries:
            raise RecordNotFoundError(f"inquiry not found: {inquiry_id}")
        changes = request.changed_fields()
        if not changes:
            return
        self.store.multi_write(
            {
                join_path(Collection.inquiries.value, inquiry_id, name): value
                for name, value in changes.items()
            }
        )

    def move_to_potential(self, inquiry_id: str, remark: str) -> Optional[str]:
        inquiry = self.session.inquiries.get(inquiry_id)
        if inquiry is None:
            logger.warning(
                "move_to_potential_skipped inquiry_id=%s reason=not_in_snapshot", inquiry_id
            )
            return None
        potential_id = self.store.new_key()
        self.store.multi_write(self._move_updates(inquiry, potential_id, remark))
        logger.info("inquiry_moved inquiry_id=%s potential_id=%s", inquiry_id, potential_id)
        return potential_id

    def move_many_to_potentials(self, inquiry_ids: list[str], remark: str) -> BulkMoveResult:
        result = BulkMoveResult()
        updates: dict = {}
        inquiries = self.session.inquiries
        for inquiry_id in dict.fromkeys(inquiry_ids):
            inquiry = inquiries.get(inquiry_id)
            if inquiry is None:
                result.skipped.append(inquiry_id)
                continue
            potential_id = self.store.new_key()
            updates.update(self._move_updates(inquiry, potential_id, remark))
            result.moved[inquiry_id] = potential_id
        if result.skipped:
            logger.warning(
                "move_many_to_potentials_skipped count=%s ids=%s",
                len(result.skipped),
                ",".join(result.skipped),
            )
        if updates:
            self.store.multi_write(updates)
            logger.info("inquiries_moved count=%s", len(result.moved))
        return result

    def edit_potential(self, potential_id: str, request: PotentialUpdateRequest) -> None:
        if potential_id not in self.session.potentials:
            raise RecordNotFoundError(f"potential not found: {potential_id}")
        self.store.write(
            join_path(Collection.potentials.value, potential_id), request.to_document()
        )

    def enroll_potential(
        self, request: EnrollmentRequest, potential_id: str
    ) -> Optional[EnrollmentResult]:
        potential = self.session.potentials.get(potential_id)
        if potential is None:
            logger.warning(
                "enroll_potential_skipped potential_id=%s reason=not_in_snapshot", potential_id
            )
            return None
        fallback_program_id = next(iter(self.session.programs), "")
        student = enrollment_draft(
            potential, request, fallback_program_id=fallback_program_id
        )
        student_id = self.store.new_key()
        # student create and potential delete land together or not at all
        self.store.multi_write(
            {
                join_path(Collection.students.value, student_id): student.to_document(),
                join_path(Collection.potentials.value, potential_id): None,
            }
        )
        logger.info(
            "potential_enrolled potential_id=%s student_id=%s enrollment_id=%s",
            potential_id,
            student_id,
            student.enrollment_id,
        )
        return EnrollmentResult(student_id=student_id, enrollment_id=student.enrollment_id)

    @staticmethod
    def _move_updates(inquiry: InquiryRecord, potential_id: str, remark: str) -> dict:
        return {
            join_path(Collection.potentials.value, potential_id): potential_from_inquiry(
                inquiry, remark
            ).to_document(),
            join_path(Collection.inquiries.value, inquiry.id): None,
        }
