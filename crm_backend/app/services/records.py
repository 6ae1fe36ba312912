from __future__ import annotations

import logging

from crm_backend.app.models import (
    MANUAL_ENROLLMENT_EMPLOYEE_ID,
    BatchCreateRequest,
    Collection,
    ProgramCreateRequest,
    StoredModel,
    StudentCreateRequest,
    StudentUpdateRequest,
    iso_timestamp,
)
from crm_backend.app.session import SessionContext
from crm_backend.app.store import RecordNotFoundError, join_path

logger = logging.getLogger("coaching_crm.records")


class RecordService:
    """Single-record writes for students, programs and batches.

    Creation stamps both `createdAt` and `updatedAt`; every update refreshes
    `updatedAt` and merges the submitted fields over the stored record.
    """

    def __init__(self, session: SessionContext) -> None:
        self.session = session
        self.store = session.store

    def add_student(self, request: StudentCreateRequest) -> str:
        document = request.to_document()
        document.setdefault("employeeId", MANUAL_ENROLLMENT_EMPLOYEE_ID)
        return self._create(Collection.students, document)

    def update_student(self, student_id: str, request: StudentUpdateRequest) -> None:
        self._update(Collection.students, student_id, request)

    def delete_student(self, student_id: str) -> None:
        self.store.delete(join_path(Collection.students.value, student_id))
        logger.info("student_deleted student_id=%s", student_id)

    def add_program(self, request: ProgramCreateRequest) -> str:
        return self._create(Collection.programs, request.to_document())

    def update_program(self, program_id: str, request: ProgramCreateRequest) -> None:
        self._update(Collection.programs, program_id, request)

    def add_batch(self, request: BatchCreateRequest) -> str:
        return self._create(Collection.batches, request.to_document())

    def update_batch(self, batch_id: str, request: BatchCreateRequest) -> None:
        self._update(Collection.batches, batch_id, request)

    def _create(self, collection: Collection, document: dict) -> str:
        timestamp = iso_timestamp()
        document.update({"createdAt": timestamp, "updatedAt": timestamp})
        record_id = self.store.push_create(collection.value, document)
        logger.info("record_created collection=%s id=%s", collection.value, record_id)
        return record_id

    def _update(self, collection: Collection, record_id: str, request: StoredModel) -> None:
        if record_id not in self.session.snapshot(collection):
            raise RecordNotFoundError(f"{collection.name} record not found: {record_id}")
        document = request.to_document()
        document["updatedAt"] = iso_timestamp()
        self.store.multi_write(
            {
                join_path(collection.value, record_id, name): value
                for name, value in document.items()
            }
        )
