from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Optional

from crm_backend.app.models import Collection, iso_timestamp
from crm_backend.app.session import SessionContext
from crm_backend.app.store import UnsupportedCollectionError, join_path

logger = logging.getLogger("coaching_crm.bulk")

BULK_DELETABLE = frozenset({Collection.students, Collection.inquiries})


@dataclass
class BulkMutationResult:
    affected: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


def _partition(ids: list[str], known) -> BulkMutationResult:
    result = BulkMutationResult()
    for record_id in dict.fromkeys(ids):
        if record_id in known:
            result.affected.append(record_id)
        else:
            result.skipped.append(record_id)
    return result


class BulkMutationEngine:
    def __init__(self, session: SessionContext) -> None:
        self.session = session
        self.store = session.store

    def bulk_delete(self, collection: Collection, ids: list[str]) -> BulkMutationResult:
        if collection not in BULK_DELETABLE:
            raise UnsupportedCollectionError(
                f"bulk delete is not supported for {collection.value}"
            )
        result = _partition(ids, self.session.snapshot(collection))
        self._log_skipped("bulk_delete", collection, result)
        if result.affected:
            self.store.multi_write(
                {join_path(collection.value, record_id): None for record_id in result.affected}
            )
            logger.info(
                "bulk_delete collection=%s count=%s", collection.value, len(result.affected)
            )
        return result

    def bulk_reassign_batch(
        self, student_ids: list[str], batch_id: str, *, timestamp: Optional[str] = None
    ) -> BulkMutationResult:
        result = _partition(student_ids, self.session.students)
        self._log_skipped("bulk_reassign_batch", Collection.students, result)
        if not result.affected:
            return result
        # one stamp shared by every student in the batch
        updated_at = timestamp or iso_timestamp()
        updates = {}
        for student_id in result.affected:
            updates[join_path(Collection.students.value, student_id, "batchId")] = batch_id
            updates[join_path(Collection.students.value, student_id, "updatedAt")] = updated_at
        self.store.multi_write(updates)
        logger.info("bulk_reassign_batch batch_id=%s count=%s", batch_id, len(result.affected))
        return result

    @staticmethod
    def _log_skipped(operation: str, collection: Collection, result: BulkMutationResult) -> None:
        if result.skipped:
            logger.warning(
                "%s_skipped collection=%s ids=%s",
                operation,
                collection.value,
                ",".join(result.skipped),
            )
