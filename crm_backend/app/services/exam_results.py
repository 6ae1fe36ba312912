from __future__ import annotations

import copy
from typing import Mapping, Optional, Sequence

from crm_backend.app.models import Collection, ExamRecord
from crm_backend.app.session import SessionContext
from crm_backend.app.store import RecordNotFoundError, validate_key

ExamResultsDocument = dict[str, dict[str, list[dict]]]


class ExamResultNotFoundError(RecordNotFoundError):
    pass


def to_document(exams: Mapping[str, Mapping[str, Sequence[ExamRecord]]]) -> ExamResultsDocument:
    return {
        exam_name: {
            year: [record.model_dump(mode="json") for record in records]
            for year, records in years.items()
        }
        for exam_name, years in exams.items()
    }


def sorted_years(document: Mapping[str, Mapping[str, Sequence]], exam_name: str) -> list[str]:
    """Years of an exam, newest first."""
    years = document.get(exam_name) or {}
    return sorted(years, key=lambda year: int(year) if year.isdigit() else -1, reverse=True)


def _entries(document: ExamResultsDocument, exam_name: str, year: str, index: int) -> list[dict]:
    entries = document.get(exam_name, {}).get(year)
    if not entries or index < 0 or index >= len(entries):
        raise ExamResultNotFoundError(f"exam result not found: {exam_name}/{year}/{index}")
    return entries


def add_exam_record(
    document: ExamResultsDocument, exam_name: str, year: str, record: ExamRecord
) -> ExamResultsDocument:
    validate_key(exam_name)
    validate_key(year)
    updated = copy.deepcopy(document)
    updated.setdefault(exam_name, {}).setdefault(year, []).append(record.model_dump(mode="json"))
    return updated


def update_exam_record(
    document: ExamResultsDocument, exam_name: str, year: str, index: int, record: ExamRecord
) -> ExamResultsDocument:
    updated = copy.deepcopy(document)
    _entries(updated, exam_name, year, index)[index] = record.model_dump(mode="json")
    return updated


def delete_exam_record(
    document: ExamResultsDocument, exam_name: str, year: str, index: int
) -> ExamResultsDocument:
    updated = copy.deepcopy(document)
    entries = _entries(updated, exam_name, year, index)
    del entries[index]
    # emptied years and exams never linger
    if not entries:
        del updated[exam_name][year]
    if not updated[exam_name]:
        del updated[exam_name]
    return updated


class ExamResultsService:
    def __init__(self, session: SessionContext) -> None:
        self.session = session
        self.store = session.store

    def current(self) -> ExamResultsDocument:
        return to_document(self.session.exams)

    def add(self, exam_name: str, year: str, record: ExamRecord) -> None:
        self._save(add_exam_record(self.current(), exam_name, year, record))

    def update(self, exam_name: str, year: str, index: int, record: ExamRecord) -> None:
        self._save(update_exam_record(self.current(), exam_name, year, index, record))

    def delete(self, exam_name: str, year: str, index: int) -> None:
        self._save(delete_exam_record(self.current(), exam_name, year, index))

    def _save(self, document: ExamResultsDocument) -> None:
        value: Optional[ExamResultsDocument] = document or None
        self.store.write(Collection.exams.value, value)
