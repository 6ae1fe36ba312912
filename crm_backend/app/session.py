from __future__ import annotations

import logging
from threading import Lock
from types import MappingProxyType
from typing import Any, Callable, Mapping, Optional

from pydantic import BaseModel, ValidationError

from crm_backend.app.identity import Identity
from crm_backend.app.models import (
    BatchRecord,
    Collection,
    EmployeeRecord,
    ExamRecord,
    InquiryRecord,
    PotentialRecord,
    ProgramRecord,
    StudentRecord,
    utc_now,
)
from crm_backend.app.store import RecordStore, Unsubscribe

logger = logging.getLogger("coaching_crm.session")

Parser = Callable[[Any], dict]

_EMPTY: Mapping = MappingProxyType({})


def _keyed_parser(collection: Collection, model: type[BaseModel]) -> Parser:
    def parse(value: Any) -> dict:
        if not isinstance(value, dict):
            return {}
        records = {}
        for key, raw in value.items():
            if not isinstance(raw, dict):
                logger.warning("snapshot_record_skipped collection=%s id=%s", collection.value, key)
                continue
            try:
                records[key] = model.model_validate({**raw, "id": key})
            except ValidationError:
                logger.warning("snapshot_record_invalid collection=%s id=%s", collection.value, key)
        return records

    return parse


def _exam_entries(raw: Any) -> list:
    # arrays with holes come back from the store keyed by index
    if isinstance(raw, dict):
        numeric = sorted((key for key in raw if str(key).isdigit()), key=int)
        return [raw[key] for key in numeric]
    if isinstance(raw, list):
        return raw
    return []


def parse_exam_results(value: Any) -> dict:
    if not isinstance(value, dict):
        return {}
    results: dict[str, Mapping[str, tuple[ExamRecord, ...]]] = {}
    for exam_name, years in value.items():
        if not isinstance(years, dict):
            continue
        parsed_years: dict[str, tuple[ExamRecord, ...]] = {}
        for year, entries in years.items():
            records = []
            for entry in _exam_entries(entries):
                try:
                    records.append(ExamRecord.model_validate(entry))
                except ValidationError:
                    logger.warning("snapshot_exam_record_invalid exam=%s year=%s", exam_name, year)
            if records:
                parsed_years[year] = tuple(records)
        if parsed_years:
            results[exam_name] = MappingProxyType(parsed_years)
    return results


SESSION_PARSERS: dict[Collection, Parser] = {
    Collection.students: _keyed_parser(Collection.students, StudentRecord),
    Collection.programs: _keyed_parser(Collection.programs, ProgramRecord),
    Collection.inquiries: _keyed_parser(Collection.inquiries, InquiryRecord),
    Collection.potentials: _keyed_parser(Collection.potentials, PotentialRecord),
    Collection.batches: _keyed_parser(Collection.batches, BatchRecord),
    Collection.exams: parse_exam_results,
    Collection.employees: _keyed_parser(Collection.employees, EmployeeRecord),
}


class CollectionChannel:
    """Receives whole-collection values from the store and republishes a read-only view."""

    def __init__(self, collection: Collection, parse: Parser) -> None:
        self.collection = collection
        self._parse = parse
        self._lock = Lock()
        self._view: Mapping = _EMPTY
        self._version = 0

    def publish(self, value: Any) -> None:
        view = MappingProxyType(self._parse(value))
        with self._lock:
            self._view = view
            self._version += 1

    def view(self) -> Mapping:
        with self._lock:
            return self._view

    @property
    def version(self) -> int:
        return self._version


class SessionContext:
    def __init__(self, store: RecordStore, identity: Identity, employee_id: str) -> None:
        self.store = store
        self.identity = identity
        self.employee_id = employee_id
        self.opened_at_utc = utc_now()
        self.channels: dict[Collection, CollectionChannel] = {
            collection: CollectionChannel(collection, parse)
            for collection, parse in SESSION_PARSERS.items()
        }
        self._unsubscribes: list[Unsubscribe] = []
        self._closed = False

    def open(self) -> "SessionContext":
        for collection, channel in self.channels.items():
            self._unsubscribes.append(self.store.subscribe(collection.value, channel.publish))
        logger.info(
            "session_opened employee_id=%s channels=%s", self.employee_id, len(self.channels)
        )
        return self

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self._unsubscribes:
            self._unsubscribes.pop()()
        logger.info("session_closed employee_id=%s", self.employee_id)

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self, collection: Collection) -> Mapping:
        return self.channels[collection].view()

    @property
    def students(self) -> Mapping[str, StudentRecord]:
        return self.snapshot(Collection.students)

    @property
    def programs(self) -> Mapping[str, ProgramRecord]:
        return self.snapshot(Collection.programs)

    @property
    def inquiries(self) -> Mapping[str, InquiryRecord]:
        return self.snapshot(Collection.inquiries)

    @property
    def potentials(self) -> Mapping[str, PotentialRecord]:
        return self.snapshot(Collection.potentials)

    @property
    def batches(self) -> Mapping[str, BatchRecord]:
        return self.snapshot(Collection.batches)

    @property
    def employees(self) -> Mapping[str, EmployeeRecord]:
        return self.snapshot(Collection.employees)

    @property
    def exams(self) -> Mapping[str, Mapping[str, tuple[ExamRecord, ...]]]:
        return self.snapshot(Collection.exams)

    def find(self, collection: Collection, record_id: str) -> Optional[Any]:
        return self.snapshot(collection).get(record_id)
