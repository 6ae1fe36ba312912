from __future__ import annotations

import pytest

from crm_backend.app.models import ExamRecord
from crm_backend.app.services.exam_results import (
    ExamResultNotFoundError,
    ExamResultsService,
    add_exam_record,
    delete_exam_record,
    sorted_years,
    update_exam_record,
)
from crm_backend.app.store import StoreWriteError
from crm_backend.app.session import parse_exam_results


def _record(name: str, air: int = 12) -> ExamRecord:
    return ExamRecord(air=air, name=name, program="JEE", url=f"https://cdn.test/{name}.jpg")


def test_delete_prunes_emptied_year_and_exam() -> None:
    document = add_exam_record({}, "JEE Advanced", "2025", _record("Nisha"))
    document = add_exam_record(document, "JEE Advanced", "2024", _record("Rohit", air=40))

    document = delete_exam_record(document, "JEE Advanced", "2025", 0)
    assert document == {
        "JEE Advanced": {
            "2024": [
                {
                    "air": 40,
                    "name": "Rohit",
                    "program": "JEE",
                    "score": "",
                    "url": "https://cdn.test/Rohit.jpg",
                }
            ]
        }
    }
    assert delete_exam_record(document, "JEE Advanced", "2024", 0) == {}


def test_edits_do_not_mutate_the_input() -> None:
    original = add_exam_record({}, "NEET", "2025", _record("Nisha"))
    updated = update_exam_record(original, "NEET", "2025", 0, _record("Nisha K", air=3))
    assert original["NEET"]["2025"][0]["name"] == "Nisha"
    assert updated["NEET"]["2025"][0] == {
        "air": 3,
        "name": "Nisha K",
        "program": "JEE",
        "score": "",
        "url": "https://cdn.test/Nisha K.jpg",
    }


@pytest.mark.parametrize(
    "exam_name, year", [("JEE.Main", "2025"), ("NEET", "20#25"), ("", "2025")]
)
def test_exam_and_year_keys_are_validated(exam_name: str, year: str) -> None:
    with pytest.raises(StoreWriteError):
        add_exam_record({}, exam_name, year, _record("Nisha"))


@pytest.mark.parametrize("index", [-1, 1])
def test_out_of_range_index_is_not_found(index: int) -> None:
    document = add_exam_record({}, "NEET", "2025", _record("Nisha"))
    with pytest.raises(ExamResultNotFoundError):
        delete_exam_record(document, "NEET", "2025", index)
    with pytest.raises(ExamResultNotFoundError):
        update_exam_record(document, "NEET", "2026", 0, _record("x"))


def test_years_are_listed_newest_first() -> None:
    document = {"NEET": {"2023": [], "2025": [], "2024": []}}
    assert sorted_years(document, "NEET") == ["2025", "2024", "2023"]
    assert sorted_years(document, "JEE") == []


def test_parse_exam_results_reads_index_keyed_entries() -> None:
    raw = {
        "NEET": {
            "2025": {
                "0": {"air": 5, "name": "A", "program": "NEET", "url": "u"},
                "2": {"air": "Top 100", "name": "B", "program": "NEET", "url": "u"},
            },
            "2024": [{"name": "missing air"}],
        }
    }
    parsed = parse_exam_results(raw)
    assert [record.name for record in parsed["NEET"]["2025"]] == ["A", "B"]
    assert "2024" not in parsed["NEET"]


def test_service_round_trip_through_the_store(session) -> None:
    service = ExamResultsService(session)
    service.add("JEE Main", "2025", _record("Nisha", air=7))
    service.add("JEE Main", "2025", _record("Rohit", air=19))
    assert [item.name for item in session.exams["JEE Main"]["2025"]] == ["Nisha", "Rohit"]

    service.update("JEE Main", "2025", 1, _record("Rohit S", air=18))
    assert session.exams["JEE Main"]["2025"][1].air == 18

    service.delete("JEE Main", "2025", 0)
    service.delete("JEE Main", "2025", 0)
    assert session.store.read_once("exams") is None
    assert dict(session.exams) == {}
