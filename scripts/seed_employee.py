from __future__ import annotations

import argparse
import sys

from crm_backend.app.models import APPROVED_EMPLOYEE_STATUS
from crm_backend.app.persistence import SnapshotPersistence
from crm_backend.app.services.authorization import derive_employee_id, register_employee
from crm_backend.app.settings import load_settings
from crm_backend.app.store import InMemoryRecordStore


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Add an employee to the coaching CRM allow-list snapshot."
    )
    parser.add_argument("--email", required=True)
    parser.add_argument("--name", required=True)
    parser.add_argument("--status", default=APPROVED_EMPLOYEE_STATUS)
    parser.add_argument(
        "--database-url",
        default="",
        help="Defaults to DATABASE_URL / PERSISTENCE_DB_PATH from the environment.",
    )
    args = parser.parse_args()

    database_url = args.database_url.strip() or load_settings().database_url
    store = InMemoryRecordStore(persistence=SnapshotPersistence(database_url))
    employee_id = register_employee(store, args.email, args.name, args.status)
    if employee_id is None:
        existing = derive_employee_id(args.email)
        print(f"Employee {existing or args.email!r} already exists or has no usable id.")
        return 1
    print(f"Registered employee {employee_id} with status {args.status}.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
