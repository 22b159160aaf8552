#!/usr/bin/env python3
"""Database overview and integrity checks for the rental ops tables."""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from typing import Iterable

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine import Engine


EXPECTED_TABLES = [
    "RentalJobs",
    "ConditionSnapshots",
    "ExtensionRequests",
    "StaffUsers",
    "AuditLogs",
]

EXPECTED_COLUMNS: dict[str, list[str]] = {
    "RentalJobs": [
        "JobID",
        "JobNumber",
        "CustomerName",
        "CustomerMobile",
        "StartTime",
        "EndTime",
        "ActualPickupTime",
        "ActualReturnTime",
        "Status",
        "DepositAmount",
        "AccessPayload",
        "Version",
    ],
    "ConditionSnapshots": [
        "SnapshotID",
        "JobID",
        "CaptureType",
        "Odometer",
        "FuelLevel",
        "AgreementReference",
        "CapturedAt",
        "IsCorrection",
    ],
    "ExtensionRequests": [
        "ExtensionRequestID",
        "JobID",
        "ReferenceReturnTime",
        "RequestedReturnTime",
        "ExtendedHours",
        "RateClass",
        "Fee",
        "Origin",
        "Status",
        "CollectedAmount",
    ],
    "AuditLogs": ["AuditID", "EntityType", "EntityID", "Action", "Details", "UserID", "CreatedAt"],
    "StaffUsers": ["StaffUserID", "Username", "Role", "PasswordHash", "PasswordSalt", "IsActive"],
}

# name -> (tables needed, query returning the number of offending rows)
INTEGRITY_CHECKS = [
    (
        "jobs:picked_up_without_pickup_snapshot",
        ["RentalJobs", "ConditionSnapshots"],
        """
        SELECT COUNT(*)
        FROM RentalJobs j
        WHERE j.ActualPickupTime IS NOT NULL
          AND NOT EXISTS (
              SELECT 1 FROM ConditionSnapshots s
              WHERE s.JobID = j.JobID AND s.CaptureType = 'Pickup'
          )
        """,
    ),
    (
        "jobs:returned_without_pickup",
        ["RentalJobs"],
        "SELECT COUNT(*) FROM RentalJobs WHERE ActualReturnTime IS NOT NULL AND ActualPickupTime IS NULL",
    ),
    (
        "jobs:status_out_of_step_with_timestamps",
        ["RentalJobs"],
        """
        SELECT COUNT(*)
        FROM RentalJobs
        WHERE (Status = 'Pending' AND ActualPickupTime IS NOT NULL)
           OR (Status = 'PickedUp' AND (ActualPickupTime IS NULL OR ActualReturnTime IS NOT NULL))
           OR (Status = 'Returned' AND ActualReturnTime IS NULL)
        """,
    ),
    (
        "jobs:picked_up_without_access_payload",
        ["RentalJobs"],
        "SELECT COUNT(*) FROM RentalJobs WHERE ActualPickupTime IS NOT NULL AND AccessPayload IS NULL",
    ),
    (
        "extensions:more_than_one_pending_per_job",
        ["ExtensionRequests"],
        """
        SELECT COUNT(*)
        FROM (
            SELECT JobID
            FROM ExtensionRequests
            WHERE Status = 'Pending'
            GROUP BY JobID
            HAVING COUNT(*) > 1
        ) d
        """,
    ),
    (
        "extensions:orphan_jobid",
        ["ExtensionRequests", "RentalJobs"],
        """
        SELECT COUNT(*)
        FROM ExtensionRequests e
        LEFT JOIN RentalJobs j ON j.JobID = e.JobID
        WHERE j.JobID IS NULL
        """,
    ),
]


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def _scalar(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).scalar()


def _rows(engine: Engine, sql: str, params: dict | None = None):
    with engine.connect() as conn:
        return conn.execute(text(sql), params or {}).all()


def _run_existence_checks(tables: set[str]) -> list[CheckResult]:
    return [
        CheckResult(f"table:{table}", table in tables, "present" if table in tables else "missing")
        for table in EXPECTED_TABLES
    ]


def _run_column_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    inspector = inspect(engine)
    results: list[CheckResult] = []
    for table, expected in EXPECTED_COLUMNS.items():
        if table not in tables:
            results.append(CheckResult(f"columns:{table}", False, "table missing"))
            continue
        actual = {column["name"] for column in inspector.get_columns(table)}
        missing = [name for name in expected if name not in actual]
        results.append(
            CheckResult(
                f"columns:{table}",
                not missing,
                "ok" if not missing else f"missing={','.join(missing)}",
            )
        )
    return results


def _run_integrity_checks(engine: Engine, tables: set[str]) -> list[CheckResult]:
    checks: list[CheckResult] = []
    for name, needed, sql in INTEGRITY_CHECKS:
        if not all(table in tables for table in needed):
            continue
        count = int(_scalar(engine, sql) or 0)
        checks.append(CheckResult(name, count == 0, f"count={count}"))
    return checks


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "FAIL"
        print(f"[{status}] {row.name} :: {row.detail}")


def _print_row_counts(engine: Engine, tables: set[str]) -> None:
    _print_section("Row Counts")
    for table in EXPECTED_TABLES:
        if table not in tables:
            print(f"{table}: missing")
            continue
        count = _scalar(engine, f"SELECT COUNT(*) FROM {table}")
        print(f"{table}: {int(count or 0)}")


def _print_samples(engine: Engine, tables: set[str], sample_size: int) -> None:
    _print_section("Sample Values")
    sample_size = max(1, sample_size)

    if "RentalJobs" in tables:
        rows = _rows(
            engine,
            """
            SELECT JobNumber, Status, EndTime, ActualPickupTime, ActualReturnTime, DepositRefund
            FROM RentalJobs
            ORDER BY JobID DESC
            """,
        )[:sample_size]
        print("RentalJobs (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")

    if "ExtensionRequests" in tables:
        rows = _rows(
            engine,
            """
            SELECT ExtensionRequestID, JobID, RequestedReturnTime, RateClass, Fee, Status
            FROM ExtensionRequests
            ORDER BY ExtensionRequestID DESC
            """,
        )[:sample_size]
        print("ExtensionRequests (recent):")
        for row in rows:
            print(f"  - {tuple(row)}")


def main() -> int:
    parser = argparse.ArgumentParser(description="Fleet rental DB overview")
    parser.add_argument("--db-url", default=os.environ.get("FLEET_RENTAL_DB_URL", ""))
    parser.add_argument("--samples", type=int, default=5)
    args = parser.parse_args()

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("FLEET_RENTAL_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        _scalar(engine, "SELECT 1")
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    tables = set(inspect(engine).get_table_names())
    _print_results("Table Existence", _run_existence_checks(tables))
    _print_results("Column Checks", _run_column_checks(engine, tables))
    _print_results("Integrity Checks", _run_integrity_checks(engine, tables))
    _print_row_counts(engine, tables)
    _print_samples(engine, tables, args.samples)
    return 0


if __name__ == "__main__":
    sys.exit(main())
