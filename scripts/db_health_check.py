#!/usr/bin/env python
from __future__ import annotations

import json
import os
from datetime import datetime, timedelta, timezone
from pathlib import Path

from sqlalchemy import create_engine, text

from push_bridge.services.schema_guard import ALEMBIC_HEAD_REVISION


EXPECTED_HEAD = ALEMBIC_HEAD_REVISION
STUCK_SENDING_AFTER = timedelta(minutes=30)


def load_env_if_exists() -> None:
    env_file = Path(".env")
    if not env_file.exists():
        return
    for raw_line in env_file.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip())


def run() -> dict:
    load_env_if_exists()
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL not found (.env or env vars).")

    engine = create_engine(database_url)
    now_utc = datetime.now(timezone.utc)
    report: dict = {
        "generated_at_utc": now_utc.isoformat(),
        "checks": [],
    }

    def add(name: str, status: str, details: dict) -> None:
        report["checks"].append(
            {
                "name": name,
                "status": status,
                "details": details,
            }
        )

    with engine.connect() as conn:
        tables = set(
            conn.execute(
                text(
                    """
                    select table_name
                    from information_schema.tables
                    where table_schema='public'
                    """
                )
            ).scalars()
        )

        current_versions: list[str] = []
        if "alembic_version" in tables:
            current_versions = [
                row[0]
                for row in conn.execute(text("select version_num from alembic_version")).fetchall()
            ]
        add("alembic_version", "ok" if current_versions else "fail", {"current": current_versions})

        add(
            "migration_up_to_date",
            "ok" if EXPECTED_HEAD in current_versions else "warn",
            {"expected_head": EXPECTED_HEAD, "current": current_versions},
        )

        required_by_revision = {
            "0001+": ["push_subscriptions"],
            "0002+": ["push_notification_jobs"],
        }
        missing = {
            rev: [table for table in required if table not in tables]
            for rev, required in required_by_revision.items()
        }
        missing = {rev: tables_ for rev, tables_ in missing.items() if tables_}
        add("missing_tables_by_revision", "warn" if missing else "ok", missing)

        if "push_subscriptions" in tables:
            status_counts = conn.execute(
                text(
                    """
                    select status, count(*)
                    from push_subscriptions
                    group by status
                    """
                )
            ).fetchall()
            add(
                "subscription_status_counts",
                "ok",
                {str(row[0]): int(row[1]) for row in status_counts},
            )

            blank_endpoints = conn.execute(
                text(
                    """
                    select id
                    from push_subscriptions
                    where coalesce(trim(endpoint_arn), '') = ''
                    limit 20
                    """
                )
            ).fetchall()
            add(
                "subscription_blank_endpoint",
                "fail" if blank_endpoints else "ok",
                {"sample_ids": [row[0] for row in blank_endpoints]},
            )

        if "push_notification_jobs" in tables:
            stuck_jobs = conn.execute(
                text(
                    """
                    select id
                    from push_notification_jobs
                    where status = 'SENDING' and updated_at < :threshold
                    limit 20
                    """
                ),
                {"threshold": now_utc - STUCK_SENDING_AFTER},
            ).fetchall()
            add(
                "notification_jobs_stuck_sending",
                "warn" if stuck_jobs else "ok",
                {"sample_ids": [row[0] for row in stuck_jobs]},
            )

            failed_count = conn.execute(
                text("select count(*) from push_notification_jobs where status = 'FAILED'")
            ).scalar()
            add(
                "notification_jobs_failed",
                "warn" if failed_count else "ok",
                {"count": int(failed_count or 0)},
            )

    return report


if __name__ == "__main__":
    print(json.dumps(run(), ensure_ascii=False, indent=2))
