"""Startup check that the live database matches the models and migrations.

Required tables, columns and enum labels are read from ``Base.metadata`` so the
guard follows ``push_bridge.models``. The Alembic version must equal the head
revision shipped with this package.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Enum, MetaData, inspect, text
from sqlalchemy.engine import Engine

from push_bridge.models import Base

ALEMBIC_HEAD_REVISION = "0002_push_notification_jobs"


@dataclass(frozen=True, slots=True)
class SchemaGuardResult:
    ok: bool
    checked_at_utc: datetime
    issues: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "checked_at_utc": self.checked_at_utc.isoformat(),
            "issues": list(self.issues),
            "warnings": list(self.warnings),
            "issue_count": len(self.issues),
            "warning_count": len(self.warnings),
        }


def required_table_columns(metadata: MetaData = Base.metadata) -> dict[str, set[str]]:
    return {table.name: {column.name for column in table.columns} for table in metadata.sorted_tables}


def required_enum_labels(metadata: MetaData = Base.metadata) -> dict[str, set[str]]:
    labels: dict[str, set[str]] = {}
    for table in metadata.sorted_tables:
        for column in table.columns:
            if isinstance(column.type, Enum) and column.type.name:
                labels.setdefault(column.type.name, set()).update(column.type.enums)
    return labels


def check_enum_labels(
    found: dict[str, set[str]],
    required: dict[str, set[str]],
) -> tuple[list[str], list[str]]:
    issues: list[str] = []
    warnings: list[str] = []
    for enum_name, required_labels in sorted(required.items()):
        if enum_name not in found:
            warnings.append(f"ENUM_NOT_FOUND:{enum_name}")
            continue
        missing = sorted(required_labels - found[enum_name])
        if missing:
            issues.append(f"MISSING_ENUM_VALUES:{enum_name}:{','.join(missing)}")
    return issues, warnings


def _check_tables(inspector: Any, required: dict[str, set[str]]) -> list[str]:
    issues: list[str] = []
    for table_name, required_columns in sorted(required.items()):
        if not inspector.has_table(table_name):
            issues.append(f"MISSING_TABLE:{table_name}")
            continue
        present = {str(item.get("name")) for item in inspector.get_columns(table_name)}
        missing = sorted(required_columns - present)
        if missing:
            issues.append(f"MISSING_COLUMNS:{table_name}:{','.join(missing)}")
    return issues


def _installed_enum_labels(inspector: Any) -> dict[str, set[str]] | None:
    # Only the PostgreSQL inspector exposes named enum types.
    if not hasattr(inspector, "get_enums"):
        return None
    labels: dict[str, set[str]] = {}
    for item in inspector.get_enums() or []:
        name = str(item.get("name") or "").strip()
        if name and isinstance(item.get("labels"), list):
            labels[name] = {str(label) for label in item["labels"]}
    return labels


def _check_alembic_version(engine: Engine, expected_head: str) -> list[str]:
    try:
        with engine.connect() as connection:
            versions = [
                str(item).strip()
                for item in connection.execute(text("SELECT version_num FROM alembic_version")).scalars()
            ]
    except Exception as exc:
        return [f"ALEMBIC_VERSION_CHECK_FAILED:{exc.__class__.__name__}"]

    versions = [item for item in versions if item]
    if not versions:
        return ["ALEMBIC_VERSION_EMPTY"]
    if versions != [expected_head]:
        return [f"ALEMBIC_VERSION_MISMATCH:{','.join(versions)}:expected={expected_head}"]
    return []


def verify_runtime_schema(
    engine: Engine,
    *,
    metadata: MetaData = Base.metadata,
    expected_head: str = ALEMBIC_HEAD_REVISION,
) -> SchemaGuardResult:
    issues: list[str] = []
    warnings: list[str] = []
    checked_at_utc = datetime.now(timezone.utc)
    inspector = inspect(engine)

    issues.extend(_check_tables(inspector, required_table_columns(metadata)))

    installed_enums = _installed_enum_labels(inspector)
    if installed_enums is None:
        warnings.append(f"ENUM_CHECK_SKIPPED:{engine.dialect.name}")
    else:
        enum_issues, enum_warnings = check_enum_labels(installed_enums, required_enum_labels(metadata))
        issues.extend(enum_issues)
        warnings.extend(enum_warnings)

    issues.extend(_check_alembic_version(engine, expected_head))

    return SchemaGuardResult(
        ok=len(issues) == 0,
        checked_at_utc=checked_at_utc,
        issues=issues,
        warnings=warnings,
    )
