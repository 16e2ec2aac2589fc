"""CSV rendering of audit records for compliance export."""

import csv
import io
from collections.abc import Iterable

from src.audit.repository import to_utc
from src.models.audit_log import AuditLogRecord

CSV_HEADERS: tuple[str, ...] = (
    "Timestamp",
    "Action",
    "User Email",
    "User Role",
    "Resource Type",
    "Resource Name",
    "Method",
    "Endpoint",
    "IP Address",
    "Status",
    "Status Code",
    "Duration",
    "Priority",
    "Tags",
)


def _text(value: object) -> str:
    return "" if value is None else str(value)


def _duration(value: float | None) -> str:
    if value is None:
        return ""
    if float(value).is_integer():
        return str(int(value))
    return str(value)


def record_to_row(record: AuditLogRecord) -> list[str]:
    """Render one record in CSV_HEADERS column order."""
    return [
        to_utc(record.timestamp).isoformat(),
        record.action,
        _text(record.user_email),
        _text(record.user_role),
        _text(record.resource_type),
        _text(record.resource_name),
        _text(record.method),
        _text(record.endpoint),
        _text(record.ip_address),
        record.status,
        _text(record.status_code),
        _duration(record.duration_ms),
        record.priority,
        ", ".join(record.tags),
    ]


def records_to_csv(records: Iterable[AuditLogRecord]) -> str:
    """Render records as CSV: one header line, one line per record.

    Every field is double-quoted and lines are separated by a bare newline
    with none after the last line.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(CSV_HEADERS)
    for record in records:
        writer.writerow(record_to_row(record))
    return buffer.getvalue().removesuffix("\n")
