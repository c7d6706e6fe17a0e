"""
Import/export conversion between snapshots and portable file formats.

Two formats are supported:
- JSON: lossless, mirrors the Snapshot layout
- CSV: lossy, carries only the subscription list with a fixed header
"""

from __future__ import annotations

import csv
import io
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from subtrack_backup.backup.errors import ImportFormatError, InvalidSnapshotError
from subtrack_backup.backup.snapshot import (
    SNAPSHOT_VERSION,
    DeviceInfo,
    Snapshot,
    SnapshotPayload,
)
from subtrack_backup.utils.clock import Clock, SystemClock, ensure_utc

logger = logging.getLogger(__name__)


class ExportFormat(str, Enum):
    """Supported import/export file formats."""

    JSON = "json"
    CSV = "csv"

    @property
    def mime_type(self) -> str:
        return "text/csv" if self is ExportFormat.CSV else "application/json"


# Fixed CSV header and the subscription fields each column maps to
CSV_HEADER = [
    "Name",
    "Category",
    "Amount",
    "Currency",
    "Billing Cycle",
    "Next Payment",
    "Status",
    "Notes",
]
CSV_FIELDS = [
    "name",
    "category",
    "amount",
    "currency",
    "billing_cycle",
    "next_payment_date",
    "is_active",
    "notes",
]

DEFAULT_CURRENCY = "USD"
DEFAULT_BILLING_CYCLE = "monthly"


def detect_format(filename: str | Path) -> ExportFormat:
    """
    Pick the import format from a file name extension.

    Raises:
        ImportFormatError: If the extension is not .json or .csv
    """
    suffix = Path(filename).suffix.lower().lstrip(".")
    try:
        return ExportFormat(suffix)
    except ValueError:
        raise ImportFormatError(
            f"Unsupported file type '{Path(filename).suffix}'. Use .json or .csv"
        ) from None


def subscription_rows(payload_subscriptions: Any) -> list[dict[str, Any]]:
    """Extract the subscription list from a subscriptions document."""
    if isinstance(payload_subscriptions, dict):
        rows = payload_subscriptions.get("subscriptions") or []
    elif isinstance(payload_subscriptions, list):
        rows = payload_subscriptions
    else:
        rows = []
    return [row for row in rows if isinstance(row, dict)]


class ImportExportConverter:
    """
    Converts snapshots to and from user-shareable files.

    Usage:
        converter = ImportExportConverter()
        data = converter.export_snapshot(snapshot, ExportFormat.CSV)
        snapshot = converter.parse_import(data, ExportFormat.CSV)
    """

    def __init__(self, clock: Clock | None = None):
        self.clock = clock or SystemClock()
        self.version = SNAPSHOT_VERSION

    def export_snapshot(self, snapshot: Snapshot, fmt: ExportFormat) -> bytes:
        """
        Serialize a snapshot in the requested format.

        Args:
            snapshot: Snapshot to export
            fmt: Target format

        Returns:
            Encoded file content
        """
        fmt = ExportFormat(fmt)
        if fmt is ExportFormat.JSON:
            return snapshot.to_json()
        return self._to_csv(snapshot)

    def parse_import(self, data: bytes, fmt: ExportFormat) -> Snapshot:
        """
        Parse file content into a snapshot.

        Raises:
            ImportFormatError: If the content does not match the format
        """
        fmt = ExportFormat(fmt)
        try:
            text = data.decode("utf-8-sig")
        except UnicodeDecodeError as e:
            raise ImportFormatError("File is not UTF-8 text") from e

        if fmt is ExportFormat.JSON:
            try:
                return Snapshot.from_json(text)
            except ImportFormatError:
                raise
            except InvalidSnapshotError as e:
                raise ImportFormatError(str(e)) from e
        return self._from_csv(text)

    # =========================================================================
    # CSV
    # =========================================================================

    def _to_csv(self, snapshot: Snapshot) -> bytes:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n")
        writer.writerow(CSV_HEADER)

        for sub in subscription_rows(snapshot.payload.subscriptions):
            writer.writerow(
                [
                    sub.get("name") or "",
                    sub.get("category") or "",
                    self._format_amount(sub.get("amount")),
                    sub.get("currency") or DEFAULT_CURRENCY,
                    sub.get("billing_cycle") or DEFAULT_BILLING_CYCLE,
                    sub.get("next_payment_date") or "",
                    "Active" if sub.get("is_active", True) else "Inactive",
                    sub.get("notes") or "",
                ]
            )

        return buffer.getvalue().encode("utf-8")

    @staticmethod
    def _format_amount(value: Any) -> str:
        if value is None or value == "":
            return "0"
        return str(value)

    def _from_csv(self, text: str) -> Snapshot:
        reader = csv.reader(io.StringIO(text))
        try:
            header = next(reader)
        except StopIteration:
            raise ImportFormatError("File is empty", line=1) from None
        except csv.Error as e:
            raise ImportFormatError(str(e), line=1) from e

        if [h.strip() for h in header] != CSV_HEADER:
            raise ImportFormatError(
                f"Expected header {','.join(CSV_HEADER)}", line=1
            )

        subscriptions = []
        try:
            for values in reader:
                line = reader.line_num
                if not values or all(not v.strip() for v in values):
                    continue
                if len(values) != len(CSV_HEADER):
                    raise ImportFormatError(
                        f"Expected {len(CSV_HEADER)} columns, found {len(values)}",
                        line=line,
                    )
                subscriptions.append(self._parse_row(values, line))
        except csv.Error as e:
            raise ImportFormatError(str(e), line=reader.line_num) from e

        logger.debug(f"Parsed {len(subscriptions)} subscription(s) from CSV")
        return Snapshot(
            version=self.version,
            created_at=ensure_utc(self.clock.now()),
            payload=SnapshotPayload(
                subscriptions={"subscriptions": subscriptions, "categories": []},
                # CSV holds subscriptions only; stored settings are left alone
                settings=None,
                cache=None,
            ),
            device=DeviceInfo.current(),
        )

    def _parse_row(self, values: list[str], line: int) -> dict[str, Any]:
        row = dict(zip(CSV_FIELDS, (v.strip() for v in values)))

        if not row["name"]:
            raise ImportFormatError("Subscription name is empty", line=line)

        try:
            amount = float(row["amount"] or 0)
        except ValueError:
            raise ImportFormatError(
                f"Amount '{row['amount']}' is not a number", line=line
            ) from None

        status = row["is_active"].lower()
        if status not in ("active", "inactive"):
            raise ImportFormatError(
                f"Status must be Active or Inactive, got '{row['is_active']}'",
                line=line,
            )

        next_payment = row["next_payment_date"] or None
        if next_payment:
            try:
                datetime.fromisoformat(next_payment)
            except ValueError:
                raise ImportFormatError(
                    f"Next payment '{next_payment}' is not an ISO date", line=line
                ) from None

        return {
            "name": row["name"],
            "category": row["category"] or None,
            "amount": amount,
            "currency": row["currency"] or DEFAULT_CURRENCY,
            "billing_cycle": row["billing_cycle"] or DEFAULT_BILLING_CYCLE,
            "next_payment_date": next_payment,
            "is_active": status == "active",
            "notes": row["notes"] or None,
        }


__all__ = [
    "ExportFormat",
    "ImportExportConverter",
    "CSV_HEADER",
    "detect_format",
    "subscription_rows",
]
