"""
View export formats.

Pure transforms of view data into JSON, CSV and Markdown text.
"""

import csv
import dataclasses
import io
import json
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

GENERATOR = "usage-ledger"


class ExportFormat(Enum):
    """Supported export formats."""
    JSON = "json"
    CSV = "csv"
    MARKDOWN = "markdown"


# The list inside each view that becomes the CSV / Markdown table
TABLE_KEYS: Dict[str, str] = {
    "projects": "projects",
    "sessions": "sessions",
    "monthly": "billing_periods",
    "daily": "daily",
    "active": "activity_windows",
}


def to_jsonable(value: Any) -> Any:
    """Convert dataclasses, datetimes, enums and decimals to JSON-ready values."""
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return {f.name: to_jsonable(getattr(value, f.name)) for f in dataclasses.fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, dict):
        return {str(k.value if isinstance(k, Enum) else k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


def _parse_format(fmt: str) -> ExportFormat:
    try:
        return ExportFormat(fmt.lower())
    except ValueError:
        valid = [f.value for f in ExportFormat]
        raise ValueError(f"Unknown export format '{fmt}', expected one of: {valid}")


def _flatten(data: Dict[str, Any], prefix: str = "") -> List[tuple]:
    """Scalar entries of a nested mapping as (dotted key, value) pairs."""
    pairs = []
    for key, value in data.items():
        name = f"{prefix}{key}"
        if isinstance(value, dict):
            pairs.extend(_flatten(value, f"{name}."))
        elif isinstance(value, list):
            if all(not isinstance(v, (dict, list)) for v in value):
                pairs.append((name, "; ".join(str(v) for v in value)))
        else:
            pairs.append((name, value))
    return pairs


def _cell(value: Any) -> Any:
    if isinstance(value, list):
        return "; ".join(str(v) for v in value)
    if isinstance(value, dict):
        return json.dumps(value, sort_keys=True)
    if value is None:
        return ""
    return value


def _table_columns(rows: List[Dict[str, Any]]) -> List[str]:
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


def _render_json(view: str, data: Dict[str, Any], generated_at: datetime) -> str:
    payload = {
        "export": {
            "view": view,
            "format": ExportFormat.JSON.value,
            "generated_at": generated_at.isoformat(),
            "generator": GENERATOR,
        },
        "data": data,
    }
    return json.dumps(payload, indent=2, sort_keys=False)


def _render_csv(view: str, data: Dict[str, Any]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    table_key = TABLE_KEYS.get(view)
    rows = data.get(table_key) if table_key else None
    if rows:
        columns = _table_columns(rows)
        writer.writerow(columns)
        for row in rows:
            writer.writerow([_cell(row.get(column)) for column in columns])
    else:
        writer.writerow(["metric", "value"])
        for key, value in _flatten(data):
            writer.writerow([key, _cell(value)])
    return buffer.getvalue()


def _md_escape(value: Any) -> str:
    return str(_cell(value)).replace("|", "\\|")


def _render_markdown(view: str, data: Dict[str, Any], generated_at: datetime) -> str:
    lines = [
        f"# Usage Ledger: {view.title()}",
        "",
        f"_Generated {generated_at.isoformat()}_",
        "",
        "| Metric | Value |",
        "| --- | --- |",
    ]
    for key, value in _flatten(data):
        lines.append(f"| {_md_escape(key)} | {_md_escape(value)} |")

    table_key = TABLE_KEYS.get(view)
    rows = data.get(table_key) if table_key else None
    if rows:
        columns = _table_columns(rows)
        lines.extend([
            "",
            f"## {table_key.replace('_', ' ').title()}",
            "",
            "| " + " | ".join(columns) + " |",
            "| " + " | ".join("---" for _ in columns) + " |",
        ])
        for row in rows:
            lines.append("| " + " | ".join(_md_escape(row.get(c)) for c in columns) + " |")
    return "\n".join(lines) + "\n"


def render_export(
    view: str,
    data: Dict[str, Any],
    fmt: str,
    generated_at: Optional[datetime] = None
) -> str:
    """Render one view's data in an export format.

    Args:
        view: View name, selects the table used for CSV and Markdown
        data: JSON-ready view data
        fmt: One of json, csv, markdown
        generated_at: Timestamp written into the export metadata

    Returns:
        The rendered document

    Raises:
        ValueError: If the format is unknown
    """
    export_format = _parse_format(fmt)
    generated_at = generated_at or datetime.now(timezone.utc)
    if export_format is ExportFormat.JSON:
        return _render_json(view, data, generated_at)
    if export_format is ExportFormat.CSV:
        return _render_csv(view, data)
    return _render_markdown(view, data, generated_at)
