"""
CSV export sink.

Rows may have heterogeneous column sets; missing values are written as empty
cells. Structured values (mappings, lists) are written as JSON.
"""

import csv
import hashlib
import io
import json
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence


@dataclass
class ExportArtifact:
    """A produced export, ready to download."""

    content: bytes
    media_type: str
    filename: str
    row_count: int
    sha256: str


class ExportSink(Protocol):
    """Protocol for export sinks."""

    def export(
        self,
        rows: Sequence[Dict[str, Any]],
        columns: Optional[List[str]] = None,
        name: str = "export",
    ) -> ExportArtifact:
        ...


def infer_columns(rows: Sequence[Dict[str, Any]]) -> List[str]:
    """Ordered union of keys across rows, first-seen order."""
    columns: List[str] = []
    for row in rows:
        for key in row:
            if key not in columns:
                columns.append(key)
    return columns


class CSVExportSink:
    """Write rows to CSV bytes."""

    media_type = "text/csv"

    def __init__(self, delimiter: str = ",", encoding: str = "utf-8"):
        self.delimiter = delimiter
        self.encoding = encoding

    def _cell(self, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (dict, list)):
            return json.dumps(value, default=str)
        return value

    def export(
        self,
        rows: Sequence[Dict[str, Any]],
        columns: Optional[List[str]] = None,
        name: str = "export",
    ) -> ExportArtifact:
        """
        Render rows as CSV.

        Args:
            rows: Row records in the order to write
            columns: Header order (inferred from rows when omitted)
            name: Base filename without extension

        Returns:
            ExportArtifact with CSV bytes and content hash
        """
        columns = list(columns) if columns else infer_columns(rows)

        buffer = io.StringIO()
        writer = csv.DictWriter(
            buffer,
            fieldnames=columns,
            delimiter=self.delimiter,
            extrasaction="ignore",
            lineterminator="\n",
        )
        writer.writeheader()
        for row in rows:
            writer.writerow({column: self._cell(row.get(column)) for column in columns})

        content = buffer.getvalue().encode(self.encoding)
        return ExportArtifact(
            content=content,
            media_type=self.media_type,
            filename=f"{name}.csv",
            row_count=len(rows),
            sha256=hashlib.sha256(content).hexdigest(),
        )
