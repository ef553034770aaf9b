"""
Export Module - Black Box Interface

Purpose: Turn retrieved result rows into a downloadable tabular artifact
Interface: ExportSink.export(rows, columns) -> ExportArtifact
Hidden: File format, encoding, value rendering

Consumed after list_rows; the caller decides when to tear the channel down.
"""

from .csv_sink import CSVExportSink, ExportArtifact, ExportSink, infer_columns

__all__ = ["CSVExportSink", "ExportArtifact", "ExportSink", "infer_columns"]
