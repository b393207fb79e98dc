"""Mandatory Report: capture flow for minors disclosing abuse.

Components:
- capture.py: Trigger, capture guard, submit/skip resolution
- report_repository.py: Report storage (in-memory / PostgreSQL)
- handler.py: Form submission endpoint
"""

from .capture import (
    CAPTURE_TTL,
    CaptureGuard,
    CaptureResult,
    MandatoryReportFlow,
    MandatoryReportRecord,
    ReportFields,
    ReportResolution,
)
from .report_repository import (
    InMemoryReportRepository,
    PostgresReportRepository,
    ReportRepository,
)

__all__ = [
    "CAPTURE_TTL",
    "CaptureGuard",
    "CaptureResult",
    "MandatoryReportFlow",
    "MandatoryReportRecord",
    "ReportFields",
    "ReportResolution",
    "InMemoryReportRepository",
    "PostgresReportRepository",
    "ReportRepository",
]
