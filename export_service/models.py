"""Domain models for the export service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, field_validator, model_validator

DEFAULT_COLUMNS: List[str] = [
    "id",
    "name",
    "email",
    "signup_date",
    "country_code",
    "subscription_tier",
    "lifetime_value",
]


class ExportStatus(str, Enum):
    """State of an export job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({ExportStatus.COMPLETED, ExportStatus.CANCELLED, ExportStatus.FAILED})


class ExportFilter(BaseModel):
    """Row filters applied to the exported table. Unset filters match everything."""

    country_code: Optional[str] = None
    subscription_tier: Optional[str] = None
    min_ltv: Optional[float] = None


class ExportRequest(BaseModel):
    """Parameters accepted when an export is requested."""

    filters: ExportFilter = Field(default_factory=ExportFilter)
    columns: Optional[List[str]] = None
    delimiter: str = ","
    quote_char: str = '"'

    @field_validator("columns")
    @classmethod
    def _validate_columns(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        columns = [column.strip() for column in value if column.strip()]
        if not columns:
            return None
        unknown = [column for column in columns if column not in DEFAULT_COLUMNS]
        if unknown:
            raise ValueError(f"Unknown columns: {', '.join(unknown)}")
        return columns

    @model_validator(mode="after")
    def _validate_dialect(self) -> "ExportRequest":
        for name, char in (("delimiter", self.delimiter), ("quote_char", self.quote_char)):
            if len(char) != 1:
                raise ValueError(f"{name} must be a single character")
            if char in "\r\n":
                raise ValueError(f"{name} cannot be a line break")
        if self.delimiter == self.quote_char:
            raise ValueError("delimiter and quote_char must differ")
        return self


class ExportJob(BaseModel):
    """Persisted representation of an export job."""

    id: str
    status: ExportStatus = ExportStatus.PENDING
    filters: ExportFilter = Field(default_factory=ExportFilter)
    columns: Optional[List[str]] = None
    delimiter: str = ","
    quote_char: str = '"'
    file_path: str
    total_rows: int = 0
    processed_rows: int = 0
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None

    @property
    def selected_columns(self) -> List[str]:
        return list(self.columns) if self.columns else list(DEFAULT_COLUMNS)

    @property
    def percentage(self) -> int:
        if not self.total_rows:
            return 0
        return min(100, (self.processed_rows * 100) // self.total_rows)


class OutcomeKind(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class ExportOutcome:
    """Result of a single pipeline run."""

    kind: OutcomeKind
    rows_written: int = 0
    error: Optional[str] = None

    @classmethod
    def completed(cls, rows_written: int) -> "ExportOutcome":
        return cls(OutcomeKind.COMPLETED, rows_written=rows_written)

    @classmethod
    def cancelled(cls) -> "ExportOutcome":
        return cls(OutcomeKind.CANCELLED)

    @classmethod
    def failed(cls, error: str) -> "ExportOutcome":
        return cls(OutcomeKind.FAILED, error=error)


__all__ = [
    "DEFAULT_COLUMNS",
    "TERMINAL_STATUSES",
    "ExportStatus",
    "ExportFilter",
    "ExportRequest",
    "ExportJob",
    "ExportOutcome",
    "OutcomeKind",
]
