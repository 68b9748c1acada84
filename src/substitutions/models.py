"""Pydantic models for substitution data, cache files and read views.

All data structures use Pydantic v2 for validation, serialization, and type safety.
On-disk and read-view JSON uses the monitor's German keys (kurs, stunde, ...)
and camelCase field names; Python code uses the English attribute names.
"""

from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable

from pydantic import BaseModel, ConfigDict, Field, field_validator


class SubstitutionEntry(BaseModel):
    """A single row of the substitution monitor table.

    Columns from the WebUntis monitor row (td index in parentheses):
    Klasse (0), Stunde (2), Raum (3), Lehrer (4), Art (5), Text (6).
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    course: str = Field(default="", alias="kurs")  # "10A"
    period: str = Field(default="", alias="stunde")  # "3" or "3 - 4"
    room: str = Field(default="", alias="raum")  # "R12"
    teacher: str = Field(default="", alias="lehrer")  # "Schmidt"
    type: str = Field(default="", alias="typ")  # "Vertretung", "Entfall"
    note: str = Field(default="", alias="notizen")

    @field_validator("*", mode="before")
    @classmethod
    def _blank_tolerant(cls, value: Any) -> str:
        if value is None:
            return ""
        return str(value).strip()


class Readiness(str, Enum):
    """What the monitor page showed when content detection finished."""

    ROWS = "rows"
    EMPTY_TABLE = "empty_table"
    EMPTY_INDICATOR = "empty_indicator"
    TIMEOUT = "timeout"


class FetchResult(BaseModel):
    """Raw result of rendering one monitor view."""

    rows: list[SubstitutionEntry] = Field(default_factory=list)
    date_label: str | None = None  # "Freitag, 19.12.2025"
    readiness: Readiness = Readiness.ROWS


class RecordFile(BaseModel):
    """Body of a temp_/data_ record file as found on disk."""

    model_config = ConfigDict(populate_by_name=True)

    data: list[SubstitutionEntry] = Field(default_factory=list)
    courses: list[str] = Field(default_factory=list)
    date_text: str | None = Field(default=None, alias="dateText")
    scraped_at: datetime | None = Field(default=None, alias="scrapedAt")

    @field_validator("data", "courses", mode="before")
    @classmethod
    def _null_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value


class ScrapedRecord(BaseModel):
    """One day's substitution data, immutable once written."""

    model_config = ConfigDict(frozen=True)

    rows: tuple[SubstitutionEntry, ...] = ()
    courses: tuple[str, ...] = ()
    date_text: str | None = None
    scraped_at: datetime | None = None

    @classmethod
    def from_rows(
        cls,
        rows: Iterable[SubstitutionEntry],
        date_text: str | None,
        scraped_at: datetime | None = None,
    ) -> "ScrapedRecord":
        """Build a record, dropping rows without a course.

        Courses keep their first-seen order.
        """
        kept = tuple(row for row in rows if row.course)
        courses = tuple(dict.fromkeys(row.course for row in kept))
        return cls(rows=kept, courses=courses, date_text=date_text, scraped_at=scraped_at)

    @classmethod
    def empty(cls) -> "ScrapedRecord":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.rows

    def to_file_payload(self) -> dict[str, Any]:
        return {
            "data": [row.model_dump(by_alias=True) for row in self.rows],
            "courses": list(self.courses),
            "dateText": self.date_text,
            "scrapedAt": self.scraped_at.isoformat() if self.scraped_at else None,
        }

    @classmethod
    def from_file_payload(cls, payload: dict[str, Any]) -> "ScrapedRecord":
        """Load a cache file body. Older files may lack dateText/scrapedAt.

        Raises:
            ValidationError: The body does not have the record file shape.
        """
        body = RecordFile.model_validate(payload)
        stored_courses = [c.strip() for c in body.courses if c.strip()]
        record = cls.from_rows(body.data, body.date_text, body.scraped_at)
        if stored_courses:
            record = record.model_copy(
                update={"courses": tuple(dict.fromkeys(stored_courses))}
            )
        return record


class CacheIndexEntry(BaseModel):
    """Index entry pointing from an actual date to its live cache file."""

    model_config = ConfigDict(populate_by_name=True)

    actual_date: date = Field(alias="actualDate")
    date_text: str | None = Field(default=None, alias="dateText")
    filename: str  # "temp_2025-12-19.json"
    scraped_at: datetime | None = Field(default=None, alias="scrapedAt")


class CacheIndex(BaseModel):
    """Body of index.json."""

    model_config = ConfigDict(populate_by_name=True)

    entries: dict[str, CacheIndexEntry] = Field(default_factory=dict, alias="index")
    last_updated: datetime | None = Field(default=None, alias="lastUpdated")


class CacheRecordView(BaseModel):
    """One day as served to the read API."""

    model_config = ConfigDict(populate_by_name=True)

    day: date = Field(alias="date")
    data: list[SubstitutionEntry] = Field(default_factory=list)
    courses: list[str] = Field(default_factory=list)
    date_text: str | None = Field(default=None, alias="dateText")

    @classmethod
    def from_record(cls, day: date, record: ScrapedRecord) -> "CacheRecordView":
        return cls(
            day=day,
            data=list(record.rows),
            courses=list(record.courses),
            date_text=record.date_text,
        )


class WindowDate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    day: date = Field(alias="date")
    date_text: str | None = Field(default=None, alias="dateText")


class WindowView(BaseModel):
    """All retained days at once."""

    entries: list[CacheRecordView] = Field(default_factory=list)
    dates: list[WindowDate] = Field(default_factory=list)


class SlotStatus(str, Enum):
    STORED = "stored"
    UNKEYED = "unkeyed"
    FAILED = "failed"


class SlotOutcome(BaseModel):
    """What happened to one window slot during a refresh run."""

    slot: int
    url: str
    status: SlotStatus
    actual_date: date | None = None
    rows: int = 0
    readiness: Readiness | None = None
    error: str | None = None


class RefreshReport(BaseModel):
    """Result of one refresh run, shared by every caller attached to it."""

    reference_day: date
    window: list[date]
    slots: list[SlotOutcome] = Field(default_factory=list)
    evicted: list[date] = Field(default_factory=list)
    started_at: datetime
    finished_at: datetime | None = None

    @property
    def stored_dates(self) -> list[date]:
        return [s.actual_date for s in self.slots if s.status is SlotStatus.STORED and s.actual_date]
