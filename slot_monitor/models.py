"""
Pydantic models for appointment monitoring domain.

Pydantic-модели для слотов, сессий мониторинга и статусов.
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Iterable, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator


class ErrorKind(str, Enum):
    """Failure class used to pick a recovery action."""

    BROWSER_FAULT = "transient-browser-fault"
    NETWORK = "transient-network"
    FATAL = "fatal"


class AppointmentSlot(BaseModel):
    """Single appointment opportunity at one office."""

    location_id: str
    location_name: str
    date: dt.date
    time: dt.time
    raw_label: str
    discovered_at: dt.datetime

    @property
    def identity(self) -> tuple[str, dt.date, dt.time]:
        return self.location_id, self.date, self.time


class OfficeCandidate(BaseModel):
    """Selectable office discovered on the current booking page."""

    external_id: str
    display_name: str


class DateRange(BaseModel):
    start: dt.date
    end: dt.date

    @model_validator(mode="after")
    def _check_order(self) -> "DateRange":
        if self.end < self.start:
            raise ValueError("date range end must not be before start")
        return self

    def __contains__(self, value: dt.date) -> bool:
        return self.start <= value <= self.end


class TimeWindow(BaseModel):
    start: dt.time
    end: dt.time

    @model_validator(mode="after")
    def _check_order(self) -> "TimeWindow":
        if self.end < self.start:
            raise ValueError("time window end must not be before start")
        return self

    def __contains__(self, value: dt.time) -> bool:
        return self.start <= value <= self.end


class SessionPreferences(BaseModel):
    """Optional date/time filters for a monitoring session."""

    date_range: Optional[DateRange] = None
    time_window: Optional[TimeWindow] = None

    def matches(self, slot: AppointmentSlot) -> bool:
        if self.date_range and slot.date not in self.date_range:
            return False
        if self.time_window and slot.time not in self.time_window:
            return False
        return True

    def apply(self, slots: Iterable[AppointmentSlot]) -> List[AppointmentSlot]:
        return [slot for slot in slots if self.matches(slot)]


class MonitoringSession(BaseModel):
    """One monitoring configuration tracked across cycles."""

    session_id: str
    target_url: str
    location_names: List[str]
    preferences: SessionPreferences = Field(default_factory=SessionPreferences)
    started_at: dt.datetime
    last_checked_at: Optional[dt.datetime] = None
    last_success_at: Optional[dt.datetime] = None
    last_result: List[AppointmentSlot] = Field(default_factory=list)
    last_error: Optional[str] = None
    consecutive_failures: int = 0
    checks_count: int = 0


class AttemptRecord(BaseModel):
    """One attempt made by RetryPolicy. kind=None means the attempt succeeded."""

    label: str
    attempt: int
    kind: Optional[ErrorKind] = None
    error: Optional[str] = None
    delay: float = 0.0
    at: dt.datetime


class SessionStatus(BaseModel):
    session_id: str
    locations_count: int
    started_at: dt.datetime
    last_checked_at: Optional[dt.datetime] = None
    last_success_at: Optional[dt.datetime] = None
    slots_found: int = 0
    last_error: Optional[str] = None
    consecutive_failures: int = 0

    @classmethod
    def from_session(cls, session: MonitoringSession) -> "SessionStatus":
        return cls(
            session_id=session.session_id,
            locations_count=len(session.location_names),
            started_at=session.started_at,
            last_checked_at=session.last_checked_at,
            last_success_at=session.last_success_at,
            slots_found=len(session.last_result),
            last_error=session.last_error,
            consecutive_failures=session.consecutive_failures,
        )


class BrowserHealth(BaseModel):
    browser_ok: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None


class HealthStatus(BaseModel):
    status: Literal["healthy", "unhealthy"]
    browser_ok: bool
    active_sessions: int
    last_latency_ms: Optional[float] = None
    error: Optional[str] = None
    checked_at: dt.datetime


class CycleReport(BaseModel):
    started_at: dt.datetime
    finished_at: Optional[dt.datetime] = None
    processed: int = 0
    succeeded: int = 0
    failed: int = 0


__all__ = [
    "ErrorKind",
    "AppointmentSlot",
    "OfficeCandidate",
    "DateRange",
    "TimeWindow",
    "SessionPreferences",
    "MonitoringSession",
    "AttemptRecord",
    "SessionStatus",
    "BrowserHealth",
    "HealthStatus",
    "CycleReport",
]
