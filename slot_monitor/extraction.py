"""
Slot marker families and normalization into AppointmentSlot records.

Разметка сайта записи со временем меняется, поэтому маркеры слотов
описаны упорядоченным списком «семейств»: движок пробует их по очереди
и запоминает, какое сработало.
"""

from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Iterable, List, Optional, Sequence

from .driver import PageDriver
from .models import AppointmentSlot, OfficeCandidate

logger = logging.getLogger(__name__)


UNAVAILABLE_CLASSES = frozenset({"disabled", "unavailable"})

TIME_RE = re.compile(r"\d{1,2}:\d{2}(?::\d{2})?\s*(?:[AaPp]\.?[Mm]\.?)?")

TIME_FORMATS = ("%I:%M %p", "%I:%M%p", "%I:%M:%S %p", "%H:%M", "%H:%M:%S")
DATE_FORMATS = ("%Y-%m-%d", "%m/%d/%Y", "%m-%d-%Y", "%B %d, %Y", "%b %d, %Y")
DATETIME_FORMATS = (
    "%m/%d/%Y %I:%M:%S %p",
    "%m/%d/%Y %I:%M %p",
    "%m/%d/%Y %H:%M:%S",
    "%m/%d/%Y %H:%M",
)


def parse_time(raw: str | None) -> Optional[dt.time]:
    if not raw:
        return None
    match = TIME_RE.search(raw)
    if not match:
        return None
    value = match.group(0).replace(".", "").upper().strip()
    for fmt in TIME_FORMATS:
        try:
            return dt.datetime.strptime(value, fmt).time()
        except ValueError:
            continue
    return None


def parse_date(raw: str | None) -> Optional[dt.date]:
    if not raw:
        return None
    value = raw.strip()
    for fmt in DATE_FORMATS:
        try:
            return dt.datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    parsed = parse_datetime(value)
    return parsed.date() if parsed else None


def parse_datetime(raw: str | None) -> Optional[dt.datetime]:
    if not raw:
        return None
    value = raw.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        return dt.datetime.fromisoformat(value)
    except ValueError:
        pass
    for fmt in DATETIME_FORMATS:
        try:
            return dt.datetime.strptime(value, fmt)
        except ValueError:
            continue
    return None


@dataclass
class RawMarker:
    """Text, classes and selected attributes read from one marker element."""

    text: str
    classes: frozenset[str] = frozenset()
    attributes: dict[str, Optional[str]] = field(default_factory=dict)

    @property
    def is_unavailable(self) -> bool:
        if self.classes & UNAVAILABLE_CLASSES:
            return True
        if (self.attributes.get("aria-disabled") or "").lower() == "true":
            return True
        return self.attributes.get("disabled") is not None


SlotParts = tuple[dt.date, dt.time]


@dataclass(frozen=True)
class MarkerFamily:
    """A tagged probe: selector, attributes to read and a parser for date/time."""

    name: str
    selector: str
    attributes: Sequence[str]
    parse: Callable[[RawMarker, dt.datetime], Optional[SlotParts]]


def _parse_primary(marker: RawMarker, discovered_at: dt.datetime) -> Optional[SlotParts]:
    # Старая разметка: время текстом, дата в data-date (или сегодняшняя)
    slot_time = parse_time(marker.attributes.get("data-time")) or parse_time(marker.text)
    if slot_time is None:
        return None
    slot_date = parse_date(marker.attributes.get("data-date")) or discovered_at.date()
    return slot_date, slot_time


def _parse_secondary(marker: RawMarker, discovered_at: dt.datetime) -> Optional[SlotParts]:
    moment = parse_datetime(marker.attributes.get("data-datetime"))
    if moment is None:
        return None
    return moment.date(), parse_time(marker.text) or moment.time().replace(microsecond=0)


COMMON_ATTRIBUTES = ("class", "aria-disabled", "disabled")

PrimaryMarkerFamily = MarkerFamily(
    name="primary",
    selector=".appointment-slot",
    attributes=COMMON_ATTRIBUTES + ("data-date", "data-time"),
    parse=_parse_primary,
)

SecondaryMarkerFamily = MarkerFamily(
    name="secondary",
    selector=(
        ".ServiceAppointmentDateTime[data-datetime], "
        ".DateTimeGrouping-Container .ServiceAppointmentDateTime"
    ),
    attributes=COMMON_ATTRIBUTES + ("data-datetime",),
    parse=_parse_secondary,
)

DEFAULT_FAMILIES: tuple[MarkerFamily, ...] = (PrimaryMarkerFamily, SecondaryMarkerFamily)


@dataclass
class ExtractionResult:
    slots: List[AppointmentSlot]
    family: Optional[str] = None
    markers_found: int = 0


def dedupe_slots(slots: Iterable[AppointmentSlot]) -> List[AppointmentSlot]:
    """Drop repeated (location_id, date, time), keeping the first occurrence."""
    seen: set[tuple[str, dt.date, dt.time]] = set()
    unique: List[AppointmentSlot] = []
    for slot in slots:
        if slot.identity in seen:
            continue
        seen.add(slot.identity)
        unique.append(slot)
    return unique


class ExtractionAdapter:
    """Turns raw marker reads into canonical, deduplicated slots."""

    def __init__(self, families: Sequence[MarkerFamily] = DEFAULT_FAMILIES) -> None:
        if not families:
            raise ValueError("at least one marker family is required")
        self.families = tuple(families)

    @property
    def any_marker_selector(self) -> str:
        return ", ".join(f.selector for f in self.families)

    def normalize(
        self,
        family: MarkerFamily,
        markers: Iterable[RawMarker],
        office: OfficeCandidate,
        discovered_at: dt.datetime,
    ) -> List[AppointmentSlot]:
        slots: List[AppointmentSlot] = []
        for marker in markers:
            if marker.is_unavailable:
                continue
            parts = family.parse(marker, discovered_at)
            if parts is None:
                continue
            slot_date, slot_time = parts
            slots.append(
                AppointmentSlot(
                    location_id=office.external_id,
                    location_name=office.display_name,
                    date=slot_date,
                    time=slot_time,
                    raw_label=marker.text.strip(),
                    discovered_at=discovered_at,
                )
            )
        return dedupe_slots(slots)

    async def read_markers(self, page: PageDriver, family: MarkerFamily) -> List[RawMarker]:
        markers: List[RawMarker] = []
        for element in await page.find_elements(family.selector):
            attributes = {name: await element.get_attribute(name) for name in family.attributes}
            classes = frozenset((attributes.get("class") or "").split())
            markers.append(RawMarker(text=await element.text(), classes=classes, attributes=attributes))
        return markers

    async def extract(
        self,
        page: PageDriver,
        office: OfficeCandidate,
        discovered_at: dt.datetime,
    ) -> ExtractionResult:
        """Try each family in order; the first one yielding slots wins."""
        total_markers = 0
        for family in self.families:
            markers = await self.read_markers(page, family)
            total_markers += len(markers)
            slots = self.normalize(family, markers, office, discovered_at)
            logger.debug(
                "Family %s: %s markers, %s slots at %s",
                family.name,
                len(markers),
                len(slots),
                office.display_name,
            )
            if slots:
                return ExtractionResult(slots=slots, family=family.name, markers_found=len(markers))
        return ExtractionResult(slots=[], family=None, markers_found=total_markers)


__all__ = [
    "RawMarker",
    "MarkerFamily",
    "PrimaryMarkerFamily",
    "SecondaryMarkerFamily",
    "DEFAULT_FAMILIES",
    "ExtractionResult",
    "ExtractionAdapter",
    "dedupe_slots",
    "parse_time",
    "parse_date",
    "parse_datetime",
]
