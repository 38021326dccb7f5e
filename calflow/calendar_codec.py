from __future__ import annotations

from typing import Any

from icalendar import Calendar as ICalendar

from calflow.errors import ParseFailed


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def parse_calendar(raw_data: str | bytes) -> ICalendar:
    raw_ical = _decode_raw_ical(raw_data)
    if not raw_ical.strip():
        raise ParseFailed("failed to parse source calendar (empty body)")
    try:
        calendar_obj = ICalendar.from_ical(raw_ical)
    except Exception as exc:
        raise ParseFailed(f"failed to parse source calendar ({exc})") from exc
    if getattr(calendar_obj, "name", "") != "VCALENDAR":
        raise ParseFailed("failed to parse source calendar (VCALENDAR missing)")
    return calendar_obj


def serialize_calendar(calendar_obj: ICalendar) -> str:
    return calendar_obj.to_ical().decode("utf-8")


def events(calendar_obj: ICalendar) -> list[Any]:
    return [component for component in calendar_obj.subcomponents if component.name == "VEVENT"]
