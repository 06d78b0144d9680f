from __future__ import annotations

import logging
from datetime import date
from typing import Any

from bs4 import BeautifulSoup
from icalendar import Calendar as ICalendar

from paddlesync.errors import FeedParseError
from paddlesync.models import ParsedFeedEvent, to_utc_millis

logger = logging.getLogger(__name__)


def _clean_title(value: Any) -> str:
    text = str(value or "")
    if "<" in text or "&" in text:
        text = BeautifulSoup(text, "html.parser").get_text()
    return text.strip()


def _component_start(component: Any) -> date | None:
    if component.get("DTSTART") is None:
        return None
    value = component.decoded("DTSTART")
    if isinstance(value, date):
        return value
    return None


def _to_feed_event(component: Any) -> ParsedFeedEvent | None:
    uid = str(component.get("UID", "") or "").strip()
    title = _clean_title(component.get("SUMMARY"))
    start = _component_start(component)
    if not uid or not title or start is None:
        return None
    return ParsedFeedEvent(uid=uid, title=title, start=to_utc_millis(start))


def parse_feed(raw_text: str) -> list[ParsedFeedEvent]:
    """Extract ``{uid, title, start}`` from every usable VEVENT in a feed.

    Events missing a summary, start or UID are skipped. When a UID repeats,
    the last occurrence in document order wins. A body that is not an
    iCalendar document at all raises ``FeedParseError``.
    """
    if not raw_text or not raw_text.strip():
        raise FeedParseError("iCal feed is empty")
    try:
        calendars = ICalendar.from_ical(raw_text, multiple=True)
    except Exception as exc:
        raise FeedParseError(f"Failed to parse iCal feed: {exc}") from exc
    if not calendars:
        raise FeedParseError("iCal feed contains no calendar")

    events: dict[str, ParsedFeedEvent] = {}
    skipped = 0
    for calendar_obj in calendars:
        for component in calendar_obj.walk("VEVENT"):
            try:
                event = _to_feed_event(component)
            except (ValueError, TypeError, KeyError) as exc:
                logger.debug("Skipping malformed VEVENT: %s", exc)
                event = None
            if event is None:
                skipped += 1
                continue
            events.pop(event.uid, None)
            events[event.uid] = event

    if skipped:
        logger.info("Skipped %d feed entries without summary, start or UID", skipped)
    return list(events.values())
