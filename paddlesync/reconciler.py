"""Diff a parsed feed against a team's managed events and apply the result.

Reconciliation runs in two phases. ``plan_reconciliation`` reads the store
outside any transaction, in chunks, and returns plain data.
``apply_reconciliation`` writes a precomputed plan inside one transaction.
``check_mass_deletion`` sits between the two so a blocked run writes nothing.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Iterator, Protocol, Sequence

from paddlesync.errors import MassDeletionBlockedError
from paddlesync.models import (
    DEFAULT_BATCH_SIZE,
    DEFAULT_BULK_DELETE_THRESHOLD,
    DEFAULT_SAFETY_MAX_DELETE_RATIO,
    DEFAULT_SAFETY_MIN_EVENTS,
    ManagedEvent,
    ParsedFeedEvent,
)

logger = logging.getLogger(__name__)

MAX_DETAIL_LINES = 50


class EventQueries(Protocol):
    def find_many(
        self,
        team_id: str,
        *,
        uids_in: Iterable[str] | None = None,
        uids_not_in: Iterable[str] | None = None,
    ) -> list[ManagedEvent]: ...

    def create_many(self, events: Iterable[ManagedEvent]) -> int: ...

    def update_many(self, events: Iterable[ManagedEvent]) -> int: ...

    def delete_many(self, team_id: str, event_ids: Iterable[str]) -> int: ...


class ReconcileStore(EventQueries, Protocol):
    def transaction(self) -> Any: ...


@dataclass
class ReconcilePlan:
    team_id: str
    to_create: list[ManagedEvent] = field(default_factory=list)
    to_update: list[ManagedEvent] = field(default_factory=list)
    to_delete: list[ManagedEvent] = field(default_factory=list)
    matched_count: int = 0

    @property
    def total_before(self) -> int:
        return self.matched_count + len(self.to_delete)


@dataclass
class ReconcileOutcome:
    created: int
    updated: int
    deleted_count: int
    details: list[str]


class DetailLog:
    """Audit lines capped at ``MAX_DETAIL_LINES`` plus one truncation marker."""

    def __init__(self, lines: list[str] | None = None, limit: int = MAX_DETAIL_LINES) -> None:
        self.lines = lines if lines is not None else []
        self.limit = limit
        self.overflow = 0

    def add(self, line: str) -> None:
        if len(self.lines) < self.limit:
            self.lines.append(line)
        else:
            self.overflow += 1

    def finish(self) -> list[str]:
        if self.overflow:
            self.lines.append(f"... and {self.overflow} more")
            self.overflow = 0
        return self.lines


def _chunked(items: Sequence[Any], size: int) -> Iterator[Sequence[Any]]:
    step = max(1, int(size))
    for index in range(0, len(items), step):
        yield items[index : index + step]


def _day(event: ManagedEvent) -> str:
    return event.start.date().isoformat()


def plan_reconciliation(
    store: EventQueries,
    team_id: str,
    parsed_events: Iterable[ParsedFeedEvent],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    bulk_delete_threshold: int = DEFAULT_BULK_DELETE_THRESHOLD,
) -> ReconcilePlan:
    feed: dict[str, ParsedFeedEvent] = {}
    for parsed in parsed_events:
        feed[parsed.uid] = parsed
    valid_uids = list(feed)

    existing: dict[str, ManagedEvent] = {}
    for chunk in _chunked(valid_uids, batch_size):
        for event in store.find_many(team_id, uids_in=chunk):
            existing[str(event.external_uid)] = event

    plan = ReconcilePlan(team_id=team_id, matched_count=len(existing))
    for uid, parsed in feed.items():
        current = existing.get(uid)
        if current is None:
            plan.to_create.append(
                ManagedEvent(
                    event_id="",
                    team_id=team_id,
                    title=parsed.title,
                    start=parsed.start,
                    external_uid=uid,
                )
            )
            continue
        if current.title != parsed.title or current.start != parsed.start:
            plan.to_update.append(
                ManagedEvent(
                    event_id=current.event_id,
                    team_id=team_id,
                    title=parsed.title,
                    start=parsed.start,
                    external_uid=uid,
                    event_type=current.event_type,
                    boat_size=current.boat_size,
                )
            )

    if len(valid_uids) > bulk_delete_threshold:
        uid_set = set(valid_uids)
        plan.to_delete = [event for event in store.find_many(team_id) if event.external_uid not in uid_set]
    else:
        plan.to_delete = store.find_many(team_id, uids_not_in=valid_uids)

    logger.info(
        "Reconcile plan for team %s: %d to create, %d to update, %d to delete (%d matched)",
        team_id,
        len(plan.to_create),
        len(plan.to_update),
        len(plan.to_delete),
        plan.matched_count,
    )
    return plan


def check_mass_deletion(
    plan: ReconcilePlan,
    *,
    min_events: int = DEFAULT_SAFETY_MIN_EVENTS,
    max_delete_ratio: float = DEFAULT_SAFETY_MAX_DELETE_RATIO,
) -> None:
    """Refuse plans that would delete more than ``max_delete_ratio`` of the matched events."""
    total_before = plan.total_before
    deleted_count = len(plan.to_delete)
    if total_before > min_events and deleted_count / total_before > max_delete_ratio:
        raise MassDeletionBlockedError(deleted_count, total_before)


def apply_reconciliation(
    store: ReconcileStore,
    team_id: str,
    plan: ReconcilePlan,
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    details: list[str] | None = None,
) -> ReconcileOutcome:
    """Write a plan in a single transaction.

    ``details`` is filled in place so a caller still sees the lines written
    before a failure.
    """
    detail_log = DetailLog(details)
    deleted_count = 0
    with store.transaction() as session:
        session.create_many(plan.to_create)
        for event in plan.to_create:
            detail_log.add(f'Created: "{event.title}" on {_day(event)}')

        session.update_many(plan.to_update)
        for event in plan.to_update:
            detail_log.add(f'Updated: "{event.title}" on {_day(event)}')

        for chunk in _chunked(plan.to_delete, batch_size):
            deleted_count += session.delete_many(team_id, [event.event_id for event in chunk])
        for event in plan.to_delete:
            detail_log.add(f'Deleted: "{event.title}" ({_day(event)})')
        detail_log.finish()

    return ReconcileOutcome(
        created=len(plan.to_create),
        updated=len(plan.to_update),
        deleted_count=deleted_count,
        details=detail_log.lines,
    )


def reconcile(
    store: ReconcileStore,
    team_id: str,
    parsed_events: Iterable[ParsedFeedEvent],
    *,
    batch_size: int = DEFAULT_BATCH_SIZE,
    bulk_delete_threshold: int = DEFAULT_BULK_DELETE_THRESHOLD,
    min_events: int = DEFAULT_SAFETY_MIN_EVENTS,
    max_delete_ratio: float = DEFAULT_SAFETY_MAX_DELETE_RATIO,
    details: list[str] | None = None,
) -> ReconcileOutcome:
    plan = plan_reconciliation(
        store,
        team_id,
        parsed_events,
        batch_size=batch_size,
        bulk_delete_threshold=bulk_delete_threshold,
    )
    check_mass_deletion(plan, min_events=min_events, max_delete_ratio=max_delete_ratio)
    return apply_reconciliation(store, team_id, plan, batch_size=batch_size, details=details)
