from __future__ import annotations

import logging
import math
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any

from paddlesync.config_manager import ConfigManager
from paddlesync.errors import (
    FeedTooLargeError,
    FetchFailedError,
    IcalSyncError,
    InvalidURLError,
    MassDeletionBlockedError,
    NoUrlConfiguredError,
    TeamNotFoundError,
)
from paddlesync.event_store import EventStore
from paddlesync.feed_parser import parse_feed
from paddlesync.models import (
    SYNC_STATUS_ERROR,
    SYNC_STATUS_SUCCESS,
    SyncConfig,
    SyncLogEntry,
    SyncResult,
    Team,
    TeamSyncReport,
)
from paddlesync.reconciler import reconcile
from paddlesync.safe_fetch import safe_fetch
from paddlesync.url_policy import validate_url

logger = logging.getLogger(__name__)

MAX_HISTORY_PAGE_SIZE = 100


class SyncService:
    """Pulls a team's external calendar and merges it into the event store.

    Every call to ``sync_team_events`` appends exactly one sync log entry,
    whether it succeeds or fails. Failures are re-raised to the caller.
    """

    def __init__(self, config_manager: ConfigManager, event_store: EventStore) -> None:
        self.config_manager = config_manager
        self.event_store = event_store
        self._locks_guard = threading.Lock()
        self._team_locks: dict[str, threading.Lock] = {}

    def _team_lock(self, team_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._team_locks.get(team_id)
            if lock is None:
                lock = threading.Lock()
                self._team_locks[team_id] = lock
            return lock

    def sync_team_events(
        self,
        team_id: str,
        override_url: str | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        details: list[str] = []
        started_at = datetime.now(timezone.utc)
        logger.info("Starting iCal sync", extra={"team_id": team_id})
        try:
            team = self.event_store.get_team(team_id)
            if team is None:
                raise TeamNotFoundError(team_id)
        except Exception as exc:
            self._record_failure(team_id, exc, details)
            raise

        # Locks exist only for known teams.
        with self._team_lock(team.team_id):
            try:
                result = self._run(team, override_url, cancel_event, details)
            except Exception as exc:
                self._record_failure(team_id, exc, details)
                raise

            self.event_store.record_sync_log(
                SyncLogEntry(
                    team_id=team_id,
                    status=SYNC_STATUS_SUCCESS,
                    created_count=result.created,
                    updated_count=result.updated,
                    deleted_count=result.deleted,
                    details=result.details,
                )
            )
        duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
        logger.info(
            "iCal sync finished: %d created, %d updated, %d deleted in %d ms",
            result.created,
            result.updated,
            result.deleted,
            duration_ms,
            extra={"team_id": team_id},
        )
        return result

    def _run(
        self,
        team: Team,
        override_url: str | None,
        cancel_event: threading.Event | None,
        details: list[str],
    ) -> SyncResult:
        config = self.config_manager.load().sync
        url = (override_url or "").strip() or (team.ical_url or "").strip()
        if not url:
            raise NoUrlConfiguredError()
        if not validate_url(url):
            raise InvalidURLError(url)

        feed_text = self._download(url, config, cancel_event)
        parsed_events = parse_feed(feed_text)
        outcome = reconcile(
            self.event_store,
            team.team_id,
            parsed_events,
            batch_size=config.batch_size,
            bulk_delete_threshold=config.bulk_delete_threshold,
            min_events=config.safety_min_events,
            max_delete_ratio=config.safety_max_delete_ratio,
            details=details,
        )
        return SyncResult(
            created=outcome.created,
            updated=outcome.updated,
            deleted=outcome.deleted_count,
            details=outcome.details,
        )

    def _download(self, url: str, config: SyncConfig, cancel_event: threading.Event | None) -> str:
        max_bytes = config.max_feed_bytes
        with safe_fetch(
            url,
            timeout_seconds=config.fetch_timeout_seconds,
            cancel_event=cancel_event,
        ) as response:
            if not response.ok:
                raise FetchFailedError(response.status_code, response.reason)
            declared = response.content_length
            if declared is not None and declared > max_bytes:
                raise FeedTooLargeError(max_bytes)
            body = response.read(limit=max_bytes + 1)
            if len(body) > max_bytes:
                raise FeedTooLargeError(max_bytes)
            return response.decode(body)

    def _record_failure(self, team_id: str, exc: Exception, details: list[str]) -> None:
        message = str(exc) or type(exc).__name__
        if isinstance(exc, MassDeletionBlockedError):
            logger.warning("iCal sync stopped: %s", message, extra={"team_id": team_id})
        elif isinstance(exc, IcalSyncError):
            logger.error("iCal sync failed (%s): %s", exc.kind, message, extra={"team_id": team_id})
        else:
            logger.exception("iCal sync failed unexpectedly", extra={"team_id": team_id})
        try:
            self.event_store.record_sync_log(
                SyncLogEntry(
                    team_id=team_id,
                    status=SYNC_STATUS_ERROR,
                    error=message,
                    details=list(details),
                )
            )
        except sqlite3.Error:
            logger.exception("Could not record failed sync", extra={"team_id": team_id})

    def sync_all_teams(self) -> list[TeamSyncReport]:
        reports: list[TeamSyncReport] = []
        for team in self.event_store.list_teams_with_ical_url():
            try:
                result = self.sync_team_events(team.team_id)
            except Exception as exc:
                # Already logged and recorded; the remaining teams still sync.
                reports.append(
                    TeamSyncReport(
                        team_id=team.team_id,
                        team_name=team.name,
                        success=False,
                        error=str(exc) or type(exc).__name__,
                    )
                )
                continue
            reports.append(
                TeamSyncReport(team_id=team.team_id, team_name=team.name, success=True, result=result)
            )
        return reports

    def sync_history(self, team_id: str, page: int = 1, limit: int = 10) -> dict[str, Any]:
        page = max(1, int(page))
        limit = min(MAX_HISTORY_PAGE_SIZE, max(1, int(limit)))
        logs = self.event_store.list_sync_logs(team_id, limit=limit, offset=(page - 1) * limit)
        total = self.event_store.count_sync_logs(team_id)
        return {
            "data": [entry.to_dict() for entry in logs],
            "pagination": {
                "total": total,
                "page": page,
                "limit": limit,
                "total_pages": math.ceil(total / limit),
            },
        }
