"""
CalendarSynchronizer: thin orchestrator that delegates to sync submodules.
"""

import dataclasses
import logging
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from pathlib import Path

from ics_calendar_sync.db import StateDatabase
from ics_calendar_sync.fetcher import FeedFetcher
from ics_calendar_sync.fetcher import headers_from_environment
from ics_calendar_sync.mapper import EventMapper
from ics_calendar_sync.mapper import MappingConfig
from ics_calendar_sync.models import CalendarNotFoundError
from ics_calendar_sync.models import CalendarSyncError
from ics_calendar_sync.models import RunStatus
from ics_calendar_sync.models import SyncConfig
from ics_calendar_sync.models import SyncResult
from ics_calendar_sync.models import SyncRunRecord
from ics_calendar_sync.parser import ICSParser
from ics_calendar_sync.store import CalendarStore
from ics_calendar_sync.sync.delta import apply_events
from ics_calendar_sync.sync.delta import remove_orphans
from ics_calendar_sync.sync.resolver import EventResolver
from ics_calendar_sync.sync.utils import SyncLock
from ics_calendar_sync.sync.utils import deduplicate_events
from ics_calendar_sync.sync.utils import filter_by_window


def lock_path_for(state_db_path: Path) -> Path:
    state_db_path = Path(state_db_path)
    return state_db_path.with_name(state_db_path.name + ".lock")


@dataclass
class SyncStatus:
    source_url: str
    calendar_name: str
    tracked_events: int
    last_success: SyncRunRecord | None = None
    recent_runs: list[SyncRunRecord] = field(default_factory=list)
    last_sync_at: str | None = None


class CalendarSynchronizer:
    """Main synchronization engine."""

    def __init__(
        self,
        config: SyncConfig,
        store: CalendarStore | None = None,
        fetcher: FeedFetcher | None = None,
        parser: ICSParser | None = None,
    ):
        self.config = config
        self.logger = logging.getLogger(__name__)
        self._store = store
        self._fetcher = fetcher
        self.parser = parser or ICSParser()
        self.mapper = EventMapper(
            MappingConfig(
                summary_prefix=config.summary_prefix,
                sync_alarms=config.sync_alarms,
                include_source_info=config.include_source_info,
                source_url=config.source_url,
            )
        )

    @property
    def store(self) -> CalendarStore:
        if self._store is None:
            # Deferred so that everything but a real sync works without gi.
            from ics_calendar_sync.eds_store import EDSCalendarStore

            self.logger.info("Connecting to Evolution Data Server...")
            self._store = EDSCalendarStore()
        return self._store

    @property
    def fetcher(self) -> FeedFetcher:
        if self._fetcher is None:
            headers = headers_from_environment()
            headers.update(self.config.headers)
            self._fetcher = FeedFetcher(
                timeout=self.config.timeout,
                max_retries=self.config.max_retries,
                retry_delay=self.config.retry_delay,
                headers=headers,
                verify_ssl=self.config.verify_ssl,
            )
        return self._fetcher

    def run(self, dry_run: bool | None = None, full_resync: bool | None = None) -> SyncResult:
        """Execute one delta sync.

        Raises SyncInProgressError when another run holds the lock, and
        re-raises any error that stops the run before it completes.
        """
        config = dataclasses.replace(
            self.config,
            dry_run=self.config.dry_run if dry_run is None else dry_run,
            full_resync=self.config.full_resync if full_resync is None else full_resync,
        )

        with SyncLock(lock_path_for(config.state_db_path)):
            with StateDatabase(config.state_db_path) as state_db:
                if config.dry_run:
                    self.logger.info("[DRY RUN] No changes will be written")
                    return self._execute(config, state_db, SyncResult())

                run_id = state_db.start_run()
                result = SyncResult()
                try:
                    self._execute(config, state_db, result)
                except CalendarSyncError as e:
                    self.logger.error(f"Sync failed: {e}")
                    state_db.complete_run(run_id, RunStatus.FAILED, result, str(e))
                    raise

                status = RunStatus.PARTIAL if result.has_errors else RunStatus.SUCCESS
                error_message = result.errors[0].message if result.errors else None
                state_db.complete_run(run_id, status, result, error_message)
                state_db.set_metadata("last_sync_at", datetime.now(timezone.utc).isoformat())
                state_db.set_metadata("source_url", config.source_url)

        self.logger.info(
            f"Sync complete: {result.created} created, {result.updated} updated, "
            f"{result.deleted} deleted, {result.unchanged} unchanged"
        )
        if result.has_errors:
            self.logger.warning(f"{len(result.errors)} errors occurred during sync")
        return result

    def _execute(self, config: SyncConfig, state_db: StateDatabase, result: SyncResult) -> SyncResult:
        self.logger.info(f"Fetching ICS from {config.source_url}")
        content = self.fetcher.fetch(config.source_url)

        events = self.parser.parse(content)
        self.logger.info(f"Parsed {len(events)} events from ICS")
        if self.parser.diagnostics:
            self.logger.warning(f"Skipped {len(self.parser.diagnostics)} malformed events")

        filtered = filter_by_window(events, config.window_days_past, config.window_days_future)
        if len(filtered) != len(events):
            self.logger.info(f"Filtered to {len(filtered)} events within date window")
        incoming = deduplicate_events(filtered)

        if config.full_resync:
            self.logger.info("Full sync requested - ignoring existing state")
            ledger = {}
        else:
            ledger = state_db.get_all_records()
            self.logger.debug(f"Found {len(ledger)} events in sync state")

        calendar_ref = self._resolve_calendar(config)
        resolver = EventResolver(self.store, self.mapper, calendar_ref)
        args = (config, result, self.logger)

        apply_events(*args, incoming, ledger, calendar_ref, self.store, state_db, resolver, self.mapper)

        incoming_uids = {event.uid for event in incoming}
        orphans = [record for uid, record in ledger.items() if uid not in incoming_uids]
        remove_orphans(*args, orphans, self.store, state_db, resolver)
        return result

    def _resolve_calendar(self, config: SyncConfig) -> str | None:
        if not config.dry_run:
            return self.store.resolve_or_create_calendar(
                config.calendar_name, config.create_if_missing
            )
        try:
            return self.store.resolve_or_create_calendar(config.calendar_name, False)
        except CalendarNotFoundError:
            if not config.create_if_missing:
                raise
            self.logger.info(f"[DRY RUN] Would CREATE calendar: {config.calendar_name}")
            return None

    def get_status(self, history_limit: int = 5) -> SyncStatus:
        with StateDatabase(self.config.state_db_path) as state_db:
            return SyncStatus(
                source_url=self.config.source_url,
                calendar_name=self.config.calendar_name,
                tracked_events=state_db.count(),
                last_success=state_db.last_successful_run(),
                recent_runs=state_db.recent_runs(history_limit),
                last_sync_at=state_db.get_metadata("last_sync_at"),
            )

    def get_history(self, limit: int = 10) -> list[SyncRunRecord]:
        with StateDatabase(self.config.state_db_path) as state_db:
            return state_db.recent_runs(limit)

    def reset_state(self) -> None:
        """Forget every synced event and all history. Calendar entries are kept."""
        with SyncLock(lock_path_for(self.config.state_db_path)):
            with StateDatabase(self.config.state_db_path) as state_db:
                state_db.reset()
