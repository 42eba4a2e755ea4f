"""
Per-event apply loop: create, update, marker migration and orphan removal.
"""

from datetime import datetime
from datetime import timezone

from ics_calendar_sync.db import StateDatabase
from ics_calendar_sync.mapper import EventMapper
from ics_calendar_sync.mapper import has_marker
from ics_calendar_sync.models import AccessDeniedError
from ics_calendar_sync.models import CalendarEvent
from ics_calendar_sync.models import CalendarSyncError
from ics_calendar_sync.models import EntryNotFoundError
from ics_calendar_sync.models import NoWritableCalendarError
from ics_calendar_sync.models import StateStoreError
from ics_calendar_sync.models import StoreEntry
from ics_calendar_sync.models import SyncConfig
from ics_calendar_sync.models import SyncedEventRecord
from ics_calendar_sync.models import SyncResult
from ics_calendar_sync.store import CalendarStore
from ics_calendar_sync.sync.resolver import EventResolver
from ics_calendar_sync.sync.resolver import Resolution
from ics_calendar_sync.sync.utils import compute_hash

# Errors after which nothing else in the run can succeed.
FATAL_ERRORS = (AccessDeniedError, NoWritableCalendarError, StateStoreError)


def _ledger_row(
    event: CalendarEvent, stable_id: str, local_id: str | None, content_hash: str
) -> SyncedEventRecord:
    return SyncedEventRecord(
        source_uid=event.uid,
        store_item_id=stable_id,
        store_local_id=local_id,
        content_hash=content_hash,
        sequence=event.sequence,
        last_modified=event.last_modified,
        synced_at=datetime.now(timezone.utc),
        raw_source_data=event.raw_text,
    )


def _create(
    config: SyncConfig,
    logger,
    event: CalendarEvent,
    draft: StoreEntry,
    content_hash: str,
    calendar_ref: str,
    store: CalendarStore,
    state_db: StateDatabase,
    resolver: EventResolver,
):
    """Create the entry, then read it back for the store-assigned local id."""
    if config.dry_run:
        logger.info(f"[DRY RUN] Would CREATE event: {event.uid} ({event.display_title})")
        return

    stable_id = store.create(draft, calendar_ref)
    created = store.find_by_stable_id(stable_id)
    local_id = created.local_id if created else None
    state_db.upsert_record(_ledger_row(event, stable_id, local_id, content_hash))
    resolver.claim(stable_id)
    logger.debug(f"Created event {event.uid} as {stable_id}")


def _update(
    config: SyncConfig,
    logger,
    event: CalendarEvent,
    draft: StoreEntry,
    content_hash: str,
    entry: StoreEntry,
    store: CalendarStore,
    state_db: StateDatabase,
    reason: str,
):
    if config.dry_run:
        logger.info(f"[DRY RUN] Would UPDATE event: {event.uid} ({reason})")
        return

    store.update(entry.stable_id, draft)
    state_db.upsert_record(_ledger_row(event, entry.stable_id, entry.local_id, content_hash))
    logger.debug(f"Updated event {event.uid} ({reason})")


def _process_tracked(
    config: SyncConfig,
    result: SyncResult,
    logger,
    event: CalendarEvent,
    record: SyncedEventRecord,
    calendar_ref: str,
    store: CalendarStore,
    state_db: StateDatabase,
    resolver: EventResolver,
    mapper: EventMapper,
):
    """Apply an event that already has a ledger row."""
    content_hash = compute_hash(event)
    changed = content_hash != record.content_hash or event.sequence > record.sequence
    resolution: Resolution | None = resolver.resolve(event, record)
    draft = mapper.to_entry(event, calendar_ref)

    if resolution is None:
        if changed:
            logger.info(f"Recreating: {event.display_title} (entry no longer found)")
            _create(config, logger, event, draft, content_hash, calendar_ref,
                    store, state_db, resolver)
            result.updated += 1
        else:
            # An unchanged event we cannot relocate is left alone rather
            # than risk a duplicate.
            logger.warning(
                f"Entry for unchanged event {event.uid} not found in calendar; skipping"
            )
            result.unchanged += 1
        return

    entry = resolution.entry
    resolver.claim(entry.stable_id)

    if changed:
        logger.info(f"Updating: {event.display_title}")
        _update(config, logger, event, draft, content_hash, entry, store, state_db, "content changed")
        result.updated += 1
        return

    if not has_marker(entry.notes, event.uid):
        logger.info(f"Migrating: {event.display_title} (adding sync marker)")
        _update(config, logger, event, draft, content_hash, entry, store, state_db, "marker migration")
        result.updated += 1
        return

    if resolution.used_fallback and not config.dry_run:
        logger.debug(
            f"Re-stamping identifiers for {event.uid} (resolved at tier {resolution.tier.value})"
        )
        state_db.update_identifiers(event.uid, entry.stable_id, entry.local_id)
    result.unchanged += 1


def _process_new(
    config: SyncConfig,
    result: SyncResult,
    logger,
    event: CalendarEvent,
    calendar_ref: str,
    store: CalendarStore,
    state_db: StateDatabase,
    resolver: EventResolver,
    mapper: EventMapper,
):
    """Apply an event with no ledger row, adopting a matching entry if one exists."""
    content_hash = compute_hash(event)
    draft = mapper.to_entry(event, calendar_ref)
    resolution = resolver.resolve(event, None)

    if resolution is not None:
        entry = resolution.entry
        resolver.claim(entry.stable_id)
        logger.info(f"Adopting existing entry for: {event.display_title}")
        _update(config, logger, event, draft, content_hash, entry, store, state_db, "adopted")
        result.updated += 1
        return

    logger.info(f"Creating: {event.display_title}")
    _create(config, logger, event, draft, content_hash, calendar_ref, store, state_db, resolver)
    result.created += 1


def apply_events(
    config: SyncConfig,
    result: SyncResult,
    logger,
    events: list[CalendarEvent],
    ledger: dict[str, SyncedEventRecord],
    calendar_ref: str,
    store: CalendarStore,
    state_db: StateDatabase,
    resolver: EventResolver,
    mapper: EventMapper,
):
    """Create/update every incoming event, one at a time, in feed order."""
    for event in events:
        record = ledger.get(event.uid)
        operation = "update" if record else "create"
        try:
            if record is not None:
                _process_tracked(config, result, logger, event, record, calendar_ref,
                                 store, state_db, resolver, mapper)
            else:
                _process_new(config, result, logger, event, calendar_ref,
                             store, state_db, resolver, mapper)
        except FATAL_ERRORS:
            raise
        except CalendarSyncError as e:
            logger.error(f"Failed to {operation} event {event.uid}: {e}")
            result.add_error(event.uid, operation, str(e))


def remove_orphans(
    config: SyncConfig,
    result: SyncResult,
    logger,
    orphans: list[SyncedEventRecord],
    store: CalendarStore,
    state_db: StateDatabase,
    resolver: EventResolver,
):
    """Delete entries whose UID left the feed.

    An entry that is already gone counts as deleted. Any other store failure
    keeps the ledger row so the next run retries.
    """
    for record in orphans:
        if not config.delete_orphans:
            logger.debug(f"Keeping orphan {record.source_uid} (orphan deletion disabled)")
            result.unchanged += 1
            continue

        try:
            entry = resolver.locate_for_delete(record)
            if config.dry_run:
                logger.info(f"[DRY RUN] Would DELETE event: {record.source_uid}")
                result.deleted += 1
                continue

            logger.info(f"Deleting orphan: {record.source_uid}")
            if entry is not None:
                try:
                    store.delete(entry.stable_id)
                except EntryNotFoundError:
                    logger.debug(f"Entry for {record.source_uid} already gone")
            else:
                logger.debug(f"No calendar entry found for orphan {record.source_uid}")
            state_db.delete(record.source_uid)
            result.deleted += 1
        except FATAL_ERRORS:
            raise
        except CalendarSyncError as e:
            logger.error(f"Failed to delete orphan {record.source_uid}: {e}")
            result.add_error(record.source_uid, "delete", str(e))
