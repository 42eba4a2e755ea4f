"""
Unit tests for StateDatabase: ledger upserts, run history and metadata.
"""

import sqlite3

import pytest

from ics_calendar_sync.db import StateDatabase
from ics_calendar_sync.db import check_integrity_at
from ics_calendar_sync.models import RunStatus
from ics_calendar_sync.models import StateStoreError
from ics_calendar_sync.models import SyncedEventRecord
from ics_calendar_sync.models import SyncResult
from tests.conftest import utc


def _record(uid: str = "u1", item: str = "S1", content_hash: str = "h1", **kwargs):
    return SyncedEventRecord(
        source_uid=uid, store_item_id=item, content_hash=content_hash, **kwargs
    )


class TestLedger:
    def test_upsert_and_read_back(self, state_db):
        state_db.upsert_record(
            _record(
                store_local_id="L1",
                sequence=3,
                last_modified=utc(2024, 1, 2, 3, 4),
                raw_source_data="BEGIN:VEVENT",
            )
        )

        record = state_db.get_record("u1")
        assert record.store_item_id == "S1"
        assert record.store_local_id == "L1"
        assert record.sequence == 3
        assert record.last_modified == utc(2024, 1, 2, 3, 4)
        assert record.synced_at is not None
        assert record.raw_source_data == "BEGIN:VEVENT"

    def test_upsert_on_conflict_updates_not_errors(self, state_db):
        state_db.upsert_record(_record(item="S_old", content_hash="old"))
        state_db.upsert_record(_record(item="S_new", content_hash="new"))

        records = state_db.get_all_records()
        assert list(records) == ["u1"]
        assert records["u1"].store_item_id == "S_new"
        assert records["u1"].content_hash == "new"

    def test_update_hash_and_identifiers(self, state_db):
        state_db.upsert_record(_record())
        state_db.update_hash("u1", "h2", 4)
        state_db.update_identifiers("u1", "S9", "L9")

        record = state_db.get_record("u1")
        assert (record.content_hash, record.sequence) == ("h2", 4)
        assert (record.store_item_id, record.store_local_id) == ("S9", "L9")

    def test_delete_and_count(self, state_db):
        state_db.upsert_record(_record("u1"))
        state_db.upsert_record(_record("u2", item="S2"))
        assert state_db.count() == 2

        state_db.delete("u1")
        assert state_db.count() == 1
        assert state_db.get_record("u1") is None

    def test_missing_record(self, state_db):
        assert state_db.get_record("nope") is None
        assert state_db.get_all_records() == {}


class TestRunHistory:
    def test_run_starts_as_failed(self, state_db):
        run_id = state_db.start_run()
        run = state_db.recent_runs(1)[0]
        assert run.id == run_id
        assert run.status == RunStatus.FAILED
        assert run.completed_at is None

    def test_complete_run_records_counts(self, state_db):
        run_id = state_db.start_run()
        state_db.complete_run(
            run_id, RunStatus.PARTIAL, SyncResult(created=2, updated=1, deleted=3, unchanged=4), "x"
        )

        run = state_db.recent_runs(1)[0]
        assert run.status == RunStatus.PARTIAL
        assert (run.created, run.updated, run.deleted, run.unchanged) == (2, 1, 3, 4)
        assert run.error_message == "x"
        assert run.completed_at is not None

    def test_recent_runs_newest_first(self, state_db):
        ids = [state_db.start_run() for _ in range(3)]
        assert [run.id for run in state_db.recent_runs(10)] == list(reversed(ids))
        assert len(state_db.recent_runs(2)) == 2

    def test_last_successful_run(self, state_db):
        assert state_db.last_successful_run() is None
        ok = state_db.start_run()
        state_db.complete_run(ok, RunStatus.SUCCESS)
        failed = state_db.start_run()
        state_db.complete_run(failed, RunStatus.FAILED, error_message="boom")

        assert state_db.last_successful_run().id == ok


class TestMetadataAndMaintenance:
    def test_metadata_round_trip(self, state_db):
        assert state_db.get_metadata("last_sync_at") is None
        state_db.set_metadata("last_sync_at", "a")
        state_db.set_metadata("last_sync_at", "b")
        assert state_db.get_metadata("last_sync_at") == "b"

    def test_reset_clears_everything(self, state_db):
        state_db.upsert_record(_record())
        state_db.start_run()
        state_db.set_metadata("k", "v")

        state_db.reset()

        assert state_db.count() == 0
        assert state_db.recent_runs() == []
        assert state_db.get_metadata("k") is None

    def test_integrity(self, state_db, db_path):
        assert state_db.check_integrity()
        assert check_integrity_at(db_path)

    def test_integrity_of_missing_file(self, tmp_path):
        assert check_integrity_at(tmp_path / "missing.db")
        assert not (tmp_path / "missing.db").exists()

    def test_reopen_keeps_data(self, db_path):
        with StateDatabase(db_path) as db:
            db.upsert_record(_record())
        with StateDatabase(db_path) as db:
            assert db.count() == 1


class TestErrors:
    def test_closed_database_raises_state_error(self, db_path):
        db = StateDatabase(db_path)
        with pytest.raises(StateStoreError):
            db.count()

    def test_sqlite_errors_are_wrapped(self, state_db):
        state_db.conn.execute("DROP TABLE synced_events")
        with pytest.raises(StateStoreError) as exc:
            state_db.count()
        assert isinstance(exc.value.__cause__, sqlite3.Error)

    def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(StateStoreError):
            StateDatabase(blocker / "state.db").connect()
