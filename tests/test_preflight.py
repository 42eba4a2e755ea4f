"""
Tests for the pre-sync checks (store check disabled: no EDS in CI).
"""

import dataclasses

from rich.console import Console

from ics_calendar_sync.db import StateDatabase
from ics_calendar_sync.preflight import run_preflight_checks


def _console() -> Console:
    return Console(record=True, width=120)


def test_fresh_setup_passes(sync_config):
    assert run_preflight_checks(sync_config, _console(), check_store=False)


def test_existing_healthy_database_passes(sync_config, db_path):
    with StateDatabase(db_path):
        pass
    assert run_preflight_checks(sync_config, _console(), check_store=False)


def test_bad_url_is_reported(sync_config):
    console = _console()
    config = dataclasses.replace(sync_config, source_url="not-a-url")

    assert not run_preflight_checks(config, console, check_store=False)
    assert "Feed URL" in console.export_text()


def test_corrupt_database_is_reported(sync_config, db_path):
    db_path.write_bytes(b"this is not a sqlite database" * 200)
    console = _console()

    assert not run_preflight_checks(sync_config, console, check_store=False)
    assert "State database" in console.export_text()
