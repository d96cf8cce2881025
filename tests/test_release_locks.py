"""
Tests for the stale lock release script.
"""

import time

import pytest

from scripts.release_locks import default_cutoff, main
from upcycle.core import config
from upcycle.core.db import init_db
from upcycle.core.records import ProjectStore


@pytest.fixture
def store(tmp_path, monkeypatch):
    path = str(tmp_path / "upcycle.db")
    monkeypatch.setattr(config, "DB_PATH", path)
    init_db(path)
    return ProjectStore(path)


def test_default_cutoff_covers_every_attempt(monkeypatch):
    monkeypatch.setattr(config, "GENERATION_TIMEOUT_SEC", 180.0)
    monkeypatch.setattr(config, "GENERATION_MAX_RETRIES", 2)
    monkeypatch.setattr(config, "GENERATION_BACKOFF_SEC", 3.0)

    # three attempts of 180s plus 3s and 6s of backoff
    assert default_cutoff() == pytest.approx(549.0)


def test_releases_only_old_locks(store, capsys):
    old = store.create("old")
    fresh = store.create("fresh")
    store.acquire_lock(old.id, "crashed")
    time.sleep(0.05)
    store.acquire_lock(fresh.id, "alive")

    assert main(["--older-than", "0.03"]) == 0

    assert store.get(old.id).generation_lock is False
    assert store.get(fresh.id).generation_lock is True
    assert "Released 1 stale generation locks" in capsys.readouterr().out


def test_negative_age_rejected(store, capsys):
    assert main(["--older-than", "-1"]) == 1
    assert "ERROR" in capsys.readouterr().out
