"""
Tests for the project record store: lifecycle, locks and votes.
"""

from concurrent.futures import ThreadPoolExecutor
import threading
import time

import pytest

from upcycle.core.errors import InputError, NotFoundError
from upcycle.core.records import STATUS_COMPLETED, STATUS_FAILED, STATUS_GENERATING


def test_create_starts_generating_and_unlocked(store):
    record = store.create("Glass Lantern", "3 mason jars", ["glass"], [0.1, 0.2])

    stored = store.get(record.id)

    assert stored.status == STATUS_GENERATING
    assert stored.generation_lock is False
    assert stored.normalized_materials == ["glass"]
    assert stored.embedding == pytest.approx([0.1, 0.2])
    assert stored.input_prompt == "3 mason jars"


def test_get_unknown_returns_none(store):
    assert store.get("missing") is None
    with pytest.raises(NotFoundError):
        store.require("missing")


def test_get_many_preserves_order_and_filters(store):
    a = store.create("A")
    b = store.create("B")
    c = store.create("C")
    store.complete(b.id, {"description": "done"})

    assert [r.id for r in store.get_many([c.id, "missing", a.id, b.id])] == [c.id, a.id, b.id]
    assert [r.id for r in store.get_many([a.id, b.id], status=STATUS_COMPLETED)] == [b.id]


def test_lock_is_exclusive(store):
    record = store.create("A")

    assert store.acquire_lock(record.id, "worker-1") is True
    assert store.acquire_lock(record.id, "worker-2") is False

    locked = store.get(record.id)
    assert locked.generation_lock is True
    assert locked.generation_owner == "worker-1"

    store.release_lock(record.id)
    assert store.acquire_lock(record.id, "worker-2") is True


def test_completed_record_cannot_be_locked(store):
    record = store.create("A")
    store.complete(record.id, {"description": "done"})

    assert store.acquire_lock(record.id, "late-worker") is False
    assert store.get(record.id).generation_lock is False


def test_failed_record_can_be_locked_for_retry(store):
    record = store.create("A")
    store.mark_failed(record.id, "boom")

    assert store.acquire_lock(record.id, "admin:1") is True


def test_release_by_owner_leaves_other_holder(store):
    record = store.create("A")
    store.acquire_lock(record.id, "stream:1")

    store.release_lock(record.id, "background:2")
    assert store.get(record.id).generation_owner == "stream:1"

    store.release_lock(record.id, "stream:1")
    assert store.get(record.id).generation_lock is False


def test_concurrent_lock_attempts_single_winner(store):
    record = store.create("A")
    barrier = threading.Barrier(8)

    def attempt(n):
        barrier.wait()
        return store.acquire_lock(record.id, f"worker-{n}")

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(8)))

    assert results.count(True) == 1


def test_complete_clears_lock_and_writes_details(store):
    record = store.create("Working Title")
    store.acquire_lock(record.id, "background")

    completed = store.complete(record.id, {
        "name": "Glass Lantern",
        "description": "A lantern",
        "materials": [{"name": "jar", "quantity": "1"}],
        "steps": [{"title": "Clean"}],
        "reference_media": "https://www.youtube.com/results?search_query=lantern",
    })

    assert completed.status == STATUS_COMPLETED
    assert completed.generation_lock is False
    assert completed.name == "Glass Lantern"
    assert completed.materials == [{"name": "jar", "quantity": "1"}]
    assert completed.reference_media.startswith("https://www.youtube.com")


def test_complete_keeps_name_when_none_given(store):
    record = store.create("Keep Me")

    assert store.complete(record.id, {"description": "x"}).name == "Keep Me"


def test_mark_failed_and_back_to_generating(store):
    record = store.create("A")
    store.acquire_lock(record.id, "background")

    store.mark_failed(record.id, "Generation failed: timeout")
    failed = store.get(record.id)
    assert failed.status == STATUS_FAILED
    assert failed.status_message == "Generation failed: timeout"
    assert failed.generation_lock is False

    store.mark_generating(record.id, ["glass"], [0.5])
    retried = store.get(record.id)
    assert retried.status == STATUS_GENERATING
    assert retried.status_message is None
    assert retried.normalized_materials == ["glass"]


def test_votes_last_write_wins_and_mean(store):
    record = store.create("A")

    store.add_vote(record.id, "alice", 5)
    store.add_vote(record.id, "bob", 2)
    updated = store.add_vote(record.id, "alice", 3)

    assert len(updated.rank_votes) == 2
    assert {vote["user_id"]: vote["value"] for vote in updated.rank_votes} == {"alice": 3, "bob": 2}
    assert updated.rank_score == pytest.approx(2.5)
    assert updated.quality == pytest.approx(2.5)


@pytest.mark.parametrize("value", [0, 6, True, "5"])
def test_vote_value_validated(store, value):
    record = store.create("A")

    with pytest.raises(InputError):
        store.add_vote(record.id, "alice", value)


def test_vote_unknown_record(store):
    with pytest.raises(NotFoundError):
        store.add_vote("missing", "alice", 4)


def test_list_by_status_paginates_newest_first(store):
    ids = []
    for i in range(3):
        record = store.create(f"P{i}")
        store.mark_failed(record.id, "boom")
        ids.append(record.id)
        time.sleep(0.01)

    total, first_page = store.list_by_status(STATUS_FAILED, page=1, limit=2)
    _, second_page = store.list_by_status(STATUS_FAILED, page=2, limit=2)

    assert total == 3
    assert [r.id for r in first_page] == [ids[2], ids[1]]
    assert [r.id for r in second_page] == [ids[0]]


def test_release_stale_locks(store):
    stale = store.create("stale")
    fresh = store.create("fresh")
    store.acquire_lock(stale.id, "crashed")
    time.sleep(0.05)
    store.acquire_lock(fresh.id, "alive")

    assert store.release_stale_locks(0.03) == 1
    assert store.get(stale.id).generation_lock is False
    assert store.get(fresh.id).generation_lock is True


def test_delete(store):
    record = store.create("A")

    assert store.delete(record.id) is True
    assert store.delete(record.id) is False
