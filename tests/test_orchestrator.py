"""
Tests for the generation orchestrator: cache, index matching, background
generation, locking and admin operations.
"""

import asyncio

import numpy as np
import pytest

from upcycle.agents.orchestrator import (
    GenerationOrchestrator,
    SOURCE_CACHE,
    SOURCE_GENERATED,
    SOURCE_INDEX,
    parse_project_details,
    parse_project_names,
)
from upcycle.core.errors import (
    ConflictError,
    InputError,
    NotFoundError,
    UpstreamError,
    UpstreamMalformedError,
    UpstreamTransientError,
)
from upcycle.core.materials import normalize
from upcycle.core.records import STATUS_COMPLETED, STATUS_FAILED, STATUS_GENERATING
from upcycle.vector.embeddings import DeterministicHashEmbedding

from conftest import NAMES_JSON, details_json, seed_completed

PROMPT = "3 mason jars, some rope"


def transient(reason="timeout"):
    return UpstreamTransientError(f"backend {reason}", reason=reason)


def run(coro):
    return asyncio.run(coro)


def make_pending(store, embedder, name="Glass Lantern", prompt=PROMPT):
    materials = normalize(prompt)
    return store.create(name, prompt, materials, embedder.embed(materials))


def vector_at_similarity(query, cosine, seed):
    """Unit vector whose cosine with the unit vector query is exactly cosine."""
    q = np.asarray(query, dtype=np.float64)
    r = np.random.default_rng(seed).normal(size=q.shape)
    r -= r.dot(q) * q
    r /= np.linalg.norm(r)
    return (cosine * q + np.sqrt(1 - cosine ** 2) * r).tolist()


class TestHandlePrompt:

    def test_fresh_prompt_generates_in_background(self, orchestrator, store, index, cache):
        async def scenario():
            result = await orchestrator.handle_prompt(PROMPT)
            assert [r.status for r in result.projects] == [STATUS_GENERATING] * 3
            await orchestrator.drain()
            return result

        result = run(scenario())

        assert result.source == SOURCE_GENERATED
        assert result.cached is False
        assert [r.name for r in result.projects] == ["Glass Lantern", "Twine Vase", "Jar Planter"]

        stored = store.get_many([r.id for r in result.projects])
        assert all(r.status == STATUS_COMPLETED for r in stored)
        assert all(r.generation_lock is False for r in stored)
        assert all(r.steps for r in stored)
        assert set(stored[0].normalized_materials) == {"glass", "twine"}
        assert index.size() == 3
        assert cache.get(PROMPT).result_record_ids == [r.id for r in result.projects]

    def test_repeat_prompt_served_from_cache(self, orchestrator, backend):
        async def scenario():
            first = await orchestrator.handle_prompt(PROMPT)
            await orchestrator.drain()
            calls = len(backend.calls)
            second = await orchestrator.handle_prompt(PROMPT)
            return first, second, calls

        first, second, calls = run(scenario())

        assert second.source == SOURCE_CACHE
        assert second.cached is True
        assert [r.id for r in second.projects] == [r.id for r in first.projects]
        assert len(backend.calls) == calls

    def test_confident_index_match_skips_generation(self, orchestrator, store, index, embedder, backend):
        embedding = embedder.embed(normalize(PROMPT))
        low = seed_completed(store, index, embedding, name="Low", rank_votes=[("u1", 1)])
        high = seed_completed(store, index, embedding, name="High", rank_votes=[("u1", 5)])
        mid = seed_completed(store, index, embedding, name="Mid", rank_votes=[("u1", 3)])

        result = run(orchestrator.handle_prompt(PROMPT))

        assert result.source == SOURCE_INDEX
        assert result.cached is False
        assert [r.id for r in result.projects] == [high.id, mid.id, low.id]
        assert result.matches[0].similarity == pytest.approx(1.0, abs=1e-4)
        assert backend.calls == []

    def test_too_few_matches_falls_back_to_generation(self, orchestrator, store, index, embedder):
        embedding = embedder.embed(normalize(PROMPT))
        seed_completed(store, index, embedding, name="One")
        seed_completed(store, index, embedding, name="Two")

        async def scenario():
            result = await orchestrator.handle_prompt(PROMPT)
            await orchestrator.drain()
            return result

        assert run(scenario()).source == SOURCE_GENERATED

    def test_enough_matches_below_threshold_fall_back_to_generation(self, orchestrator, store, index, embedder, backend):
        query = embedder.embed(normalize(PROMPT))
        for seed in range(4):
            seed_completed(store, index, vector_at_similarity(query, 0.7, seed), name=f"Near {seed}")

        hits = index.search(query, 10)
        assert len(hits) == 4
        assert all(hit.score == pytest.approx(0.7, abs=1e-3) for hit in hits)

        async def scenario():
            result = await orchestrator.handle_prompt(PROMPT)
            await orchestrator.drain()
            return result

        result = run(scenario())

        assert result.source == SOURCE_GENERATED
        assert backend.calls

    def test_index_match_then_repeat_served_from_cache(self, orchestrator, store, index, embedder, backend):
        embedding = embedder.embed(normalize(PROMPT))
        for i in range(3):
            seed_completed(store, index, embedding, name=f"Seed {i}")

        async def scenario():
            first = await orchestrator.handle_prompt(PROMPT)
            second = await orchestrator.handle_prompt(PROMPT)
            return first, second

        first, second = run(scenario())

        assert first.source == SOURCE_INDEX
        assert first.cached is False
        assert second.source == SOURCE_CACHE
        assert second.cached is True
        assert [r.id for r in second.projects] == [r.id for r in first.projects]
        assert backend.calls == []

    def test_dimension_mismatch_rejected(self, store, cache, index, backend):
        with pytest.raises(ValueError, match="EMBED_DIM"):
            GenerationOrchestrator(store=store, cache=cache, index=index,
                                   embedder=DeterministicHashEmbedding(128), backend=backend)

    def test_results_capped(self, orchestrator, store, index, embedder):
        embedding = embedder.embed(normalize(PROMPT))
        for i in range(7):
            seed_completed(store, index, embedding, name=f"Seed {i}")

        result = run(orchestrator.handle_prompt(PROMPT))

        assert result.source == SOURCE_INDEX
        assert len(result.projects) == 5

    @pytest.mark.parametrize("prompt", ["", "   ", "and, the, 3"])
    def test_unusable_prompt_rejected(self, orchestrator, backend, prompt):
        with pytest.raises(InputError):
            run(orchestrator.handle_prompt(prompt))
        assert backend.calls == []

    def test_names_failure_surfaces_and_creates_nothing(self, orchestrator, backend, store):
        backend.responses = [transient("connection_refused")]

        with pytest.raises(UpstreamError):
            run(orchestrator.handle_prompt(PROMPT))

        assert store.list_by_status(STATUS_GENERATING, 1, 10)[0] == 0

    def test_history_recorded_for_user(self, orchestrator, history):
        async def scenario():
            await orchestrator.handle_prompt(PROMPT, user_id="alice")
            await orchestrator.drain()

        run(scenario())

        assert [entry.prompt for entry in history.recent("alice")] == [PROMPT]


class TestBackgroundGeneration:

    def test_jobs_run_one_at_a_time(self, orchestrator, backend):
        async def scenario():
            await orchestrator.handle_prompt(PROMPT)
            await orchestrator.drain()

        run(scenario())

        assert backend.max_active == 1
        assert len(backend.calls) == 4

    def test_one_failure_does_not_stop_the_rest(self, orchestrator, backend, store):
        backend.responses = [NAMES_JSON, RuntimeError("boom")]

        async def scenario():
            result = await orchestrator.handle_prompt(PROMPT)
            await orchestrator.drain()
            return result

        result = run(scenario())

        statuses = [store.get(r.id).status for r in result.projects]
        assert statuses == [STATUS_FAILED, STATUS_COMPLETED, STATUS_COMPLETED]
        assert all(store.get(r.id).generation_lock is False for r in result.projects)

    def test_retries_then_succeeds(self, orchestrator, backend, store, embedder):
        record = make_pending(store, embedder)
        backend.responses = [transient(), "not json at all", details_json("Glass Lantern")]

        updated = run(orchestrator.generate_in_background(record.id))

        assert updated.status == STATUS_COMPLETED
        assert len(backend.calls) == 3
        assert store.get(record.id).generation_lock is False

    def test_exhausted_retries_mark_failed_and_release(self, orchestrator, backend, store, index, embedder):
        record = make_pending(store, embedder)
        backend.responses = [transient("connection_reset")] * 3

        updated = run(orchestrator.generate_in_background(record.id))

        assert updated.status == STATUS_FAILED
        assert updated.status_message.startswith("Generation failed:")
        assert updated.generation_lock is False
        assert len(backend.calls) == 3
        assert not index.contains(record.id)

    def test_unexpected_error_marks_failed_and_propagates(self, orchestrator, backend, store, embedder):
        record = make_pending(store, embedder)
        backend.responses = [RuntimeError("boom")]

        with pytest.raises(RuntimeError):
            run(orchestrator.generate_in_background(record.id))

        stored = store.get(record.id)
        assert stored.status == STATUS_FAILED
        assert stored.generation_lock is False

    def test_locked_record_is_skipped(self, orchestrator, backend, store, embedder):
        record = make_pending(store, embedder)
        store.acquire_lock(record.id, "someone-else")

        assert run(orchestrator.generate_in_background(record.id)) is None
        assert backend.calls == []
        assert store.get(record.id).generation_owner == "someone-else"

    def test_late_worker_does_not_regenerate_completed_record(self, orchestrator, backend, store, embedder):
        record = make_pending(store, embedder)
        run(orchestrator.generate_in_background(record.id))
        calls = len(backend.calls)
        backend.responses = [details_json("Overwritten")]

        assert run(orchestrator.generate_in_background(record.id)) is None
        assert len(backend.calls) == calls
        assert store.get(record.id).name == "Glass Lantern"

    def test_completed_record_is_indexed(self, orchestrator, store, index, embedder):
        record = make_pending(store, embedder)

        run(orchestrator.generate_in_background(record.id))

        assert index.contains(record.id)
        assert index.search(record.embedding, 1)[0].id == record.id


class TestAdminOperations:

    def test_retry_failed_with_wait(self, orchestrator, backend, store, embedder):
        record = make_pending(store, embedder)
        store.mark_failed(record.id, "Generation failed: timeout")

        updated = run(orchestrator.retry_project(record.id, wait=True))

        assert updated.status == STATUS_COMPLETED
        assert updated.status_message is None
        assert updated.generation_lock is False

    def test_retry_without_wait_runs_in_background(self, orchestrator, store, embedder):
        record = make_pending(store, embedder)
        store.mark_failed(record.id, "Generation failed: timeout")

        async def scenario():
            accepted = await orchestrator.retry_project(record.id)
            await orchestrator.drain()
            return accepted

        accepted = run(scenario())

        assert accepted.status == STATUS_GENERATING
        assert store.get(record.id).status == STATUS_COMPLETED

    def test_retry_failing_again_raises(self, orchestrator, backend, store, embedder):
        record = make_pending(store, embedder)
        store.mark_failed(record.id, "Generation failed: timeout")
        backend.responses = [transient()] * 3

        with pytest.raises(UpstreamError):
            run(orchestrator.retry_project(record.id, wait=True))

        assert store.get(record.id).status == STATUS_FAILED
        assert store.get(record.id).generation_lock is False

    def test_retry_conflicts(self, orchestrator, store, index, embedder):
        completed = seed_completed(store, index, embedder.embed(["glass"]))
        locked = make_pending(store, embedder, name="Busy")
        store.acquire_lock(locked.id, "background")

        with pytest.raises(ConflictError):
            run(orchestrator.retry_project(completed.id))
        with pytest.raises(ConflictError):
            run(orchestrator.retry_project(locked.id))
        with pytest.raises(NotFoundError):
            run(orchestrator.retry_project("missing"))

    def test_list_failed_clamps_limit(self, orchestrator, store, embedder):
        for i in range(3):
            store.mark_failed(make_pending(store, embedder, name=f"P{i}").id, "boom")

        total, records = run(orchestrator.list_failed(page=1, limit=500))

        assert total == 3
        assert len(records) == 3

    def test_delete_removes_vector(self, orchestrator, store, index, embedder):
        record = seed_completed(store, index, embedder.embed(["glass"]))

        run(orchestrator.delete_project(record.id))

        assert store.get(record.id) is None
        assert not index.contains(record.id)
        with pytest.raises(NotFoundError):
            run(orchestrator.delete_project(record.id))

    def test_rate_project(self, orchestrator, store, index, embedder):
        record = seed_completed(store, index, embedder.embed(["glass"]))

        run(orchestrator.rate_project(record.id, "alice", 4))
        updated = run(orchestrator.rate_project(record.id, "bob", 2))

        assert updated.rank_score == pytest.approx(3.0)

    def test_status(self, orchestrator, store, embedder):
        record = make_pending(store, embedder)

        status = run(orchestrator.get_status(record.id))

        assert status == {"id": record.id, "name": "Glass Lantern", "status": STATUS_GENERATING, "status_message": None}


class TestParsing:

    def test_details_coerced(self):
        text = details_json("Lamp", materials=["jar", {"name": "wire", "quantity": 2}, {}],
                            steps=["Drill a hole", {"title": "Wire", "tools": "pliers"}])

        details = parse_project_details(text, "Lamp")

        assert details["materials"] == [{"name": "jar", "quantity": ""}, {"name": "wire", "quantity": "2"}]
        assert details["steps"][0]["title"] == "Step 1"
        assert details["steps"][0]["action"] == "Drill a hole"
        assert details["steps"][1]["tools"] == ["pliers"]

    def test_details_picks_named_entry_from_list(self):
        text = "[" + details_json("Other") + "," + details_json("Lamp") + "]"

        assert parse_project_details(text, "Lamp")["name"] == "Lamp"

    def test_details_without_object_rejected(self):
        with pytest.raises(UpstreamMalformedError):
            parse_project_details("[1, 2]", "Lamp")

    def test_names_deduplicated_and_capped(self):
        text = '["Lamp", {"name": "lamp"}, "Vase", "", "A", "B", "C", "D"]'

        assert parse_project_names(text) == ["Lamp", "Vase", "A", "B", "C"]

    def test_no_names_rejected(self):
        with pytest.raises(UpstreamMalformedError):
            parse_project_names("[]")
