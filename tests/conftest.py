"""
Shared fixtures: throwaway SQLite/FAISS files, hash embeddings and a scripted backend.
"""

import asyncio
import json

import pytest

from upcycle.agents.backend import GenerationBackend
from upcycle.agents.orchestrator import GenerationOrchestrator, GenerationPolicy
from upcycle.core.db import init_db
from upcycle.core.history import PromptHistory
from upcycle.core.prompt_cache import PromptCache
from upcycle.core.records import ProjectStore
from upcycle.vector.embeddings import DeterministicHashEmbedding
from upcycle.vector.faiss_index import VectorIndex


def details_json(name="Glass Lantern", **overrides):
    project = {
        "projectName": name,
        "description": f"A {name.lower()} for the garden.",
        "materials": [{"name": "glass jar", "quantity": "1"}, {"name": "twine", "quantity": "2 m"}],
        "steps": [
            {
                "title": "Clean",
                "action": "Wash the jar.",
                "details": "Remove the label.",
                "purpose": "Paint sticks to clean glass.",
                "tools": ["sponge"],
                "warnings": [],
            }
        ],
        "referenceVideo": "https://www.youtube.com/results?search_query=DIY+glass+lantern",
    }
    project.update(overrides)
    return json.dumps(project)


NAMES_JSON = json.dumps([{"name": "Glass Lantern"}, {"name": "Twine Vase"}, {"name": "Jar Planter"}])


class ScriptedBackend(GenerationBackend):
    """Backend that replays queued responses; exceptions in the queue are raised."""

    name = "scripted"

    def __init__(self, responses=None, stream_chunks=None):
        self.responses = list(responses or [])
        self.stream_chunks = list(stream_chunks or [])
        self.calls = []
        self.active = 0
        self.max_active = 0
        self.stream_closed = False

    def _next(self, messages):
        user = messages[-1]["content"]
        if self.responses:
            return self.responses.pop(0)
        # Default: echo a details payload for whatever project was requested
        if "this project:" in user:
            name = user.split("this project:")[1].split(". Materials")[0].strip()
            return details_json(name)
        return NAMES_JSON

    async def complete(self, messages, *, temperature, max_tokens, timeout):
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "timeout": timeout})
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(0)
            response = self._next(messages)
            if isinstance(response, BaseException):
                raise response
            return response
        finally:
            self.active -= 1

    async def stream(self, messages, *, temperature, max_tokens, timeout):
        self.calls.append({"messages": messages, "max_tokens": max_tokens, "stream": True})
        try:
            for chunk in self.stream_chunks:
                if isinstance(chunk, BaseException):
                    raise chunk
                yield chunk
                await asyncio.sleep(0)
        finally:
            self.stream_closed = True


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "upcycle.db")
    init_db(path)
    return path


@pytest.fixture
def store(db_path):
    return ProjectStore(db_path)


@pytest.fixture
def cache(db_path):
    return PromptCache(db_path)


@pytest.fixture
def history(db_path):
    return PromptHistory(db_path)


@pytest.fixture
def index(tmp_path):
    vector_index = VectorIndex(str(tmp_path / "faiss.index"), str(tmp_path / "faiss_mapping.json"), dimension=384)
    vector_index.initialize()
    return vector_index


@pytest.fixture
def embedder():
    return DeterministicHashEmbedding(384)


@pytest.fixture
def backend():
    return ScriptedBackend()


@pytest.fixture
def policy():
    return GenerationPolicy(timeout_sec=5.0, backoff_sec=0.0, poll_interval_sec=0.01)


@pytest.fixture
def orchestrator(store, cache, index, embedder, backend, history, policy):
    return GenerationOrchestrator(
        store=store,
        cache=cache,
        index=index,
        embedder=embedder,
        backend=backend,
        history=history,
        policy=policy,
    )


def seed_completed(store, index, embedding, name="Seed Project", prompt="glass, twine", rank_votes=()):
    """Create a completed, indexed record with the given embedding."""
    record = store.create(name, prompt, ["glass", "twine"], embedding)
    store.complete(record.id, {"name": name, "description": "seeded", "materials": [], "steps": []})
    for user_id, value in rank_votes:
        store.add_vote(record.id, user_id, value)
    index.add_vectors([embedding], [record.id])
    return store.get(record.id)
