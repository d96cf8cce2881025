"""
Generation Orchestrator - decides between cache, index and fresh generation.

For an incoming materials prompt the orchestrator:

1. Serves an exact-text prompt cache hit immediately
2. Normalizes and embeds the materials, then searches the vector index
3. Returns ranked completed projects when the match is confident
4. Otherwise asks the backend for a few project names, creates `generating`
   records and returns them at once
5. Fills in full details in a supervised background job, one record at a time,
   each guarded by the record's generation lock

Streaming clients can attach to a single record, and admins can retry failed
ones. Every store, embedding and index call runs in a worker thread so the
event loop never blocks on disk or model work.
"""

import asyncio
import json
import uuid
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Tuple

from .backend import GenerationBackend
from .prompts import MAX_NAMES, build_details_messages, build_names_messages
from ..core import config
from ..core.errors import (
    ConflictError,
    InputError,
    NotFoundError,
    StorageError,
    UpcycleError,
    UpstreamError,
    UpstreamMalformedError,
)
from ..core.history import PromptHistory
from ..core.json_repair import extract_json
from ..core.materials import normalize
from ..core.prompt_cache import PromptCache
from ..core.records import ProjectStore, Record, STATUS_COMPLETED, STATUS_FAILED, STATUS_GENERATING
from ..core.similarity import RankedMatch, rank_matches
from ..util.logging import logger
from ..vector.embeddings import IEmbeddingProvider
from ..vector.faiss_index import VectorIndex

SOURCE_CACHE = "cache"
SOURCE_INDEX = "index"
SOURCE_GENERATED = "generated"

MAX_FAILED_PAGE_SIZE = 100


@dataclass
class GenerationPolicy:
    """Matching thresholds and backend call budgets."""

    similarity_threshold: float = 0.8
    min_matches: int = 3
    search_top_k: int = 10
    max_confident_results: int = 5
    timeout_sec: float = 180.0
    max_retries: int = 2
    backoff_sec: float = 3.0
    poll_interval_sec: float = 1.0
    names_max_tokens: int = 300
    details_max_tokens: int = 1500
    temperature: float = 0.2

    @classmethod
    def from_config(cls) -> "GenerationPolicy":
        return cls(
            similarity_threshold=config.SIMILARITY_THRESHOLD,
            min_matches=config.MIN_MATCHES,
            search_top_k=config.SEARCH_TOP_K,
            max_confident_results=config.MAX_CONFIDENT_RESULTS,
            timeout_sec=config.GENERATION_TIMEOUT_SEC,
            max_retries=config.GENERATION_MAX_RETRIES,
            backoff_sec=config.GENERATION_BACKOFF_SEC,
            poll_interval_sec=config.STREAM_POLL_INTERVAL_SEC,
            names_max_tokens=config.NAMES_MAX_TOKENS,
            details_max_tokens=config.DETAILS_MAX_TOKENS,
            temperature=config.GENERATION_TEMPERATURE,
        )


@dataclass
class GenerationResult:
    projects: List[Record]
    cached: bool
    source: str
    matches: List[RankedMatch] = field(default_factory=list)


@dataclass
class GenerationEvent:
    """One server-sent event of a streamed generation: status, progress, complete or error."""

    event: str
    data: Dict[str, Any]

    def to_sse(self) -> str:
        return f"event: {self.event}\ndata: {json.dumps(self.data)}\n\n"


def _owner_token(kind: str) -> str:
    """Lock owner for one job, so a release never clears another job's lock."""
    return f"{kind}:{uuid.uuid4().hex[:12]}"


def _as_text_list(value) -> List[str]:
    if isinstance(value, str):
        return [value] if value.strip() else []
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if item is not None and str(item).strip()]


def _coerce_material(item) -> Optional[Dict[str, str]]:
    if isinstance(item, str):
        return {"name": item.strip(), "quantity": ""} if item.strip() else None
    if isinstance(item, dict) and item.get("name"):
        return {"name": str(item["name"]).strip(), "quantity": str(item.get("quantity") or "").strip()}
    return None


def _coerce_step(item, position: int) -> Optional[Dict[str, Any]]:
    if isinstance(item, str):
        item = {"action": item}
    if not isinstance(item, dict):
        return None
    return {
        "title": str(item.get("title") or f"Step {position}"),
        "action": str(item.get("action") or ""),
        "details": str(item.get("details") or ""),
        "purpose": str(item.get("purpose") or ""),
        "tools": _as_text_list(item.get("tools")),
        "warnings": _as_text_list(item.get("warnings")),
    }


def parse_project_details(text: str, project_name: str) -> Dict[str, Any]:
    """
    Turn full-detail model output into record fields.

    The model may answer with one project or a list; a list entry whose name
    matches project_name wins, else the first entry is used.

    Raises:
        UpstreamMalformedError: output is not JSON or holds no project object
    """
    value, _ = extract_json(text, context=project_name)

    if isinstance(value, list):
        candidates = [item for item in value if isinstance(item, dict)]
        project = next(
            (item for item in candidates if project_name in (item.get("projectName"), item.get("name"))),
            candidates[0] if candidates else None
        )
    else:
        project = value if isinstance(value, dict) else None

    if not project:
        raise UpstreamMalformedError("No matching project found in model response", raw_output=text)

    materials = [m for m in (_coerce_material(item) for item in project.get("materials") or []) if m]
    raw_steps = project.get("steps") or []
    steps = [s for s in (_coerce_step(item, i) for i, item in enumerate(raw_steps, start=1)) if s]

    return {
        "name": str(project.get("projectName") or project.get("name") or project_name).strip(),
        "description": str(project.get("description") or ""),
        "materials": materials,
        "steps": steps,
        "reference_media": str(project.get("referenceVideo") or project.get("reference_media") or "") or None,
    }


def parse_project_names(text: str) -> List[str]:
    """Extract up to MAX_NAMES distinct project names from names-phase output."""
    value, _ = extract_json(text, context="names")
    items = value if isinstance(value, list) else [value]

    names = []
    seen = set()
    for item in items:
        if isinstance(item, dict):
            name = item.get("name") or item.get("projectName")
        else:
            name = item
        if not isinstance(name, str) or not name.strip():
            continue
        key = name.strip().lower()
        if key in seen:
            continue
        seen.add(key)
        names.append(name.strip())

    if not names:
        raise UpstreamMalformedError("Model returned no project names", raw_output=text)
    return names[:MAX_NAMES]


class GenerationOrchestrator:
    """Coordinates cache, vector index, record store and generation backend."""

    def __init__(self, store: ProjectStore, cache: PromptCache, index: VectorIndex,
                 embedder: IEmbeddingProvider, backend: GenerationBackend,
                 history: PromptHistory = None, policy: GenerationPolicy = None):
        self.store = store
        self.cache = cache
        self.index = index
        self.embedder = embedder
        self.backend = backend
        self.history = history
        self.policy = policy or GenerationPolicy.from_config()
        self._tasks: Set[asyncio.Task] = set()

        if embedder.get_dimension() != index.dimension:
            raise ValueError(
                f"Embedding provider produces {embedder.get_dimension()}-dimensional vectors "
                f"but the vector index expects {index.dimension}; set EMBED_DIM to match"
            )

    # Background job supervision

    def spawn(self, coro, name: str) -> asyncio.Task:
        """Run coro as a supervised background task and keep a reference to it."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            logger.log_operation("background.job", "cancelled", {"job": task.get_name()})
            return
        error = task.exception()
        if error is not None:
            logger.log_job_failure(task.get_name(), [error])

    async def drain(self) -> None:
        """Wait for every outstanding background job, including ones they spawn."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel outstanding jobs; their cleanup still releases generation locks."""
        for task in list(self._tasks):
            task.cancel()
        await self.drain()

    # Request path

    async def handle_prompt(self, prompt: str, user_id: str = None) -> GenerationResult:
        """
        Resolve a free-text materials prompt to a list of projects.

        Raises:
            InputError: prompt is empty or mentions no recognizable materials
            UpstreamError: the names-only backend call failed
            StorageError: records could not be created
        """
        if not isinstance(prompt, str) or not prompt.strip():
            raise InputError("Please provide a materials string")
        prompt = prompt.strip()

        if user_id and self.history is not None:
            await self._record_history(user_id, prompt)

        entry = await asyncio.to_thread(self.cache.get, prompt)
        if entry and entry.result_record_ids:
            records = await asyncio.to_thread(self.store.get_many, entry.result_record_ids)
            if records:
                return GenerationResult(projects=records, cached=True, source=SOURCE_CACHE)

        materials = normalize(prompt)
        if not materials:
            raise InputError("Could not extract materials from input. Please provide material names.")

        embedding = await self._embed(materials)
        matches = await self._find_matches(embedding)

        if len(matches) >= self.policy.min_matches and \
                max(match.similarity for match in matches) >= self.policy.similarity_threshold:
            selected = matches[:self.policy.max_confident_results]
            records = await asyncio.to_thread(self.store.get_many, [match.id for match in selected])
            await self._cache_results(prompt, [record.id for record in records], embedding)
            logger.log_operation("generate.match", "success", {"prompt": prompt, "matches": len(records)})
            return GenerationResult(projects=records, cached=False, source=SOURCE_INDEX, matches=selected)

        names = await self._generate_names(prompt)
        records = []
        for name in names:
            record = await asyncio.to_thread(self.store.create, name, prompt, materials, embedding)
            records.append(record)

        await self._cache_results(prompt, [record.id for record in records], embedding)
        self.spawn(self.run_background_jobs([record.id for record in records]),
                   name=f"generate:{records[0].id}")

        logger.log_operation("generate.names", "success", {"prompt": prompt, "names": len(records)})
        return GenerationResult(projects=records, cached=False, source=SOURCE_GENERATED)

    async def _record_history(self, user_id: str, prompt: str) -> None:
        try:
            await asyncio.to_thread(self.history.record, user_id, prompt)
        except StorageError as e:
            logger.warning(f"Failed to save prompt history for {user_id}: {e}")

    async def _embed(self, materials: List[str]) -> List[float]:
        try:
            return await asyncio.to_thread(self.embedder.embed, materials)
        except UpcycleError:
            raise
        except (RuntimeError, OSError, ValueError) as e:
            raise UpstreamError(f"Embedding failed: {e}") from e

    async def _find_matches(self, embedding: List[float]) -> List[RankedMatch]:
        """Completed projects near embedding, above the threshold, best final score first."""
        try:
            hits = await asyncio.to_thread(self.index.search, embedding, self.policy.search_top_k)
        except (StorageError, ValueError, RuntimeError) as e:
            logger.log_vector_operation("search", 0, {"error": str(e)}, status="failed")
            return []
        if not hits:
            return []

        records = await asyncio.to_thread(self.store.get_many, [hit.id for hit in hits], STATUS_COMPLETED)
        ratings = {record.id: record.quality for record in records}
        return rank_matches(hits, ratings, threshold=self.policy.similarity_threshold)

    async def _cache_results(self, prompt: str, record_ids: List[str], embedding: List[float]) -> None:
        if not record_ids:
            return
        try:
            await asyncio.to_thread(self.cache.upsert, prompt, record_ids, embedding)
        except StorageError as e:
            logger.warning(f"Failed to cache results for prompt: {e}")

    async def _generate_names(self, prompt: str) -> List[str]:
        text = await self.backend.complete(
            build_names_messages(prompt),
            temperature=self.policy.temperature,
            max_tokens=self.policy.names_max_tokens,
            timeout=self.policy.timeout_sec,
        )
        return parse_project_names(text)

    # Background path

    async def run_background_jobs(self, record_ids: List[str]) -> None:
        """Generate details for each record in turn; one failure never stops the rest."""
        for record_id in record_ids:
            try:
                await self.generate_in_background(record_id)
            except Exception as e:
                logger.log_job_failure(f"generate:{record_id}", [e])

    async def generate_in_background(self, record_id: str, owner: str = None) -> Optional[Record]:
        """Take the record's lock and generate it; returns None if another worker holds the lock."""
        owner = owner or _owner_token("background")
        acquired = await asyncio.to_thread(self.store.acquire_lock, record_id, owner)
        if not acquired:
            return None
        return await self._generate_locked(record_id, owner)

    async def _generate_locked(self, record_id: str, owner: str) -> Record:
        """Run full-detail generation with retries. The caller must hold the lock; it is always released."""
        try:
            record = await asyncio.to_thread(self.store.get, record_id)
            if record is None:
                raise NotFoundError(f"Project {record_id} not found")

            attempts = self.policy.max_retries + 1
            last_error = None
            for attempt in range(1, attempts + 1):
                logger.log_generation_attempt(record_id, attempt, attempts)
                try:
                    details = await self._generate_details(record)
                except UpstreamError as e:
                    last_error = e
                    logger.log_generation_attempt(record_id, attempt, attempts, "failed", {
                        "reason": getattr(e, "reason", "malformed"),
                        "error": e.message
                    })
                    if attempt < attempts:
                        await asyncio.sleep(self.policy.backoff_sec * attempt)
                    continue

                logger.log_generation_attempt(record_id, attempt, attempts, "completed")
                return await self._finish(record, details)

            message = f"Generation failed: {last_error.message}"
            logger.log_generation_attempt(record_id, attempts, attempts, "exhausted", {"error": last_error.message})
            await asyncio.to_thread(self.store.mark_failed, record_id, message)
            return await asyncio.to_thread(self.store.get, record_id)
        except NotFoundError:
            raise
        except Exception as e:
            await self._mark_failed_quietly(record_id, f"Generation failed: {e}")
            raise
        finally:
            await self._release_quietly(record_id, owner)

    async def _generate_details(self, record: Record) -> Dict[str, Any]:
        text = await self.backend.complete(
            build_details_messages(record.name, record.input_prompt),
            temperature=self.policy.temperature,
            max_tokens=self.policy.details_max_tokens,
            timeout=self.policy.timeout_sec,
        )
        return parse_project_details(text, record.name)

    async def _finish(self, record: Record, details: Dict[str, Any]) -> Record:
        """Persist the completed record and make it searchable."""
        updated = await asyncio.to_thread(self.store.complete, record.id, details)
        if updated.embedding:
            try:
                await asyncio.to_thread(self.index.add_vectors, [updated.embedding], [updated.id])
            except (StorageError, ValueError) as e:
                # The record is the source of truth; rebuild_index.py restores the projection
                logger.log_vector_operation("add", 0, {"record_id": updated.id, "error": str(e)}, status="failed")
        return updated

    async def _mark_failed_quietly(self, record_id: str, message: str) -> None:
        try:
            await asyncio.to_thread(self.store.mark_failed, record_id, message)
        except StorageError as e:
            logger.error(f"Failed to mark project {record_id} failed: {e}")

    async def _release_quietly(self, record_id: str, owner: str) -> None:
        try:
            await asyncio.to_thread(self.store.release_lock, record_id, owner)
        except StorageError as e:
            logger.error(f"Failed to clear generation lock for {record_id}: {e}")

    # Streaming

    async def stream_project(self, record_id: str) -> AsyncIterator[GenerationEvent]:
        """
        Attach to one record's generation.

        Streams the backend output when the record is unlocked, otherwise
        polls until the lock holder finishes or the timeout passes. Always
        ends with a complete or error event.
        """
        record = await asyncio.to_thread(self.store.get, record_id)
        if record is None:
            yield GenerationEvent("error", {"message": "Project not found"})
            return
        if record.status == STATUS_COMPLETED:
            yield GenerationEvent("complete", {"project": record.to_dict()})
            return
        if record.status == STATUS_FAILED:
            yield GenerationEvent("error", {"message": record.status_message or "Project generation failed"})
            return

        yield GenerationEvent("status", {
            "status": STATUS_GENERATING,
            "message": f"Generating details for {record.name}...",
            "progress": 0,
        })

        if record.generation_lock:
            async for event in self._poll_until_done(record_id):
                yield event
            return

        owner = _owner_token("stream")
        acquired = await asyncio.to_thread(self.store.acquire_lock, record_id, owner)
        if not acquired:
            yield GenerationEvent("status", {
                "status": STATUS_GENERATING,
                "message": "Another worker is generating details; waiting...",
            })
            async for event in self._poll_until_done(record_id):
                yield event
            return

        try:
            chunks = []
            accumulated = 0
            deltas = self.backend.stream(
                build_details_messages(record.name, record.input_prompt),
                temperature=self.policy.temperature,
                max_tokens=self.policy.details_max_tokens,
                timeout=self.policy.timeout_sec,
            )
            try:
                # Closed on client disconnect too
                async with aclosing(deltas):
                    async for delta in deltas:
                        chunks.append(delta)
                        accumulated += len(delta)
                        yield GenerationEvent("progress", {"content": delta, "accumulated": accumulated})

                details = parse_project_details("".join(chunks), record.name)
                updated = await self._finish(record, details)
            except UpcycleError as e:
                message = f"Generation failed: {e.message}"
                await self._mark_failed_quietly(record_id, message)
                yield GenerationEvent("error", {"message": message})
                return
            except Exception as e:
                logger.log_job_failure(f"stream:{record_id}", [e])
                message = f"Generation failed: {e}"
                await self._mark_failed_quietly(record_id, message)
                yield GenerationEvent("error", {"message": message})
                return

            yield GenerationEvent("complete", {"project": updated.to_dict()})
        finally:
            await self._release_quietly(record_id, owner)

    async def _poll_until_done(self, record_id: str) -> AsyncIterator[GenerationEvent]:
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            current = await asyncio.to_thread(self.store.get, record_id)
            if current is None:
                yield GenerationEvent("error", {"message": "Project disappeared"})
                return
            if current.status == STATUS_COMPLETED:
                yield GenerationEvent("complete", {"project": current.to_dict()})
                return
            if current.status == STATUS_FAILED:
                yield GenerationEvent("error", {"message": current.status_message or "Project generation failed"})
                return
            if loop.time() - started >= self.policy.timeout_sec:
                yield GenerationEvent("error", {"message": "Timed out waiting for generation"})
                return

            yield GenerationEvent("status", {
                "status": STATUS_GENERATING,
                "message": "Waiting for background generation to finish...",
            })
            await asyncio.sleep(self.policy.poll_interval_sec)

    # Record operations

    async def get_project(self, record_id: str) -> Record:
        return await asyncio.to_thread(self.store.require, record_id)

    async def get_status(self, record_id: str) -> Dict[str, Any]:
        record = await self.get_project(record_id)
        return {
            "id": record.id,
            "name": record.name,
            "status": record.status,
            "status_message": record.status_message,
        }

    async def retry_project(self, record_id: str, wait: bool = False) -> Record:
        """
        Re-run full-detail generation for a failed (or orphaned generating) record.

        With wait the call returns the regenerated record, or raises
        UpstreamError if every attempt failed. Without it generation runs in
        the background and the record is returned in the generating state.

        Raises:
            NotFoundError: unknown record
            ConflictError: the record is completed or its lock is held
            InputError: the record has nothing to regenerate from
        """
        record = await self.get_project(record_id)
        if record.status == STATUS_COMPLETED:
            raise ConflictError(f"Project {record_id} is already completed")
        if record.generation_lock:
            raise ConflictError(f"Project {record_id} is already being generated")
        if not record.name.strip():
            raise InputError("Project has no name to regenerate")

        materials = record.normalized_materials or normalize(record.input_prompt)
        if not materials:
            raise InputError("No materials available to regenerate this project")
        embedding = record.embedding or await self._embed(materials)

        owner = _owner_token("admin")
        acquired = await asyncio.to_thread(self.store.acquire_lock, record_id, owner)
        if not acquired:
            raise ConflictError(f"Project {record_id} is already being generated")

        try:
            await asyncio.to_thread(self.store.mark_generating, record_id, materials, embedding)
        except StorageError:
            await self._release_quietly(record_id, owner)
            raise

        logger.log_operation("generate.retry", "started", {"record_id": record_id, "wait": wait})

        if wait:
            updated = await self._generate_locked(record_id, owner)
            if updated.status == STATUS_FAILED:
                raise UpstreamError(updated.status_message or "Generation failed")
            return updated

        accepted = await asyncio.to_thread(self.store.require, record_id)
        self.spawn(self._generate_locked(record_id, owner), name=f"retry:{record_id}")
        return accepted

    async def list_failed(self, page: int = 1, limit: int = 20) -> Tuple[int, List[Record]]:
        limit = min(max(1, limit), MAX_FAILED_PAGE_SIZE)
        return await asyncio.to_thread(self.store.list_by_status, STATUS_FAILED, page, limit)

    async def rate_project(self, record_id: str, user_id: str, value: int) -> Record:
        return await asyncio.to_thread(self.store.add_vote, record_id, user_id, value)

    async def delete_project(self, record_id: str) -> None:
        """Delete the record and soft-delete its vector."""
        deleted = await asyncio.to_thread(self.store.delete, record_id)
        if not deleted:
            raise NotFoundError(f"Project {record_id} not found")
        try:
            await asyncio.to_thread(self.index.remove_vectors, [record_id])
        except StorageError as e:
            logger.log_vector_operation("remove", 0, {"record_id": record_id, "error": str(e)}, status="failed")
