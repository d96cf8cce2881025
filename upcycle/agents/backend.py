"""
Generation backends: the external text-generation service behind one interface.

OllamaBackend talks to a local Ollama server. MockBackend answers with canned,
deterministic JSON so the service runs offline and in tests.
"""

from abc import ABC, abstractmethod
import asyncio
import json
import re
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
import ollama

from .prompts import NAMES_PROMPT
from ..core import config
from ..core.errors import UpstreamTransientError
from ..util.logging import logger

Messages = List[Dict[str, str]]


class GenerationBackend(ABC):
    """Chat-style text generation with a hard wall-clock timeout per call."""

    name = "backend"

    @abstractmethod
    async def complete(self, messages: Messages, *, temperature: float, max_tokens: int, timeout: float) -> str:
        """Return the full message body. Raises UpstreamTransientError."""
        pass

    @abstractmethod
    def stream(self, messages: Messages, *, temperature: float, max_tokens: int, timeout: float) -> AsyncIterator[str]:
        """Yield incremental text deltas. Raises UpstreamTransientError."""
        pass

    async def health(self) -> Dict[str, Any]:
        return {"provider": self.name, "available": True}


def map_transport_error(error: BaseException, timeout: float, host: str = "") -> UpstreamTransientError:
    """Translate a client/transport exception into a diagnosable UpstreamTransientError."""
    if isinstance(error, UpstreamTransientError):
        return error
    if isinstance(error, (asyncio.TimeoutError, httpx.TimeoutException)):
        return UpstreamTransientError(
            f"Generation request timed out after {timeout:g} seconds. The model may be slow or not responding.",
            reason="timeout"
        )
    if isinstance(error, ollama.ResponseError):
        return UpstreamTransientError(
            f"Generation backend HTTP {error.status_code}: {error.error}",
            reason="http_status",
            status=error.status_code
        )
    if isinstance(error, httpx.HTTPStatusError):
        return UpstreamTransientError(
            f"Generation backend HTTP {error.response.status_code}: {error.response.text}",
            reason="http_status",
            status=error.response.status_code
        )
    if isinstance(error, (ConnectionResetError, httpx.RemoteProtocolError, httpx.ReadError)):
        return UpstreamTransientError(
            "Connection to the generation backend was reset. This is likely a transient network or server issue.",
            reason="connection_reset"
        )
    if isinstance(error, (ConnectionError, httpx.ConnectError)):
        return UpstreamTransientError(
            f"Cannot connect to the generation backend{' at ' + host if host else ''}. Is Ollama running?",
            reason="connection_refused"
        )
    return UpstreamTransientError(f"Generation backend error: {error}", reason="unknown")


class OllamaBackend(GenerationBackend):
    """Backend using the ollama AsyncClient against a local Ollama server."""

    name = "ollama"

    def __init__(self, model_name: str = None, host: str = None, client: ollama.AsyncClient = None):
        self.model_name = model_name or config.GENERATION_MODEL
        self.host = host or config.OLLAMA_HOST
        self.client = client or ollama.AsyncClient(host=self.host)

    async def complete(self, messages: Messages, *, temperature: float, max_tokens: int, timeout: float) -> str:
        try:
            response = await asyncio.wait_for(
                self.client.chat(
                    model=self.model_name,
                    messages=messages,
                    options={"temperature": temperature, "num_predict": max_tokens},
                ),
                timeout=timeout
            )
        except (asyncio.TimeoutError, ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            raise map_transport_error(e, timeout, self.host) from e

        content = response["message"]["content"]
        if not content:
            raise UpstreamTransientError("No content returned from language model", reason="empty_response")
        return content

    async def stream(self, messages: Messages, *, temperature: float, max_tokens: int, timeout: float) -> AsyncIterator[str]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        def remaining() -> float:
            left = deadline - loop.time()
            if left <= 0:
                raise asyncio.TimeoutError()
            return left

        try:
            parts = await asyncio.wait_for(
                self.client.chat(
                    model=self.model_name,
                    messages=messages,
                    options={"temperature": temperature, "num_predict": max_tokens},
                    stream=True,
                ),
                timeout=remaining()
            )
            iterator = parts.__aiter__()
            while True:
                try:
                    part = await asyncio.wait_for(iterator.__anext__(), timeout=remaining())
                except StopAsyncIteration:
                    break
                delta = part["message"]["content"]
                if delta:
                    yield delta
                if part.get("done"):
                    break
        except (asyncio.TimeoutError, ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            raise map_transport_error(e, timeout, self.host) from e

    async def health(self) -> Dict[str, Any]:
        try:
            listing = await asyncio.wait_for(self.client.list(), timeout=5)
        except (asyncio.TimeoutError, ollama.ResponseError, httpx.HTTPError, ConnectionError) as e:
            return {"provider": self.name, "available": False, "error": str(map_transport_error(e, 5, self.host))}

        model_names = [model.get("model") or model.get("name") for model in listing.get("models", [])]
        return {
            "provider": self.name,
            "available": True,
            "model": self.model_name,
            "model_loaded": self.model_name in model_names,
        }


class MockBackend(GenerationBackend):
    """Deterministic offline backend returning canned project JSON."""

    name = "mock"

    NAME_TEMPLATES = [
        "{material} Planter",
        "{material} Desk Organizer",
        "{material} Lantern",
    ]

    _PROJECT_RE = re.compile(r"this project: (.+?)\. Materials available: (.*)", re.DOTALL)

    def __init__(self, chunk_size: int = 40):
        self.chunk_size = chunk_size

    def _render(self, messages: Messages) -> str:
        system = messages[0]["content"] if messages else ""
        user = messages[-1]["content"] if messages else ""

        if system == NAMES_PROMPT:
            material = (user.split(",")[0].strip() or "Upcycled").title()
            return json.dumps([{"name": template.format(material=material)} for template in self.NAME_TEMPLATES])

        match = self._PROJECT_RE.search(user)
        project_name = match.group(1).strip() if match else "DIY Project"
        materials = match.group(2).strip() if match else user
        query = "+".join(["DIY"] + project_name.split())
        return json.dumps({
            "projectName": project_name,
            "description": f"A beginner-friendly {project_name.lower()} made from {materials}.",
            "materials": [{"name": item.strip(), "quantity": "1"} for item in materials.split(",") if item.strip()],
            "steps": [
                {
                    "title": "Prepare",
                    "action": "Clean and dry all materials.",
                    "details": "Remove labels and residue so paint and glue will stick.",
                    "purpose": "A clean surface gives a durable finish.",
                    "tools": ["sponge", "towel"],
                    "warnings": [],
                },
                {
                    "title": "Assemble",
                    "action": f"Put the {project_name.lower()} together.",
                    "details": "Join the parts with glue or twine and let it set.",
                    "purpose": "Builds the finished project.",
                    "tools": ["glue gun", "scissors"],
                    "warnings": ["Hot glue can burn skin."],
                },
            ],
            "referenceVideo": f"https://www.youtube.com/results?search_query={query}",
        })

    async def complete(self, messages: Messages, *, temperature: float, max_tokens: int, timeout: float) -> str:
        return self._render(messages)

    async def stream(self, messages: Messages, *, temperature: float, max_tokens: int, timeout: float) -> AsyncIterator[str]:
        body = self._render(messages)
        for start in range(0, len(body), self.chunk_size):
            yield body[start:start + self.chunk_size]
            await asyncio.sleep(0)


_backend: Optional[GenerationBackend] = None


def get_generation_backend() -> GenerationBackend:
    """Process-wide backend selected by GENERATION_PROVIDER, created on first use."""
    global _backend
    if _backend is None:
        if config.GENERATION_PROVIDER == "mock":
            _backend = MockBackend()
        else:
            _backend = OllamaBackend()
        logger.info(f"Generation backend initialized: {_backend.name}")
    return _backend


async def check_backend_health(backend: GenerationBackend = None) -> Dict[str, Any]:
    """Reachability report for the health endpoint; never raises."""
    backend = backend or get_generation_backend()
    return await backend.health()
