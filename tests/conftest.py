import asyncio

import pytest

from threadchat.config import Settings
from threadchat.exceptions import ProviderError, ReconciliationError
from threadchat.services.content_store import ContentStore
from threadchat.services.events import EventBus
from threadchat.services.orchestrator import ConversationOrchestrator
from threadchat.services.reconciler import ThreadReconciler
from threadchat.services.request_registry import ActiveRequestRegistry
from threadchat.services.thread_cache import ThreadCache


def text_response(*texts: str) -> dict:
    return {
        "outputs": [
            {"type": "message.output", "content": [{"type": "text", "text": t} for t in texts]}
        ]
    }


class FakeMistral:
    """Library index, file download, transcription and key check."""

    def __init__(self):
        self.valid_key = True
        self.libraries: dict[str, dict] = {}
        self.created = 0
        self.uploads: list[tuple[str, str]] = []
        self.fail_create = False
        self.files: dict[str, bytes] = {}
        self.transcript = "What time is it?"

    async def validate_api_key(self) -> bool:
        return self.valid_key

    async def list_libraries(self) -> list[dict]:
        await asyncio.sleep(0)
        return list(self.libraries.values())

    async def get_library(self, library_id: str) -> dict | None:
        return self.libraries.get(library_id)

    async def create_library(self, name: str, description: str) -> dict:
        await asyncio.sleep(0)
        if self.fail_create:
            raise ProviderError("library quota exceeded", status_code=429)
        self.created += 1
        library = {"id": f"lib-{self.created}", "name": name, "description": description}
        self.libraries[library["id"]] = library
        return library

    async def upload_document(self, library_id, filename, content, content_type):
        self.uploads.append((library_id, filename))
        return {"id": f"doc-{len(self.uploads)}"}

    async def download_file(self, file_id: str) -> bytes:
        if file_id not in self.files:
            raise ProviderError("file not found", status_code=404)
        return self.files[file_id]

    async def transcribe(self, audio, model, filename="audio.mp3"):
        return self.transcript, "en"


class FakeAgent:
    """Stands in for AgentService.run; `gate` holds the call until set."""

    def __init__(self, response=None, error: Exception | None = None):
        self.response = response if response is not None else text_response("Hi there")
        self.error = error
        self.gate: asyncio.Event | None = None
        self.contexts = []

    async def run(self, ctx):
        self.contexts.append(ctx)
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return self.response


class FakeStore:
    def __init__(self):
        self.threads: dict[str, dict] = {}
        self.messages: dict[str, dict] = {}
        self.contents: dict[str, str] = {}
        self.attachments: list[tuple[str, dict]] = []
        self.fail_create = False
        self.fail_sync = False
        self.sync_calls = 0

    async def create_thread(self, data: dict):
        if self.fail_create:
            raise ReconciliationError("500: store down")
        self.threads[data["idThread"]] = dict(data)
        return {"ok": True}

    async def sync_messages(self, messages: list[dict]) -> int:
        self.sync_calls += 1
        if self.fail_sync:
            raise ReconciliationError("500: store down")
        inserted = 0
        for m in messages:
            if m["idMessage"] not in self.messages:
                self.messages[m["idMessage"]] = m
                inserted += 1
        return inserted

    async def has_content(self, content_hash: str) -> bool:
        return content_hash in self.contents

    async def upload_content(self, content_hash: str, payload: str) -> None:
        self.contents[content_hash] = payload

    async def create_attachment(self, message_id: str, attachment: dict):
        self.attachments.append((message_id, attachment))
        return {"ok": True}

    async def update_thread(self, thread_id: str, data: dict):
        self.threads.setdefault(thread_id, {}).update(data)
        return {"idThread": thread_id, **self.threads[thread_id]}

    async def share_thread(self, thread_id: str):
        return f"code-{thread_id[:4]}"

    async def get_threads(self):
        return list(self.threads.values())

    async def get_thread(self, thread_id: str):
        return self.threads.get(thread_id)

    async def get_shared_thread(self, share_code: str):
        return None

    async def get_current_user(self):
        return {"id": "u-1", "email": "dev@example.org"}


class FakeLLM:
    def __init__(self, title: str | None = "Greeting Chat", error: Exception | None = None):
        self.title = title
        self.error = error
        self.histories = []

    async def generate_title(self, history):
        self.histories.append(history)
        if self.error is not None:
            raise self.error
        return self.title


@pytest.fixture
def settings(tmp_path):
    return Settings(
        mistral_api_key="test-key",
        cache_file=str(tmp_path / "threads_cache.json"),
        fast_models=["mistral-large-latest"],
    )


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def mistral():
    return FakeMistral()


@pytest.fixture
def agent():
    return FakeAgent()


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def llm():
    return FakeLLM()


@pytest.fixture
def cache(tmp_path, settings):
    return ThreadCache(tmp_path / "threads_cache.json", settings=settings)


@pytest.fixture
def reconciler(store, llm, events, settings):
    return ThreadReconciler(store, llm, events, settings)


@pytest.fixture
def orchestrator(mistral, agent, reconciler, cache, events, settings):
    return ConversationOrchestrator(
        registry=ActiveRequestRegistry(events),
        content_store=ContentStore(mistral),
        mistral=mistral,
        agent=agent,
        reconciler=reconciler,
        cache=cache,
        events=events,
        settings=settings,
    )
