"""Local thread cache: every thread of this session, persisted as JSON."""

import logging
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from threadchat.config import Settings, get_settings
from threadchat.models.chat import Thread, ThreadStatus
from threadchat.services.clock import utc_now

logger = logging.getLogger(__name__)

_threads_adapter = TypeAdapter(list[Thread])


class ThreadCache:
    def __init__(self, path: Path | str | None = None, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.path = Path(path) if path is not None else Path(self.settings.cache_file)
        self._threads: dict[str, Thread] = {}

    def load(self) -> list[Thread]:
        """Read the cache file; a missing or corrupt file yields an empty cache."""
        if not self.path.exists():
            return []
        try:
            threads = _threads_adapter.validate_json(self.path.read_bytes())
        except (OSError, ValidationError, ValueError) as e:
            logger.warning("Ignoring unreadable thread cache %s: %s", self.path, e)
            return []
        self._threads = {t.id: t for t in threads}
        logger.info("Loaded %d thread(s) from %s", len(self._threads), self.path)
        return list(self._threads.values())

    def flush(self) -> None:
        try:
            payload = _threads_adapter.dump_json(list(self._threads.values()), indent=2)
            self.path.write_bytes(payload)
        except OSError as e:
            logger.error("Could not write thread cache %s: %s", self.path, e)

    def ids(self) -> list[str]:
        return list(self._threads)

    def exists(self, thread_id: str) -> bool:
        return thread_id in self._threads

    def get(self, thread_id: str) -> Thread | None:
        return self._threads.get(thread_id)

    def all(self) -> list[Thread]:
        """Threads, most recently updated first."""
        return sorted(self._threads.values(), key=lambda t: t.updated_at, reverse=True)

    def save(self, thread: Thread) -> None:
        self._threads[thread.id] = thread
        self.flush()

    def merge_remote(self, threads: list[Thread]) -> None:
        """Adopt server threads; a thread already held locally keeps its local state."""
        for thread in threads:
            self._threads.setdefault(thread.id, thread)
        self.flush()

    def new_thread(self, thread_id: str | None = None, context: str | None = None, model: str | None = None) -> Thread:
        kwargs = {"id": thread_id} if thread_id else {}
        thread = Thread(
            **kwargs,
            created_at=utc_now(),
            updated_at=utc_now(),
            context=context if context is not None else self.settings.default_context,
            model=model or self.settings.resolve_model(),
            status=ThreadStatus.LOCAL,
        )
        self.save(thread)
        return thread

    def open_or_create(self, thread_id: str) -> Thread:
        """The cached thread with this id, or a new local thread that takes the id."""
        existing = self.get(thread_id)
        if existing is not None:
            return existing
        thread = self.new_thread(thread_id=thread_id)
        thread.name = f"Thread {thread_id}"
        self.flush()
        return thread


_thread_cache: ThreadCache | None = None


def get_thread_cache() -> ThreadCache:
    global _thread_cache
    if _thread_cache is None:
        _thread_cache = ThreadCache()
        _thread_cache.load()
    return _thread_cache
