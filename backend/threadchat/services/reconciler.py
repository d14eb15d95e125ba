"""
Thread reconciler: pushes local threads and messages to the remote store.

Both operations are best effort. A failure is reported as a Notification
event and leaves local state untouched; whatever was not acknowledged is
pushed again on the next turn. The server skips message ids it already has,
so re-sending is safe.
"""

import logging

from threadchat.config import Settings, get_settings
from threadchat.exceptions import ReconciliationError
from threadchat.models.chat import (
    DEFAULT_THREAD_NAME,
    AttachmentStatus,
    Message,
    MessageStatus,
    Sender,
    Thread,
    ThreadStatus,
)
from threadchat.services import message_tree
from threadchat.services.clock import ensure_date, parse_to_utc, to_epoch_ms, utc_now
from threadchat.services.events import EventBus, Notification, ThreadUpdated
from threadchat.services.llm_service import LLMService
from threadchat.services.thread_store import ThreadStore

logger = logging.getLogger(__name__)


def message_to_wire(thread: Thread, message: Message) -> dict:
    timestamp = parse_to_utc(message.timestamp) or utc_now()
    return {
        "idMessage": message.id,
        "idThread": thread.id,
        "sender": message.sender.value,
        "text": message.text,
        "thinking": message.thinking,
        "parentId": message.parent_id,
        "date": to_epoch_ms(timestamp),
    }


def attachment_to_wire(attachment) -> dict:
    extension = attachment.file_name.rsplit(".", 1)[-1] if "." in attachment.file_name else ""
    return {
        "fileName": attachment.file_name,
        "extension": extension,
        "type": attachment.kind.value,
        "libraryId": attachment.library_handle or "",
        "sha256": attachment.content.hash,
    }


def message_from_wire(thread_id: str, raw: dict, status: MessageStatus = MessageStatus.SYNCED) -> Message:
    sender = raw.get("sender") or raw.get("role") or "user"
    return Message(
        id=str(raw.get("idMessage") or raw.get("id")),
        thread_id=thread_id,
        sender=Sender.ASSISTANT if sender == "assistant" else Sender.USER,
        text=raw.get("text") or raw.get("content") or "",
        thinking=raw.get("thinking") or "",
        timestamp=parse_to_utc(raw.get("sentAt") or raw.get("timestamp") or raw.get("date")),
        parent_id=raw.get("parentId"),
        status=status,
    )


def thread_from_wire(raw: dict, default_model: str, shareable: bool = False) -> Thread | None:
    """Map a store row to a Thread; rows without an id map to None."""
    thread_id = raw.get("idThread") or raw.get("id")
    if not thread_id:
        return None
    thread_id = str(thread_id)
    messages = raw.get("messages") or raw.get("message") or []
    return Thread(
        id=thread_id,
        name=raw.get("name") or DEFAULT_THREAD_NAME,
        created_at=ensure_date(raw.get("createdAt")),
        updated_at=ensure_date(raw.get("updatedAt")),
        context=raw.get("context") or "",
        model=raw.get("model") or default_model,
        status=ThreadStatus.REMOTE,
        shareable=shareable,
        messages=[
            message_from_wire(thread_id, m)
            for m in messages
            if isinstance(m, dict) and (m.get("idMessage") or m.get("id"))
        ],
    )


class ThreadReconciler:
    def __init__(
        self,
        store: ThreadStore,
        llm: LLMService | None,
        events: EventBus,
        settings: Settings | None = None,
    ):
        self.store = store
        self.llm = llm
        self.events = events
        self.settings = settings or get_settings()

    def _notify_failure(self, thread: Thread, message: str, error: Exception) -> None:
        logger.error("%s (thread %s): %s", message, thread.id, error)
        self.events.publish(Notification(level="error", message=message, thread_id=thread.id))

    async def generate_name(self, thread: Thread) -> str:
        """Short descriptive name from the conversation, or the default name."""
        if self.llm is None:
            return thread.name or DEFAULT_THREAD_NAME
        history = message_tree.history_to(
            thread, message_tree.latest_active(thread), self.settings.history_limit
        )
        try:
            name = await self.llm.generate_title(history)
        except Exception as e:
            logger.warning("Thread name generation failed for %s: %s", thread.id, e)
            name = None
        return name or thread.name or DEFAULT_THREAD_NAME

    async def ensure_remote(self, thread: Thread) -> bool:
        """Create the thread on the server if it only exists locally."""
        if thread.status == ThreadStatus.REMOTE:
            return True

        thread.name = await self.generate_name(thread)
        try:
            await self.store.create_thread(
                {
                    "idThread": thread.id,
                    "name": thread.name,
                    "context": thread.context,
                    "model": thread.model,
                    "createdAt": thread.created_at.isoformat(),
                    "updatedAt": thread.updated_at.isoformat(),
                }
            )
        except ReconciliationError as e:
            self._notify_failure(thread, "Thread creation on the server failed.", e)
            return False

        thread.status = ThreadStatus.REMOTE
        logger.info("Thread %s created remotely as '%s'", thread.id, thread.name)
        self.events.publish(ThreadUpdated(thread_id=thread.id))
        return True

    async def _push_attachment_contents(self, messages: list[Message]) -> None:
        pushed: set[str] = set()
        for message in messages:
            for att in message.attachments:
                content_hash = att.content.hash
                if att.status == AttachmentStatus.SYNCED or content_hash in pushed:
                    continue
                if not await self.store.has_content(content_hash):
                    await self.store.upload_content(content_hash, att.content.payload)
                pushed.add(content_hash)

    async def sync_messages(self, thread: Thread) -> int:
        """Push every message the server has not acknowledged yet."""
        pending = [
            m
            for m in thread.messages
            if m.status not in (MessageStatus.SYNCED, MessageStatus.CANCELLED) and not m.is_loading
        ]
        if not pending:
            return 0

        try:
            inserted = await self.store.sync_messages([message_to_wire(thread, m) for m in pending])
            await self._push_attachment_contents(pending)
            for message in pending:
                for att in message.attachments:
                    if att.status != AttachmentStatus.SYNCED:
                        await self.store.create_attachment(message.id, attachment_to_wire(att))
                        att.status = AttachmentStatus.SYNCED
        except ReconciliationError as e:
            self._notify_failure(thread, "Message synchronisation failed.", e)
            return 0

        for message in pending:
            message.status = MessageStatus.SYNCED
        logger.info("Thread %s: synced %d message(s), %d new on server", thread.id, len(pending), inserted)
        return len(pending)

    async def reconcile(self, thread: Thread) -> None:
        """ensure_remote + sync_messages; never raises."""
        if await self.ensure_remote(thread):
            await self.sync_messages(thread)

    async def update_remote(self, thread: Thread) -> bool:
        """Push name/context/model of a remote thread; the server's answer wins."""
        if thread.status != ThreadStatus.REMOTE:
            return False
        try:
            updated = await self.store.update_thread(
                thread.id,
                {"name": thread.name, "context": thread.context, "model": thread.model},
            )
        except ReconciliationError as e:
            self._notify_failure(thread, "Thread update failed.", e)
            return False
        if updated:
            thread.name = updated.get("name") or thread.name
            thread.context = updated.get("context") if updated.get("context") is not None else thread.context
            thread.model = updated.get("model") or thread.model
        self.events.publish(ThreadUpdated(thread_id=thread.id))
        return True

    async def share_code(self, thread: Thread) -> str | None:
        try:
            code = await self.store.share_thread(thread.id)
        except ReconciliationError as e:
            self._notify_failure(thread, "Share link creation failed.", e)
            return None
        if code:
            thread.shareable = True
        return code

    async def load_remote_threads(self) -> list[Thread]:
        try:
            rows = await self.store.get_threads()
        except ReconciliationError as e:
            logger.error("Failed to fetch threads from the store: %s", e)
            return []
        default_model = self.settings.resolve_model()
        threads = [thread_from_wire(row, default_model) for row in rows if isinstance(row, dict)]
        return [t for t in threads if t is not None]

    async def load_remote_thread(self, thread_id: str) -> Thread | None:
        raw = await self.store.get_thread(thread_id)
        if not raw:
            return None
        return thread_from_wire(raw, self.settings.resolve_model())

    async def open_shared(self, share_code: str) -> Thread | None:
        raw = await self.store.get_shared_thread(share_code)
        if not raw:
            return None
        return thread_from_wire(raw, self.settings.resolve_model(), shareable=True)
