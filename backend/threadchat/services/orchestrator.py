"""
Conversation orchestrator: runs one user turn against the remote agent.

Each operation is split in two:
1. prepare_*: prune cancelled remnants, resolve attachments, append the user
   message and the loading placeholder, claim the thread in the registry
2. run_turn: pick the tools, run the agent, decode the response, then commit
   it only if the request was not cancelled meanwhile and hand the thread to
   the reconciler

The route layer awaits the first half and schedules the second, so a client
gets the placeholder ids back before the agent answers.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace

import httpx

from threadchat.config import Settings, get_settings
from threadchat.exceptions import (
    ConfigurationError,
    ContentResolutionError,
    InvalidTurnError,
    ProviderError,
    ThreadBusyError,
)
from threadchat.models.chat import (
    CANCELLED_TEXT,
    LOADING_SENTINEL,
    ROOT,
    AttachmentKind,
    AttachmentRef,
    Message,
    MessageStatus,
    Sender,
    Thread,
)
from threadchat.services import message_tree
from threadchat.services.agent_service import AgentContext, AgentService
from threadchat.services.clock import to_epoch_ms, utc_now, utc_now_plus
from threadchat.services.content_store import ContentStore
from threadchat.services.events import EventBus, Notification, ThreadUpdated
from threadchat.services.hashing_service import decode_payload
from threadchat.services.mistral_service import MistralService
from threadchat.services.reconciler import ThreadReconciler
from threadchat.services.request_registry import ActiveRequestRegistry
from threadchat.services.response_decoder import (
    DEFAULT_IMAGE_MIME,
    DecodedResponse,
    GeneratedFileSegment,
    ImageSegment,
    TextSegment,
    decode_response,
)
from threadchat.services.thread_cache import ThreadCache
from threadchat.tools.definitions import CapabilityHints

logger = logging.getLogger(__name__)

TRANSCRIBING_TEXT = "<i>Transcribing audio...</i>"
EMPTY_RESPONSE_TEXT = "The agent returned no content."


@dataclass
class UploadedFile:
    file_name: str
    mime_type: str | None
    data: bytes


@dataclass
class Turn:
    """One prepared generation: the placeholder plus what the agent needs."""
    thread: Thread
    assistant_message: Message
    user_message: Message | None
    history: list[dict]
    prompt: str | None = None
    attachments: list[AttachmentRef] = field(default_factory=list)
    hints: CapabilityHints = field(default_factory=CapabilityHints)
    audio: bytes | None = None
    audio_name: str = "audio.mp3"
    # Regenerating keeps the user turn; only the reply is cancelled on failure
    cancel_user_on_failure: bool = True


@dataclass
class FoldResult:
    text: str = ""
    thinking: str = ""
    attachments: list[AttachmentRef] = field(default_factory=list)


def error_text(detail: str) -> str:
    return f"**Error:** {detail}"


def _image_mime(mime_type: str | None) -> str:
    if not mime_type:
        return DEFAULT_IMAGE_MIME
    return mime_type if "/" in mime_type else f"image/{mime_type}"


def _mime_from_data_url(payload: str) -> str | None:
    if not payload.startswith("data:"):
        return None
    header = payload[5:].split(",", 1)[0]
    return header.split(";", 1)[0] or None


class ConversationOrchestrator:
    def __init__(
        self,
        registry: ActiveRequestRegistry,
        content_store: ContentStore,
        mistral: MistralService,
        agent: AgentService,
        reconciler: ThreadReconciler,
        cache: ThreadCache,
        events: EventBus,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.registry = registry
        self.content_store = content_store
        self.mistral = mistral
        self.agent = agent
        self.reconciler = reconciler
        self.cache = cache
        self.events = events
        self.settings = settings or get_settings()
        self.transport = transport

    # ==================== Preparation (steps 1-3) ====================

    async def _check_ready(self, thread: Thread) -> None:
        if self.registry.has(thread.id):
            raise ThreadBusyError(thread.id)
        if not await self.mistral.validate_api_key():
            raise ConfigurationError("Missing or invalid Mistral API key. Update it in the settings.")

    def _continue_from(self, thread: Thread) -> Message | None:
        return message_tree.latest_active(thread, exclude=self.registry.pending_message_ids())

    def _claim(self, thread: Thread, placeholder: Message, *messages: Message) -> None:
        """Register the placeholder and append the turn's messages."""
        if self.registry.start(thread.id, placeholder.id) is None:
            raise ThreadBusyError(thread.id)
        message_tree.append(thread, *messages)
        self.cache.save(thread)
        self.events.publish(ThreadUpdated(thread_id=thread.id))

    async def _resolve_uploads(self, files: list[UploadedFile]) -> list[AttachmentRef]:
        return list(
            await asyncio.gather(
                *(self.content_store.attachment_from_upload(f.file_name, f.mime_type, f.data) for f in files)
            )
        )

    def _placeholder(self, thread: Thread, parent_id: str, offset_ms: int) -> Message:
        return Message(
            thread_id=thread.id,
            sender=Sender.ASSISTANT,
            text=LOADING_SENTINEL,
            timestamp=utc_now_plus(offset_ms),
            parent_id=parent_id,
        )

    async def prepare_send(
        self,
        thread: Thread,
        text: str,
        files: list[UploadedFile] | None = None,
        hints: CapabilityHints | None = None,
    ) -> Turn:
        await self._check_ready(thread)
        message_tree.prune_cancelled(thread, include_user_turn=True)

        attachments = await self._resolve_uploads(files or [])

        parent = self._continue_from(thread)
        history = message_tree.history_to(thread, parent, self.settings.history_limit)
        user_message = Message(
            thread_id=thread.id,
            sender=Sender.USER,
            text=text,
            parent_id=parent.id if parent else ROOT,
            attachments=attachments,
        )
        placeholder = self._placeholder(thread, user_message.id, 1000)
        self._claim(thread, placeholder, user_message, placeholder)

        return Turn(
            thread=thread,
            assistant_message=placeholder,
            user_message=user_message,
            history=history,
            prompt=text,
            attachments=attachments,
            hints=hints or CapabilityHints(),
        )

    async def prepare_audio(
        self,
        thread: Thread,
        audio: bytes,
        file_name: str = "audio.mp3",
        hints: CapabilityHints | None = None,
    ) -> Turn:
        await self._check_ready(thread)
        message_tree.prune_cancelled(thread, include_user_turn=True)

        parent = self._continue_from(thread)
        history = message_tree.history_to(thread, parent, self.settings.history_limit)
        user_message = Message(
            thread_id=thread.id,
            sender=Sender.USER,
            text=TRANSCRIBING_TEXT,
            parent_id=parent.id if parent else ROOT,
        )
        placeholder = self._placeholder(thread, user_message.id, 1000)
        self._claim(thread, placeholder, user_message, placeholder)

        hints = replace(hints or CapabilityHints(), audio=True)
        return Turn(
            thread=thread,
            assistant_message=placeholder,
            user_message=user_message,
            history=history,
            hints=hints,
            audio=audio,
            audio_name=file_name,
        )

    async def prepare_regenerate(
        self,
        thread: Thread,
        message: Message,
        hints: CapabilityHints | None = None,
    ) -> Turn:
        """New assistant sibling answering the same user message."""
        if message.sender != Sender.ASSISTANT:
            raise InvalidTurnError("Only assistant messages can be regenerated")
        await self._check_ready(thread)

        parent_id = message.parent_id
        message_tree.prune_cancelled(thread, include_user_turn=False)
        user_message = message_tree.find(thread, parent_id)
        if user_message is None or user_message.sender != Sender.USER:
            raise InvalidTurnError("The message has no user turn to answer")

        history = message_tree.history_to(thread, user_message, self.settings.history_limit)
        placeholder = self._placeholder(thread, user_message.id, 1000)
        self._claim(thread, placeholder, placeholder)

        return Turn(
            thread=thread,
            assistant_message=placeholder,
            user_message=None,
            history=history,
            prompt=None,
            attachments=user_message.attachments,
            hints=hints or CapabilityHints(),
            cancel_user_on_failure=False,
        )

    async def prepare_edit(
        self,
        thread: Thread,
        message: Message,
        new_text: str,
        hints: CapabilityHints | None = None,
    ) -> Turn:
        """New user sibling with the edited text, plus its reply."""
        if message.sender != Sender.USER:
            raise InvalidTurnError("Only user messages can be edited")
        await self._check_ready(thread)

        parent_id = message.parent_id or ROOT
        attachments = [a.model_copy(deep=True) for a in message.attachments]
        message_tree.prune_cancelled(thread, include_user_turn=True)

        parent = message_tree.find(thread, parent_id)
        history = message_tree.history_to(thread, parent, self.settings.history_limit)
        user_message = Message(
            thread_id=thread.id,
            sender=Sender.USER,
            text=new_text,
            timestamp=utc_now_plus(1000),
            parent_id=parent_id,
            attachments=attachments,
        )
        placeholder = self._placeholder(thread, user_message.id, 2000)
        self._claim(thread, placeholder, user_message, placeholder)

        return Turn(
            thread=thread,
            assistant_message=placeholder,
            user_message=user_message,
            history=history,
            prompt=new_text,
            attachments=attachments,
            hints=hints or CapabilityHints(),
        )

    # ==================== Generation (steps 4-9) ====================

    async def _transcribe(self, turn: Turn) -> str:
        text, lang = await self.mistral.transcribe(
            turn.audio, self.settings.transcription_model, filename=turn.audio_name
        )
        if not text:
            raise ProviderError("The audio could not be transcribed")
        logger.info("Thread %s: transcribed audio (%s, %d chars)", turn.thread.id, lang, len(text))
        return text

    async def run_turn(self, turn: Turn) -> bool:
        """
        Run the agent for a prepared turn. Returns True when the result was
        committed, False when it failed or was discarded after cancellation.
        """
        thread = turn.thread
        transcript = None
        try:
            prompt = turn.prompt
            if turn.audio is not None:
                transcript = await self._transcribe(turn)
                prompt = transcript

            library_ids = await self.content_store.ensure_handles(turn.attachments)
            turn_text = prompt or (turn.history[-1]["content"] if turn.history else "")
            inputs = [*turn.history]
            if prompt:
                inputs.append({"role": "user", "content": prompt})

            response = await self.agent.run(
                AgentContext(
                    thread=thread,
                    text=turn_text,
                    inputs=inputs,
                    library_ids=library_ids,
                    hints=turn.hints,
                )
            )
            decoded = decode_response(response)
            if decoded.is_empty:
                raise ProviderError(EMPTY_RESPONSE_TEXT)
            result = await self._fold(decoded)
        except ProviderError as e:
            self._fail(turn, e.message, transcript)
            return False
        except Exception as e:
            logger.exception("Turn on thread %s failed", thread.id)
            self._fail(turn, str(e) or type(e).__name__, transcript)
            return False

        # Check-and-release, then commit with no await in between
        if not self.registry.complete(thread.id, turn.assistant_message.id):
            logger.info("Thread %s: request was cancelled, discarding response", thread.id)
            return False

        assistant = turn.assistant_message
        assistant.text = result.text
        assistant.thinking = result.thinking
        assistant.attachments = result.attachments
        if transcript is not None and turn.user_message is not None:
            turn.user_message.text = transcript
        self.cache.save(thread)
        self.events.publish(ThreadUpdated(thread_id=thread.id))

        await self.reconciler.reconcile(thread)

        thread.updated_at = utc_now()
        self.cache.save(thread)
        self.events.publish(ThreadUpdated(thread_id=thread.id))
        return True

    def _fail(self, turn: Turn, detail: str, transcript: str | None = None) -> None:
        thread = turn.thread
        if not self.registry.complete(thread.id, turn.assistant_message.id):
            logger.info("Thread %s: failure after cancellation ignored (%s)", thread.id, detail)
            return

        logger.warning("Thread %s: turn failed: %s", thread.id, detail)
        assistant = turn.assistant_message
        assistant.text = error_text(detail)
        assistant.thinking = ""
        assistant.status = MessageStatus.CANCELLED
        if turn.user_message is not None:
            if transcript is not None:
                turn.user_message.text = transcript
            if turn.cancel_user_on_failure:
                turn.user_message.status = MessageStatus.CANCELLED

        self.cache.save(thread)
        self.events.publish(Notification(level="error", message=detail, thread_id=thread.id))
        self.events.publish(ThreadUpdated(thread_id=thread.id))

    # ==================== Response fold-in ====================

    async def _fold(self, decoded: DecodedResponse) -> FoldResult:
        """Text and images in provider order; a failing image is skipped."""
        result = FoldResult(thinking="\n".join(decoded.thinking))
        parts: list[str] = []

        for segment in decoded.segments:
            if isinstance(segment, TextSegment):
                if segment.text:
                    parts.append(segment.text)
                continue
            try:
                attachment = await self._resolve_image(segment)
            except (ContentResolutionError, ProviderError, ValueError) as e:
                logger.warning("Skipping image segment: %s", e)
                continue
            if attachment is None:
                continue
            result.attachments.append(attachment)
            parts.append(f"![{attachment.file_name}]({attachment.content.payload})")

        result.text = "\n\n".join(parts)
        return result

    async def _fetch_url(self, url: str) -> tuple[bytes, str | None]:
        async with httpx.AsyncClient(
            timeout=self.settings.request_timeout,
            transport=self.transport,
            follow_redirects=True,
        ) as client:
            try:
                response = await client.get(url)
                response.raise_for_status()
            except (httpx.InvalidURL, httpx.HTTPError) as e:
                raise ContentResolutionError(f"Image fetch failed for {url!r}: {e}") from e
            content_type = response.headers.get("content-type", "").split(";", 1)[0].strip()
            return response.content, content_type or None

    async def _resolve_image(self, segment: ImageSegment | GeneratedFileSegment) -> AttachmentRef | None:
        """Bytes by generated file id, inline payload or URL, as a content-addressed attachment."""
        mime = None
        if isinstance(segment, GeneratedFileSegment):
            data = await self.mistral.download_file(segment.file_id)
            mime = segment.mime_type
        else:
            source = segment.data or segment.url
            if not source:
                return None
            mime = _mime_from_data_url(source) or segment.mime_type
            if source.startswith(("http://", "https://")):
                data, fetched_mime = await self._fetch_url(source)
                mime = fetched_mime if fetched_mime and fetched_mime.startswith("image/") else mime
            else:
                data = decode_payload(source)

        if not data:
            raise ContentResolutionError("Image payload is empty")

        mime = _image_mime(mime)
        content = await self.content_store.resolve(data, mime)
        file_name = segment.filename or f"mistral_image_{to_epoch_ms(utc_now())}.{mime.split('/')[-1]}"
        return AttachmentRef(
            file_name=file_name,
            mime_type=mime,
            kind=AttachmentKind.IMAGE,
            content=content,
        )

    # ==================== Public operations ====================

    async def send_message(
        self,
        thread: Thread,
        text: str,
        files: list[UploadedFile] | None = None,
        hints: CapabilityHints | None = None,
    ) -> Turn:
        turn = await self.prepare_send(thread, text, files, hints)
        await self.run_turn(turn)
        return turn

    async def send_audio(
        self,
        thread: Thread,
        audio: bytes,
        file_name: str = "audio.mp3",
        hints: CapabilityHints | None = None,
    ) -> Turn:
        turn = await self.prepare_audio(thread, audio, file_name, hints)
        await self.run_turn(turn)
        return turn

    async def regenerate_message(
        self, thread: Thread, message: Message, hints: CapabilityHints | None = None
    ) -> Turn:
        turn = await self.prepare_regenerate(thread, message, hints)
        await self.run_turn(turn)
        return turn

    async def edit_message(
        self,
        thread: Thread,
        message: Message,
        new_text: str,
        hints: CapabilityHints | None = None,
    ) -> Turn:
        turn = await self.prepare_edit(thread, message, new_text, hints)
        await self.run_turn(turn)
        return turn

    def cancel(self, thread: Thread) -> bool:
        """Cancel the pending request; its placeholder is frozen as cancelled."""
        request = self.registry.cancel(thread.id)
        if request is None:
            return False

        placeholder = message_tree.find(thread, request.pending_message_id)
        if placeholder is not None:
            placeholder.text = CANCELLED_TEXT
            placeholder.thinking = ""
            placeholder.status = MessageStatus.CANCELLED
        self.cache.save(thread)
        self.events.publish(ThreadUpdated(thread_id=thread.id))
        return True


# Singleton instance
_orchestrator: ConversationOrchestrator | None = None
_events: EventBus | None = None
_registry: ActiveRequestRegistry | None = None


def get_event_bus() -> EventBus:
    global _events
    if _events is None:
        _events = EventBus()
    return _events


def get_registry() -> ActiveRequestRegistry:
    """Shared across orchestrator resets so pending requests stay single flight."""
    global _registry
    if _registry is None:
        _registry = ActiveRequestRegistry(get_event_bus())
    return _registry


def get_orchestrator() -> ConversationOrchestrator:
    global _orchestrator
    if _orchestrator is None:
        from threadchat.services.llm_service import get_llm_service
        from threadchat.services.mistral_service import get_mistral_service
        from threadchat.services.thread_cache import get_thread_cache
        from threadchat.services.thread_store import get_thread_store

        settings = get_settings()
        events = get_event_bus()
        mistral = get_mistral_service()
        _orchestrator = ConversationOrchestrator(
            registry=get_registry(),
            content_store=ContentStore(mistral),
            mistral=mistral,
            agent=AgentService(mistral, settings),
            reconciler=ThreadReconciler(get_thread_store(), get_llm_service(), events, settings),
            cache=get_thread_cache(),
            events=events,
            settings=settings,
        )
    return _orchestrator


def reset_orchestrator() -> None:
    """Drop the orchestrator so the next call picks up new settings."""
    global _orchestrator
    _orchestrator = None
