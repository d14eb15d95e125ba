import asyncio

import httpx
import pytest

from threadchat.exceptions import ConfigurationError, InvalidTurnError, ProviderError, ThreadBusyError
from threadchat.models.chat import (
    CANCELLED_TEXT,
    LOADING_SENTINEL,
    ROOT,
    AttachmentKind,
    MessageStatus,
    Sender,
    ThreadStatus,
)
from threadchat.services.events import Notification, ThreadUpdated
from threadchat.services.orchestrator import UploadedFile, error_text
from threadchat.tools.definitions import CapabilityHints

from conftest import text_response

PNG_DATA_URL = "data:image/png;base64,iVBORw0KGgo="


@pytest.mark.asyncio
async def test_hello_creates_user_turn_and_placeholder(orchestrator, cache):
    thread = cache.new_thread()

    turn = await orchestrator.prepare_send(thread, "Hello")

    assert len(thread.messages) == 2
    user, assistant = thread.messages
    assert user.sender == Sender.USER and user.text == "Hello"
    assert user.parent_id == ROOT
    assert assistant.parent_id == user.id
    assert assistant.text == LOADING_SENTINEL
    assert orchestrator.registry.get(thread.id).pending_message_id == assistant.id
    assert turn.assistant_message is assistant


@pytest.mark.asyncio
async def test_successful_turn_commits_and_reconciles(orchestrator, cache, agent, store, events):
    seen = []
    events.subscribe(seen.append)
    thread = cache.new_thread()

    turn = await orchestrator.send_message(thread, "Hello")

    assert turn.assistant_message.text == "Hi there"
    assert agent.contexts[0].inputs == [{"role": "user", "content": "Hello"}]
    assert not orchestrator.registry.has(thread.id)
    assert thread.status == ThreadStatus.REMOTE
    assert store.threads[thread.id]["name"] == "Greeting Chat"
    assert thread.name == "Greeting Chat"
    assert set(store.messages) == {m.id for m in thread.messages}
    assert all(m.status == MessageStatus.SYNCED for m in thread.messages)
    assert any(isinstance(e, ThreadUpdated) for e in seen)
    assert cache.get(thread.id) is thread


@pytest.mark.asyncio
async def test_provider_failure_cancels_both_messages(orchestrator, cache, agent, store, events):
    agent.error = ProviderError("model overloaded", status_code=503)
    notes = []
    events.subscribe(lambda e: notes.append(e) if isinstance(e, Notification) else None)
    thread = cache.new_thread()

    turn = await orchestrator.prepare_send(thread, "Hello")
    committed = await orchestrator.run_turn(turn)

    assert committed is False
    user, assistant = thread.messages
    assert user.status == MessageStatus.CANCELLED
    assert assistant.status == MessageStatus.CANCELLED
    assert assistant.text == error_text("model overloaded")
    assert thread.status == ThreadStatus.LOCAL
    assert store.threads == {} and store.messages == {}
    assert not orchestrator.registry.has(thread.id)
    assert notes and notes[0].message == "model overloaded"


@pytest.mark.asyncio
async def test_empty_response_is_a_failure(orchestrator, cache, agent):
    agent.response = {"outputs": []}
    thread = cache.new_thread()

    turn = await orchestrator.send_message(thread, "Hello")

    assert turn.assistant_message.status == MessageStatus.CANCELLED
    assert turn.assistant_message.text.startswith("**Error:**")


@pytest.mark.asyncio
async def test_cancel_before_response_discards_result(orchestrator, cache, agent, store):
    agent.gate = asyncio.Event()
    thread = cache.new_thread()
    turn = await orchestrator.prepare_send(thread, "Hello")

    task = asyncio.create_task(orchestrator.run_turn(turn))
    while not agent.contexts:
        await asyncio.sleep(0)

    assert orchestrator.cancel(thread) is True
    agent.gate.set()
    committed = await task

    assert committed is False
    placeholder = turn.assistant_message
    assert placeholder.text == CANCELLED_TEXT
    assert placeholder.status == MessageStatus.CANCELLED
    assert placeholder.attachments == []
    assert store.messages == {}
    assert thread.status == ThreadStatus.LOCAL


@pytest.mark.asyncio
async def test_cancel_without_pending_request(orchestrator, cache):
    assert orchestrator.cancel(cache.new_thread()) is False


@pytest.mark.asyncio
async def test_second_dispatch_on_busy_thread_is_rejected(orchestrator, cache):
    thread = cache.new_thread()
    await orchestrator.prepare_send(thread, "first")

    with pytest.raises(ThreadBusyError):
        await orchestrator.prepare_send(thread, "second")
    assert len(thread.messages) == 2


@pytest.mark.asyncio
async def test_other_threads_are_not_blocked(orchestrator, cache):
    first, second = cache.new_thread(), cache.new_thread()
    await orchestrator.prepare_send(first, "one")
    await orchestrator.prepare_send(second, "two")
    assert orchestrator.registry.has(first.id) and orchestrator.registry.has(second.id)


@pytest.mark.asyncio
async def test_invalid_key_short_circuits(orchestrator, cache, mistral, agent):
    mistral.valid_key = False
    thread = cache.new_thread()

    with pytest.raises(ConfigurationError):
        await orchestrator.send_message(thread, "Hello")
    assert thread.messages == []
    assert agent.contexts == []


@pytest.mark.asyncio
async def test_retry_after_failure_prunes_dead_branch(orchestrator, cache, agent):
    agent.error = ProviderError("boom")
    thread = cache.new_thread()
    await orchestrator.send_message(thread, "Hello")

    agent.error = None
    turn = await orchestrator.send_message(thread, "Hello again")

    assert [m.text for m in thread.messages] == ["Hello again", "Hi there"]
    assert turn.user_message.parent_id == ROOT


@pytest.mark.asyncio
async def test_identical_attachments_share_hash_and_handle(orchestrator, cache, agent, mistral):
    thread = cache.new_thread()
    files = [
        UploadedFile("a.txt", "text/plain", b"same content"),
        UploadedFile("b.txt", "text/plain", b"same content"),
    ]

    turn = await orchestrator.send_message(thread, "compare these", files)

    a, b = turn.user_message.attachments
    assert a.content.hash == b.content.hash
    assert a.library_handle == b.library_handle is not None
    assert agent.contexts[0].library_ids == [a.library_handle]
    assert mistral.created == 1


@pytest.mark.asyncio
async def test_ordered_fold_keeps_text_and_images_interleaved(orchestrator, cache, agent, mistral):
    mistral.files["f-1"] = b"\x89PNG generated"
    agent.response = {
        "outputs": [
            {"type": "tool.execution", "name": "image_generation", "arguments": {"prompt": "cat"}},
            {
                "type": "message.output",
                "content": [
                    {"type": "text", "text": "A"},
                    {"type": "tool_file", "file_id": "f-1", "file_name": "B.png", "file_type": "png"},
                    {"type": "text", "text": "C"},
                ],
            },
        ]
    }
    thread = cache.new_thread()

    turn = await orchestrator.send_message(thread, "draw", hints=CapabilityHints(image_generation=True))

    parts = turn.assistant_message.text.split("\n\n")
    assert parts[0] == "A"
    assert parts[1].startswith("![B.png](data:image/png;base64,")
    assert parts[2] == "C"
    assert [a.kind for a in turn.assistant_message.attachments] == [AttachmentKind.IMAGE]
    assert turn.assistant_message.thinking == 'Tool: image_generation → {"prompt": "cat"}'


@pytest.mark.asyncio
async def test_images_resolved_inline_and_by_url(orchestrator, cache, agent):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"jpeg bytes", headers={"content-type": "image/jpeg"})

    orchestrator.transport = httpx.MockTransport(handler)
    agent.response = {
        "outputs": [
            {"type": "image", "data": PNG_DATA_URL, "filename": "inline.png"},
            {"type": "image", "url": "https://img.example/remote.jpg", "filename": "remote.jpg"},
        ]
    }
    thread = cache.new_thread()

    turn = await orchestrator.send_message(thread, "show me")

    names = [a.file_name for a in turn.assistant_message.attachments]
    assert names == ["inline.png", "remote.jpg"]
    assert turn.assistant_message.attachments[1].mime_type == "image/jpeg"
    assert turn.assistant_message.attachments[1].content.payload.startswith("data:image/jpeg;base64,")


@pytest.mark.asyncio
async def test_failing_image_segment_is_skipped(orchestrator, cache, agent):
    agent.response = {
        "outputs": [
            {
                "type": "message.output",
                "content": [
                    {"type": "text", "text": "before"},
                    {"type": "tool_file", "file_id": "missing"},
                    {"type": "text", "text": "after"},
                ],
            }
        ]
    }
    thread = cache.new_thread()

    turn = await orchestrator.send_message(thread, "draw")

    assert turn.assistant_message.text == "before\n\nafter"
    assert turn.assistant_message.status != MessageStatus.CANCELLED


@pytest.mark.asyncio
async def test_malformed_image_url_is_skipped(orchestrator, cache, agent):
    agent.response = {
        "outputs": [
            {
                "type": "message.output",
                "content": [
                    {"type": "text", "text": "A"},
                    {"type": "image", "url": "https://exa mple.com/\x00bad.png"},
                    {"type": "text", "text": "C"},
                ],
            }
        ]
    }
    thread = cache.new_thread()

    turn = await orchestrator.send_message(thread, "draw")

    assert turn.assistant_message.text == "A\n\nC"
    assert turn.assistant_message.status != MessageStatus.CANCELLED
    assert turn.assistant_message.attachments == []


@pytest.mark.asyncio
async def test_regenerate_adds_sibling_reply(orchestrator, cache, agent):
    thread = cache.new_thread()
    first = await orchestrator.send_message(thread, "Hello")
    agent.response = text_response("Hello again!")

    turn = await orchestrator.regenerate_message(thread, first.assistant_message)

    replies = [m for m in thread.messages if m.parent_id == first.user_message.id]
    assert [m.text for m in replies] == ["Hi there", "Hello again!"]
    assert turn.user_message is None
    assert agent.contexts[-1].inputs == [{"role": "user", "content": "Hello"}]


@pytest.mark.asyncio
async def test_failed_regenerate_keeps_user_turn(orchestrator, cache, agent):
    thread = cache.new_thread()
    first = await orchestrator.send_message(thread, "Hello")
    agent.error = ProviderError("nope")

    turn = await orchestrator.regenerate_message(thread, first.assistant_message)

    assert turn.assistant_message.status == MessageStatus.CANCELLED
    assert first.user_message.status == MessageStatus.SYNCED


@pytest.mark.asyncio
async def test_regenerating_a_user_message_is_invalid(orchestrator, cache):
    thread = cache.new_thread()
    first = await orchestrator.send_message(thread, "Hello")
    with pytest.raises(InvalidTurnError):
        await orchestrator.prepare_regenerate(thread, first.user_message)


@pytest.mark.asyncio
async def test_edit_branches_from_the_same_parent(orchestrator, cache, agent):
    thread = cache.new_thread()
    first = await orchestrator.send_message(
        thread, "Hello", [UploadedFile("notes.txt", "text/plain", b"notes")]
    )

    turn = await orchestrator.edit_message(thread, first.user_message, "Hi")

    edited = turn.user_message
    assert edited.parent_id == first.user_message.parent_id == ROOT
    assert edited.text == "Hi"
    assert [a.content.hash for a in edited.attachments] == [
        a.content.hash for a in first.user_message.attachments
    ]
    assert turn.assistant_message.parent_id == edited.id
    assert agent.contexts[-1].inputs == [{"role": "user", "content": "Hi"}]


@pytest.mark.asyncio
async def test_audio_turn_uses_transcript_and_phone_persona(orchestrator, cache, agent, mistral):
    thread = cache.new_thread()

    turn = await orchestrator.send_audio(thread, b"fake mp3")

    assert turn.user_message.text == mistral.transcript
    ctx = agent.contexts[0]
    assert ctx.hints.audio is True
    assert ctx.inputs[-1] == {"role": "user", "content": mistral.transcript}


@pytest.mark.asyncio
async def test_audio_turn_leaves_caller_hints_alone(orchestrator, cache, agent):
    thread = cache.new_thread()
    hints = CapabilityHints(web_search=False)

    await orchestrator.send_audio(thread, b"fake mp3", hints=hints)

    assert hints.audio is False
    assert agent.contexts[0].hints.audio is True
    assert agent.contexts[0].hints.web_search is False


@pytest.mark.asyncio
async def test_reconciliation_failure_keeps_local_state_and_retries(orchestrator, cache, store, events):
    notes = []
    events.subscribe(lambda e: notes.append(e) if isinstance(e, Notification) else None)
    store.fail_create = True
    thread = cache.new_thread()

    turn = await orchestrator.send_message(thread, "Hello")

    assert turn.assistant_message.text == "Hi there"
    assert thread.status == ThreadStatus.LOCAL
    assert all(m.status == MessageStatus.LOCAL for m in thread.messages)
    assert notes and notes[0].level == "error"

    store.fail_create = False
    await orchestrator.send_message(thread, "Still there?")

    assert thread.status == ThreadStatus.REMOTE
    assert len(store.messages) == 4
    assert all(m.status == MessageStatus.SYNCED for m in thread.messages)
