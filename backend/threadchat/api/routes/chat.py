import asyncio
import json
import logging
from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from sse_starlette.sse import EventSourceResponse

from threadchat.exceptions import ConfigurationError, InvalidTurnError, ThreadBusyError
from threadchat.models.chat import (
    EditRequest,
    Message,
    RegenerateRequest,
    Thread,
    ThreadCreate,
    ThreadStatus,
    ThreadSummary,
    ThreadUpdate,
    TurnAccepted,
)
from threadchat.services import message_tree
from threadchat.services.clock import utc_now
from threadchat.services.events import EventBus, ThreadUpdated, event_payload
from threadchat.services.orchestrator import (
    ConversationOrchestrator,
    Turn,
    UploadedFile,
    get_event_bus,
    get_orchestrator,
)
from threadchat.tools.definitions import CapabilityHints

logger = logging.getLogger(__name__)

router = APIRouter()

# Seconds between disconnect checks on the event stream
EVENT_POLL_INTERVAL = 15.0


def _get_thread(orchestrator: ConversationOrchestrator, thread_id: str) -> Thread:
    thread = orchestrator.cache.get(thread_id)
    if not thread:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Thread not found",
        )
    return thread


def _get_message(thread: Thread, message_id: str) -> Message:
    message = message_tree.find(thread, message_id)
    if not message:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Message not found",
        )
    return message


def _summary(orchestrator: ConversationOrchestrator, thread: Thread) -> ThreadSummary:
    return ThreadSummary(
        id=thread.id,
        name=thread.name,
        status=thread.status,
        created_at=thread.created_at,
        updated_at=thread.updated_at,
        pending=orchestrator.registry.has(thread.id),
    )


async def _accept(prepared, background_tasks: BackgroundTasks, orchestrator: ConversationOrchestrator) -> TurnAccepted:
    """Await the preparation half of a turn and schedule the generation half."""
    try:
        turn: Turn = await prepared
    except ConfigurationError as e:
        raise HTTPException(status_code=status.HTTP_412_PRECONDITION_FAILED, detail=str(e))
    except ThreadBusyError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except InvalidTurnError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    background_tasks.add_task(orchestrator.run_turn, turn)
    return TurnAccepted(
        thread_id=turn.thread.id,
        user_message_id=turn.user_message.id if turn.user_message else None,
        assistant_message_id=turn.assistant_message.id,
    )


@router.post("/threads", response_model=Thread)
async def create_thread(
    payload: ThreadCreate | None = None,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Create a new local thread."""
    payload = payload or ThreadCreate()
    if payload.id and orchestrator.cache.exists(payload.id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Thread already exists")
    thread = orchestrator.cache.new_thread(payload.id, payload.context, payload.model)
    orchestrator.events.publish(ThreadUpdated(thread_id=thread.id))
    return thread


@router.get("/threads", response_model=list[ThreadSummary])
async def list_threads(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """List all threads, most recently updated first."""
    return [_summary(orchestrator, t) for t in orchestrator.cache.all()]


@router.post("/threads/sync", response_model=list[ThreadSummary])
async def sync_threads(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Merge the server's threads into the local cache."""
    remote = await orchestrator.reconciler.load_remote_threads()
    orchestrator.cache.merge_remote(remote)
    return [_summary(orchestrator, t) for t in orchestrator.cache.all()]


@router.get("/threads/{thread_id}", response_model=Thread)
async def get_thread(
    thread_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Get a thread with its messages."""
    return _get_thread(orchestrator, thread_id)


@router.post("/threads/{thread_id}/open", response_model=Thread)
async def open_thread(
    thread_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Open a thread by id: cached, else from the server, else a new local one with that id."""
    if not orchestrator.cache.exists(thread_id):
        remote = await orchestrator.reconciler.load_remote_thread(thread_id)
        if remote:
            orchestrator.cache.save(remote)
            return remote
    return orchestrator.cache.open_or_create(thread_id)


@router.patch("/threads/{thread_id}", response_model=Thread)
async def update_thread(
    thread_id: str,
    payload: ThreadUpdate,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Update name, context or model; pushed to the server for remote threads."""
    thread = _get_thread(orchestrator, thread_id)
    for field, value in payload.model_dump(exclude_none=True).items():
        setattr(thread, field, value)
    thread.updated_at = utc_now()
    await orchestrator.reconciler.update_remote(thread)
    orchestrator.cache.save(thread)
    return thread


@router.post("/threads/{thread_id}/share")
async def share_thread(
    thread_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Create a share code for a remote thread."""
    thread = _get_thread(orchestrator, thread_id)
    if thread.status != ThreadStatus.REMOTE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Only threads stored on the server can be shared",
        )
    code = await orchestrator.reconciler.share_code(thread)
    if not code:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail="Share link creation failed")
    orchestrator.cache.save(thread)
    return {"code": code, "path": f"/s/{code}"}


@router.get("/shared/{share_code}", response_model=Thread)
async def open_shared_thread(
    share_code: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Read-only view of a shared thread."""
    thread = await orchestrator.reconciler.open_shared(share_code)
    if not thread:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Shared thread not found")
    return thread


@router.post("/threads/{thread_id}/messages", response_model=TurnAccepted, status_code=status.HTTP_202_ACCEPTED)
async def send_message(
    thread_id: str,
    background_tasks: BackgroundTasks,
    text: str = Form(...),
    files: list[UploadFile] | None = File(None),
    image_generation: bool = Form(False),
    web_search: bool | None = Form(None),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Send a user turn; the assistant reply arrives through /events."""
    thread = _get_thread(orchestrator, thread_id)
    uploads = [
        UploadedFile(file_name=f.filename or "file", mime_type=f.content_type, data=await f.read())
        for f in files or []
    ]
    hints = CapabilityHints(image_generation=image_generation, web_search=web_search)
    return await _accept(
        orchestrator.prepare_send(thread, text, uploads, hints), background_tasks, orchestrator
    )


@router.post("/threads/{thread_id}/audio", response_model=TurnAccepted, status_code=status.HTTP_202_ACCEPTED)
async def send_audio(
    thread_id: str,
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Send a recorded audio turn; it is transcribed before the agent runs."""
    thread = _get_thread(orchestrator, thread_id)
    content = await file.read()
    if not content:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Empty audio file")
    return await _accept(
        orchestrator.prepare_audio(thread, content, file.filename or "audio.mp3"),
        background_tasks,
        orchestrator,
    )


@router.post(
    "/threads/{thread_id}/messages/{message_id}/regenerate",
    response_model=TurnAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def regenerate_message(
    thread_id: str,
    message_id: str,
    background_tasks: BackgroundTasks,
    payload: RegenerateRequest | None = None,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Generate a new reply to the same user turn."""
    thread = _get_thread(orchestrator, thread_id)
    message = _get_message(thread, message_id)
    payload = payload or RegenerateRequest()
    hints = CapabilityHints(image_generation=payload.image_generation, web_search=payload.web_search)
    return await _accept(
        orchestrator.prepare_regenerate(thread, message, hints), background_tasks, orchestrator
    )


@router.post(
    "/threads/{thread_id}/messages/{message_id}/edit",
    response_model=TurnAccepted,
    status_code=status.HTTP_202_ACCEPTED,
)
async def edit_message(
    thread_id: str,
    message_id: str,
    payload: EditRequest,
    background_tasks: BackgroundTasks,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Branch the conversation with an edited user turn."""
    thread = _get_thread(orchestrator, thread_id)
    message = _get_message(thread, message_id)
    hints = CapabilityHints(image_generation=payload.image_generation, web_search=payload.web_search)
    return await _accept(
        orchestrator.prepare_edit(thread, message, payload.text, hints), background_tasks, orchestrator
    )


@router.post("/threads/{thread_id}/cancel")
async def cancel_request(
    thread_id: str,
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Cancel the pending generation on a thread."""
    thread = _get_thread(orchestrator, thread_id)
    return {"cancelled": orchestrator.cancel(thread)}


@router.get("/user")
async def current_user(
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Identity the thread store resolves from the configured token."""
    user = await orchestrator.reconciler.store.get_current_user()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not signed in to the thread store")
    return user


@router.get("/events")
async def stream_events(
    request: Request,
    events: EventBus = Depends(get_event_bus),
):
    """Stream engine events (thread updates, request state, notifications)."""
    queue, unsubscribe = events.subscribe_queue()

    async def event_generator():
        try:
            while not await request.is_disconnected():
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=EVENT_POLL_INTERVAL)
                except asyncio.TimeoutError:
                    continue
                yield {"event": type(event).__name__, "data": json.dumps(event_payload(event))}
        finally:
            unsubscribe()

    return EventSourceResponse(event_generator())
