import uuid
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, Field

from threadchat.services.clock import utc_now

ROOT = "root"

# Text of an assistant placeholder while its request is pending
LOADING_SENTINEL = "<loading/>"
CANCELLED_TEXT = "Cancelled"
DEFAULT_THREAD_NAME = "New Thread"


def new_id() -> str:
    return str(uuid.uuid4())


class Sender(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class MessageStatus(str, Enum):
    LOCAL = "local"
    SYNCED = "synced"
    CANCELLED = "cancelled"


class ThreadStatus(str, Enum):
    LOCAL = "local"
    REMOTE = "remote"


class AttachmentKind(str, Enum):
    FILE = "file"
    IMAGE = "image"
    VIDEO = "video"
    AUDIO = "audio"


class AttachmentStatus(str, Enum):
    LOCAL = "local"
    SYNCED = "synced"


class ContentRef(BaseModel):
    hash: str  # sha256 hex
    payload: str  # data: URL (base64) or external URL


class AttachmentRef(BaseModel):
    file_name: str
    mime_type: str
    kind: AttachmentKind = AttachmentKind.FILE
    library_handle: str | None = None
    status: AttachmentStatus = AttachmentStatus.LOCAL
    content: ContentRef


class Message(BaseModel):
    id: str = Field(default_factory=new_id)
    thread_id: str
    sender: Sender
    text: str = ""
    thinking: str = ""
    timestamp: datetime | None = Field(default_factory=utc_now)
    parent_id: str | None = ROOT
    status: MessageStatus = MessageStatus.LOCAL
    attachments: list[AttachmentRef] = Field(default_factory=list)

    @property
    def is_loading(self) -> bool:
        return self.status == MessageStatus.LOCAL and self.text == LOADING_SENTINEL


class Thread(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str = DEFAULT_THREAD_NAME
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    context: str = ""
    model: str = ""
    status: ThreadStatus = ThreadStatus.LOCAL
    shareable: bool = False
    messages: list[Message] = Field(default_factory=list)


class ActiveRequest(BaseModel):
    thread_id: str
    pending_message_id: str


# ==================== API payloads ====================


class ThreadCreate(BaseModel):
    id: str | None = None
    context: str | None = None
    model: str | None = None


class ThreadUpdate(BaseModel):
    name: str | None = None
    context: str | None = None
    model: str | None = None


class ThreadSummary(BaseModel):
    id: str
    name: str
    status: ThreadStatus
    created_at: datetime
    updated_at: datetime
    pending: bool = False


class EditRequest(BaseModel):
    text: str
    image_generation: bool = False
    web_search: bool | None = None


class RegenerateRequest(BaseModel):
    image_generation: bool = False
    web_search: bool | None = None


class TurnAccepted(BaseModel):
    thread_id: str
    user_message_id: str | None
    assistant_message_id: str
