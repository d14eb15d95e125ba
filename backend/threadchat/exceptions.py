"""Error taxonomy shared by the engine services and the route layer."""


class ThreadChatError(Exception):
    """Base class for engine errors."""


class ConfigurationError(ThreadChatError):
    """Missing or invalid credentials; raised before any remote call."""


class ProviderError(ThreadChatError):
    """The agent provider rejected or failed a call."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ContentResolutionError(ThreadChatError):
    """Hashing, index creation or download failed for one content item."""


class ReconciliationError(ThreadChatError):
    """The remote thread store rejected a create/sync/update call."""


class ThreadBusyError(ThreadChatError):
    """A generation is already pending on this thread."""

    def __init__(self, thread_id: str):
        super().__init__(f"A request is already in progress for thread {thread_id}")
        self.thread_id = thread_id


class InvalidTurnError(ThreadChatError):
    """The requested operation does not apply to this message."""
