"""
Content store: content-addressed attachment data and library handles.

Bytes are identified by their SHA-256. A hash maps to at most one remote
document library (the "handle") which the agent's document tool searches.
The handle is looked up by the library description, which carries the hash,
so identical content attached to different messages or threads shares one
library.
"""

import asyncio
import logging
from typing import Protocol

from threadchat.exceptions import ContentResolutionError, ProviderError
from threadchat.models.chat import AttachmentKind, AttachmentRef, ContentRef
from threadchat.services.hashing_service import (
    compute_content_hash,
    decode_payload,
    to_data_url,
)

logger = logging.getLogger(__name__)


class LibraryIndex(Protocol):
    async def list_libraries(self) -> list[dict]: ...
    async def get_library(self, library_id: str) -> dict | None: ...
    async def create_library(self, name: str, description: str) -> dict: ...
    async def upload_document(self, library_id: str, filename: str, content: bytes, content_type: str) -> dict | None: ...


def kind_for_mime(mime_type: str) -> AttachmentKind:
    if mime_type.startswith("image/"):
        return AttachmentKind.IMAGE
    if mime_type.startswith("video/"):
        return AttachmentKind.VIDEO
    if mime_type.startswith("audio/"):
        return AttachmentKind.AUDIO
    return AttachmentKind.FILE


def mime_for_upload(file_name: str, mime_type: str | None) -> str:
    if mime_type:
        return mime_type
    extension = file_name.rsplit(".", 1)[-1] if "." in file_name else ""
    return f"application/{extension}"


class ContentStore:
    def __init__(self, index: LibraryIndex):
        self.index = index
        self._handles: dict[str, str] = {}
        self._pending: dict[str, asyncio.Task] = {}

    def cached_handle(self, content_hash: str) -> str | None:
        return self._handles.get(content_hash)

    async def resolve(self, data: bytes, mime_type: str = "application/octet-stream") -> ContentRef:
        # Hashing large payloads off the event loop
        content_hash = await asyncio.to_thread(compute_content_hash, data)
        return ContentRef(hash=content_hash, payload=to_data_url(data, mime_type))

    async def attachment_from_upload(
        self, file_name: str, mime_type: str | None, data: bytes
    ) -> AttachmentRef:
        mime = mime_for_upload(file_name, mime_type)
        content = await self.resolve(data, mime)
        return AttachmentRef(
            file_name=file_name,
            mime_type=mime,
            kind=kind_for_mime(mime),
            library_handle=self.cached_handle(content.hash),
            content=content,
        )

    async def lookup_or_create_handle(self, content_hash: str, data: bytes, display_name: str, mime_type: str = "application/octet-stream") -> str:
        """
        Library handle for `content_hash`, creating the library if needed.

        Concurrent callers for the same hash join the single in-flight
        creation. On failure nothing is cached so the next reference retries.
        """
        cached = self._handles.get(content_hash)
        if cached:
            return cached

        task = self._pending.get(content_hash)
        if task is None:
            task = asyncio.ensure_future(
                self._find_or_create(content_hash, data, display_name, mime_type)
            )
            self._pending[content_hash] = task
            task.add_done_callback(lambda _t: self._pending.pop(content_hash, None))

        return await asyncio.shield(task)

    async def _find_or_create(self, content_hash: str, data: bytes, display_name: str, mime_type: str) -> str:
        try:
            libraries = await self.index.list_libraries()
            existing = next(
                (lib for lib in libraries if lib.get("description") == content_hash and lib.get("id")),
                None,
            )
            if existing:
                logger.info("Reusing library %s for content %s", existing["id"], content_hash[:12])
                self._handles[content_hash] = existing["id"]
                return existing["id"]

            library = await self.index.create_library(
                name=f"File {display_name}",
                description=content_hash,
            )
        except ProviderError as e:
            raise ContentResolutionError(f"Could not index '{display_name}': {e}") from e

        handle = (library or {}).get("id")
        if not handle:
            raise ContentResolutionError(f"Library creation for '{display_name}' returned no id")

        self._handles[content_hash] = handle
        logger.info("Created library %s for '%s' (%s)", handle, display_name, content_hash[:12])

        try:
            await self.index.upload_document(handle, display_name, data, mime_type)
        except ProviderError as e:
            logger.error("Uploading '%s' to library %s failed: %s", display_name, handle, e)

        return handle

    async def _verify_handle(self, attachment: AttachmentRef) -> str | None:
        try:
            library = await self.index.get_library(attachment.library_handle)
        except ProviderError as e:
            logger.warning("Could not verify library %s: %s", attachment.library_handle, e)
            return None
        if library and library.get("id"):
            self._handles.setdefault(attachment.content.hash, library["id"])
            return library["id"]
        return None

    async def ensure_handles(self, attachments: list[AttachmentRef]) -> list[str]:
        """
        Make sure every attachment has a live library handle.

        Returns the distinct handles in first-seen order. An attachment whose
        handle cannot be resolved is skipped and keeps `library_handle=None`.
        """
        handles: list[str] = []

        for att in attachments:
            handle = None
            if att.library_handle:
                handle = await self._verify_handle(att)
                if handle is None:
                    logger.info("Library %s for '%s' is gone, recreating", att.library_handle, att.file_name)
                    if self._handles.get(att.content.hash) == att.library_handle:
                        del self._handles[att.content.hash]
                    att.library_handle = None

            if handle is None:
                try:
                    data = decode_payload(att.content.payload)
                    handle = await self.lookup_or_create_handle(
                        att.content.hash, data, att.file_name, att.mime_type
                    )
                except (ContentResolutionError, ValueError) as e:
                    logger.warning("Skipping attachment '%s': %s", att.file_name, e)
                    continue

            att.library_handle = handle
            if handle not in handles:
                handles.append(handle)

        return handles
