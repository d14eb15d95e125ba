import logging

import httpx

from threadchat.config import Settings, get_settings
from threadchat.exceptions import ReconciliationError

logger = logging.getLogger(__name__)


class ThreadStore:
    """Client for the remote thread store (server of record)."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = settings or get_settings()
        self.base_url = f"{settings.store_api_base.rstrip('/')}/api"
        self.timeout = settings.request_timeout
        self.transport = transport
        self.headers = {"Content-Type": "application/json"}
        if settings.store_api_token:
            self.headers["Authorization"] = f"Bearer {settings.store_api_token}"

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | list | None = None,
    ) -> dict | list | None:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    params=params,
                    json=json,
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as e:
                body = e.response.text if e.response is not None else ""
                logger.error("Store %s /%s failed: %s %s", method, endpoint, e.response.status_code, body)
                raise ReconciliationError(f"{e.response.status_code}: {body}") from e
            except httpx.HTTPError as e:
                raise ReconciliationError(f"Thread store unreachable: {e}") from e
            if response.status_code == 204 or not response.content:
                return None
            try:
                return response.json()
            except ValueError as e:
                logger.error("Store %s /%s returned a non-JSON body", method, endpoint)
                raise ReconciliationError(f"Unreadable store reply: {e}") from e

    # ==================== Threads ====================

    async def create_thread(self, data: dict) -> dict | None:
        result = await self._request("POST", "thread", json={"action": "create", "data": data})
        return result if isinstance(result, dict) else None

    async def get_threads(self) -> list[dict]:
        result = await self._request("GET", "thread")
        return result if isinstance(result, list) else []

    async def get_thread(self, thread_id: str) -> dict | None:
        try:
            result = await self._request("GET", "thread", params={"idThread": thread_id})
        except ReconciliationError:
            return None
        return result if isinstance(result, dict) else None

    async def get_shared_thread(self, share_code: str) -> dict | None:
        try:
            result = await self._request("GET", "thread", params={"shareCode": share_code})
        except ReconciliationError:
            return None
        return result if isinstance(result, dict) else None

    async def update_thread(self, thread_id: str, data: dict) -> dict | None:
        result = await self._request(
            "POST",
            "thread",
            json={"action": "update", "idThread": thread_id, "data": data},
        )
        if isinstance(result, dict) and isinstance(result.get("thread"), dict):
            return result["thread"]
        return None

    async def share_thread(self, thread_id: str) -> str | None:
        result = await self._request("POST", "thread", json={"action": "share", "idThread": thread_id})
        if not isinstance(result, dict):
            return None
        share = result.get("share") if isinstance(result.get("share"), dict) else {}
        return share.get("code") or result.get("code")

    # ==================== Messages ====================

    async def sync_messages(self, messages: list[dict]) -> int:
        """Append a batch of messages; the server skips ids it already has."""
        if not messages:
            return 0
        result = await self._request("POST", "thread", json={"action": "sync", "messages": messages})
        if not isinstance(result, dict):
            return 0
        try:
            return int(result.get("inserted") or 0)
        except (TypeError, ValueError):
            return 0

    # ==================== Attachments ====================

    async def has_content(self, content_hash: str) -> bool:
        result = await self._request(
            "POST", "attachment", json={"requestType": "sha256", "sha256": content_hash}
        )
        return bool(isinstance(result, dict) and result.get("ok"))

    async def upload_content(self, content_hash: str, payload: str) -> None:
        await self._request(
            "POST",
            "attachment",
            json={"requestType": "data_upload", "sha256": content_hash, "data": payload},
        )

    async def create_attachment(self, message_id: str, attachment: dict) -> dict | None:
        result = await self._request(
            "POST",
            "attachment",
            json={"requestType": "create", "messageId": message_id, **attachment},
        )
        return result if isinstance(result, dict) else None

    # ==================== Users ====================

    async def get_current_user(self) -> dict | None:
        try:
            result = await self._request("GET", "user")
        except ReconciliationError:
            return None
        return result if isinstance(result, dict) else None


def get_thread_store() -> ThreadStore:
    return ThreadStore()
