"""Mistral agent, library, file and transcription API (raw httpx, no SDK)."""

import logging

import httpx

from threadchat.config import Settings, get_settings
from threadchat.exceptions import ProviderError

logger = logging.getLogger(__name__)


def _error_detail(response: httpx.Response) -> str:
    """Pull a readable message out of a provider error body."""
    try:
        body = response.json()
    except ValueError:
        return response.text or f"HTTP {response.status_code}"

    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, list) and detail and isinstance(detail[0], dict):
            return str(detail[0].get("msg") or detail[0])
        if isinstance(detail, str):
            return detail
        for key in ("message", "error"):
            if body.get(key):
                return str(body[key])
    return response.text or f"HTTP {response.status_code}"


class MistralService:
    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        settings = settings or get_settings()
        self.base_url = settings.mistral_api_base.rstrip("/")
        self.api_key = settings.mistral_api_key
        self.timeout = settings.request_timeout
        self.transport = transport
        self._valid_keys: set[str] = set()

    @property
    def headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}", "Accept": "application/json"}

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self.transport)

    async def _request(
        self,
        method: str,
        endpoint: str,
        params: dict | None = None,
        json: dict | list | None = None,
        files: dict | None = None,
        data: dict | None = None,
    ) -> dict | list | None:
        async with self._client() as client:
            try:
                response = await client.request(
                    method,
                    f"{self.base_url}/{endpoint}",
                    headers=self.headers,
                    params=params,
                    json=json,
                    files=files,
                    data=data,
                )
            except httpx.HTTPError as e:
                raise ProviderError(f"Mistral API unreachable: {e}") from e

            if response.is_error:
                detail = _error_detail(response)
                logger.error("Mistral %s /%s failed: %s %s", method, endpoint, response.status_code, detail)
                raise ProviderError(detail, status_code=response.status_code)
            if response.status_code == 204 or not response.content:
                return None
            return response.json()

    # ==================== Credentials ====================

    async def validate_api_key(self) -> bool:
        """True when the key can list models. Positive results are cached per key."""
        if not self.api_key:
            return False
        if self.api_key in self._valid_keys:
            return True
        try:
            await self._request("GET", "models")
        except ProviderError as e:
            logger.debug("API key validation failed: %s", e)
            return False
        self._valid_keys.add(self.api_key)
        return True

    async def list_models(self) -> list[dict]:
        result = await self._request("GET", "models")
        if isinstance(result, dict):
            return result.get("data") or []
        return []

    # ==================== Agents ====================

    async def list_agents(self) -> list[dict]:
        result = await self._request("GET", "agents")
        if isinstance(result, dict):
            result = result.get("data")
        return result if isinstance(result, list) else []

    async def create_agent(self, model: str, name: str, instructions: str, description: str) -> dict:
        return await self._request(
            "POST",
            "agents",
            json={
                "model": model,
                "name": name,
                "instructions": instructions,
                "description": description,
            },
        )

    async def update_agent(self, agent_id: str, model: str, instructions: str, tools: list[dict]) -> dict:
        return await self._request(
            "PATCH",
            f"agents/{agent_id}",
            json={"model": model, "instructions": instructions, "tools": tools},
        )

    async def start_conversation(self, agent_id: str, inputs: list[dict]) -> dict | None:
        result = await self._request(
            "POST",
            "conversations",
            json={"agent_id": agent_id, "inputs": inputs},
        )
        return result if isinstance(result, dict) else None

    # ==================== Libraries ====================

    async def list_libraries(self) -> list[dict]:
        result = await self._request("GET", "libraries")
        if isinstance(result, dict):
            return result.get("data") or []
        return result if isinstance(result, list) else []

    async def get_library(self, library_id: str) -> dict | None:
        try:
            result = await self._request("GET", f"libraries/{library_id}")
        except ProviderError as e:
            if e.status_code == 404:
                return None
            raise
        return result if isinstance(result, dict) else None

    async def create_library(self, name: str, description: str) -> dict:
        return await self._request(
            "POST",
            "libraries",
            json={"name": name, "description": description},
        )

    async def upload_document(self, library_id: str, filename: str, content: bytes, content_type: str) -> dict | None:
        return await self._request(
            "POST",
            f"libraries/{library_id}/documents",
            files={"file": (filename, content, content_type)},
        )

    # ==================== Files ====================

    async def download_file(self, file_id: str) -> bytes:
        async with self._client() as client:
            try:
                response = await client.get(
                    f"{self.base_url}/files/{file_id}/content",
                    headers=self.headers,
                )
            except httpx.HTTPError as e:
                raise ProviderError(f"File download failed: {e}") from e
            if response.is_error:
                raise ProviderError(_error_detail(response), status_code=response.status_code)
            return response.content

    # ==================== Audio ====================

    async def transcribe(self, audio: bytes, model: str, filename: str = "audio.mp3") -> tuple[str, str | None]:
        """Returns (transcript, detected language)."""
        result = await self._request(
            "POST",
            "audio/transcriptions",
            data={"model": model},
            files={"file": (filename, audio, "audio/mpeg")},
        )
        if not isinstance(result, dict) or not result.get("text"):
            return "", None
        return result["text"], result.get("language") or "en"


# Singleton instance
_mistral_service: MistralService | None = None


def get_mistral_service() -> MistralService:
    global _mistral_service
    if _mistral_service is None:
        _mistral_service = MistralService()
    return _mistral_service
