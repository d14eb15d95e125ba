import json
import logging
from pathlib import Path
from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, field_validator

from threadchat.config import Settings
from threadchat.exceptions import ProviderError
from threadchat.tools.definitions import CAPABILITY_POLICIES

logger = logging.getLogger(__name__)

router = APIRouter()

SETTINGS_FILE = Path(__file__).resolve().parents[3] / "user_settings.json"


class ProviderConfig(BaseModel):
    api_key: str = ""


class ModelConfig(BaseModel):
    fast_models: list[str] = []
    current_model: str = ""


class ConversationConfig(BaseModel):
    default_context: str = ""
    capability_policy: str = "exclusive"  # "exclusive" | "independent"

    @field_validator('capability_policy')
    @classmethod
    def known_policy(cls, v: str) -> str:
        return v if v in CAPABILITY_POLICIES else "exclusive"


class UserSettings(BaseModel):
    provider: ProviderConfig = ProviderConfig()
    models: ModelConfig = ModelConfig()
    conversation: ConversationConfig = ConversationConfig()


def _load_settings() -> UserSettings:
    """Load user settings from JSON file, falling back to env defaults."""
    if SETTINGS_FILE.exists():
        try:
            data = json.loads(SETTINGS_FILE.read_text())
            return UserSettings(**data)
        except (OSError, ValueError) as e:
            logger.warning("Ignoring unreadable %s: %s", SETTINGS_FILE, e)
    # A fresh Settings instance, not the cached one _apply_settings() mutates
    fresh = Settings()
    return UserSettings(
        provider=ProviderConfig(api_key=fresh.mistral_api_key),
        models=ModelConfig(
            fast_models=fresh.fast_models,
            current_model=fresh.current_model,
        ),
        conversation=ConversationConfig(
            default_context=fresh.default_context,
            capability_policy=fresh.capability_policy,
        ),
    )


def _save_settings(user_settings: UserSettings) -> None:
    """Save user settings to JSON file and apply to running config."""
    SETTINGS_FILE.write_text(user_settings.model_dump_json(indent=2))
    _apply_settings(user_settings)


def _apply_settings(user_settings: UserSettings) -> None:
    """Apply user settings by reinitializing singleton services."""
    from threadchat.config import get_settings as _get_settings

    # Clear the lru_cache so Settings re-reads
    _get_settings.cache_clear()
    settings = _get_settings()

    if user_settings.provider.api_key:
        settings.mistral_api_key = user_settings.provider.api_key
    if user_settings.models.fast_models:
        settings.fast_models = user_settings.models.fast_models
    settings.current_model = user_settings.models.current_model
    settings.default_context = user_settings.conversation.default_context
    settings.capability_policy = user_settings.conversation.capability_policy

    # Reset singleton services so they pick up new config
    import threadchat.services.llm_service as llm_mod
    import threadchat.services.mistral_service as mistral_mod
    import threadchat.services.orchestrator as orchestrator_mod
    llm_mod._llm_service = None
    mistral_mod._mistral_service = None
    orchestrator_mod.reset_orchestrator()


class SettingsResponse(BaseModel):
    provider: ProviderConfig
    models: ModelConfig
    conversation: ConversationConfig
    resolved_model: str


def _response(s: UserSettings) -> SettingsResponse:
    resolved = Settings(
        fast_models=s.models.fast_models,
        current_model=s.models.current_model,
    ).resolve_model()
    return SettingsResponse(
        provider=s.provider,
        models=s.models,
        conversation=s.conversation,
        resolved_model=resolved,
    )


@router.get("/settings", response_model=SettingsResponse)
async def get_user_settings():
    """Get current provider, model and conversation configuration."""
    return _response(_load_settings())


@router.get("/models")
async def list_models():
    """Models available to the configured API key."""
    from threadchat.services.mistral_service import get_mistral_service

    try:
        models = await get_mistral_service().list_models()
    except ProviderError as e:
        raise HTTPException(status_code=e.status_code or status.HTTP_502_BAD_GATEWAY, detail=e.message)
    return [m.get("id") for m in models if isinstance(m, dict) and m.get("id")]


@router.put("/settings", response_model=SettingsResponse)
async def update_user_settings(payload: UserSettings):
    """Update provider, model and conversation configuration."""
    _save_settings(payload)
    return _response(_load_settings())
