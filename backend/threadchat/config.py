from pydantic_settings import BaseSettings
from functools import lru_cache


DEFAULT_MODEL = "mistral-medium-latest"


class Settings(BaseSettings):
    # Mistral (agents, conversations, libraries, files, transcription)
    mistral_api_key: str = ""
    mistral_api_base: str = "https://api.mistral.ai/v1"

    # Models
    default_model: str = DEFAULT_MODEL
    fast_models: list[str] = ["mistral-large-latest", "mistral-medium-2505"]
    current_model: str = ""
    title_model: str = "ministral-3b-latest"
    transcription_model: str = "voxtral-mini-latest"

    # Agent descriptor (looked up by this fixed name)
    agent_name: str = "MistralAI Chat BOT Chat Agent"
    agent_description: str = "Agent able to do anything."
    default_context: str = ""

    # Conversation
    history_limit: int = 20
    capability_policy: str = "exclusive"  # "exclusive" | "independent"

    # Remote thread store
    store_api_base: str = "http://localhost:3000"
    store_api_token: str = ""

    # Local thread cache
    cache_file: str = "threads_cache.json"

    # HTTP
    request_timeout: float = 120.0

    # Observability
    langsmith_api_key: str = ""
    langsmith_endpoint: str = "https://eu.api.smith.langchain.com"
    langsmith_project: str = "threadchat"

    class Config:
        env_file = ".env"

    def resolve_model(self) -> str:
        """Current model if it is one of the fast models, else the first fast model."""
        if self.current_model and self.current_model in self.fast_models:
            return self.current_model
        if self.fast_models:
            return self.fast_models[0]
        return self.default_model or DEFAULT_MODEL


@lru_cache
def get_settings() -> Settings:
    return Settings()
