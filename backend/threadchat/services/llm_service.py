import os
from openai import AsyncOpenAI
from threadchat.config import get_settings, Settings

TITLE_PROMPT = (
    "Generate a short and descriptive title for the following conversation. The title should be "
    "concise, ideally under 5 words, and capture the main topic or theme of the discussion. "
    "In the language used in the conversation. Do not use quotation marks or punctuation in the title."
)


def _make_openai_client(settings: Settings) -> AsyncOpenAI:
    """Create an AsyncOpenAI client with optional LangSmith tracing."""
    client = AsyncOpenAI(
        api_key=settings.mistral_api_key or "missing",
        base_url=settings.mistral_api_base,
    )

    # Wrap with LangSmith tracing if configured
    if settings.langsmith_api_key:
        try:
            from langsmith.wrappers import wrap_openai
            os.environ.setdefault("LANGCHAIN_TRACING_V2", "true")
            os.environ.setdefault("LANGCHAIN_API_KEY", settings.langsmith_api_key)
            os.environ.setdefault("LANGCHAIN_ENDPOINT", settings.langsmith_endpoint)
            os.environ.setdefault("LANGCHAIN_PROJECT", settings.langsmith_project)
            client = wrap_openai(client)
        except ImportError:
            pass  # langsmith not installed, skip tracing

    return client


class LLMService:
    """
    Auxiliary chat completions through the OpenAI-compatible Mistral endpoint.
    Used for one-shot helper generations such as thread titles.
    """

    def __init__(self, settings: Settings | None = None):
        settings = settings or get_settings()
        self.client = _make_openai_client(settings)
        self.title_model = settings.title_model

    async def chat_completion(
        self,
        messages: list[dict],
        model: str,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        stop: list[str] | None = None,
    ) -> str:
        """
        Get a non-streaming chat completion response.

        Args:
            messages: List of message dicts with 'role' and 'content'
            model: Model name
            system_prompt: Optional system prompt to prepend
            max_tokens: Optional max tokens limit
            stop: Optional stop sequences
        """
        chat_messages = []

        if system_prompt:
            chat_messages.append({"role": "system", "content": system_prompt})

        chat_messages.extend(messages)

        kwargs = {
            "model": model,
            "messages": chat_messages,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if stop:
            kwargs["stop"] = stop

        response = await self.client.chat.completions.create(**kwargs)
        content = response.choices[0].message.content if response.choices else None
        return content.strip() if isinstance(content, str) else ""

    async def generate_title(self, history: list[dict]) -> str | None:
        """Generate a short title for a conversation from its history."""
        if not history:
            return None
        title = await self.chat_completion(
            messages=[*history, {"role": "user", "content": TITLE_PROMPT}],
            model=self.title_model,
            stop=["\n", "."],
        )
        return title or None


# Singleton instance
_llm_service: LLMService | None = None


def get_llm_service() -> LLMService:
    global _llm_service
    if _llm_service is None:
        _llm_service = LLMService()
    return _llm_service
