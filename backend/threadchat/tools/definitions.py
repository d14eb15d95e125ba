"""Agent tool definitions and per-turn capability selection."""

import re
from dataclasses import dataclass

from threadchat.config import Settings


WEB_SEARCH = {"type": "web_search"}

CODE_INTERPRETER = {"type": "code_interpreter"}

IMAGE_GENERATION = {"type": "image_generation"}


def document_library(library_ids: list[str]) -> dict:
    return {"type": "document_library", "library_ids": list(library_ids)}


# Turn text that looks like it wants code written or run
CODE_PATTERN = re.compile(
    r"```|(?:\b(?:code|script|javascript|typescript|python|java|c\+\+|cpp|c#|csharp|ruby|go|rust|"
    r"bash|shell|sh|dockerfile|sql|query|compile|execute|run|debug|stack trace|traceback|"
    r"function\s+\w+|class\s+\w+)\b)",
    re.IGNORECASE,
)

# "exclusive": web search is on unless image generation is requested.
# "independent": both come from the caller's hints.
CAPABILITY_POLICIES = ("exclusive", "independent")


@dataclass
class CapabilityHints:
    """What the caller asked for on this turn."""
    image_generation: bool = False
    web_search: bool | None = None
    audio: bool = False


def needs_code_interpreter(text: str) -> bool:
    return bool(CODE_PATTERN.search(text or ""))


def get_enabled_tools(
    settings: Settings,
    text: str,
    library_ids: list[str],
    hints: CapabilityHints | None = None,
) -> list[dict]:
    """Return the tool list for one turn based on the text, handles and policy."""
    hints = hints or CapabilityHints()
    policy = settings.capability_policy if settings.capability_policy in CAPABILITY_POLICIES else "exclusive"

    if policy == "exclusive":
        web_search = not hints.image_generation
    else:
        web_search = True if hints.web_search is None else hints.web_search

    tools = []
    if web_search:
        tools.append(WEB_SEARCH)
    if needs_code_interpreter(text):
        tools.append(CODE_INTERPRETER)
    if hints.image_generation:
        tools.append(IMAGE_GENERATION)
    if library_ids:
        tools.append(document_library(library_ids))

    return tools
