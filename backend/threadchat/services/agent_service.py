"""
Agent service: prepares the remote agent and runs one conversation turn.

Flow:
1. Find the agent descriptor by its fixed name, create it if absent
2. Update model, instructions (thread context, optional phone persona) and tools
3. Start a conversation with the ordered input list
"""

import logging
from dataclasses import dataclass, field

from threadchat.config import Settings, get_settings
from threadchat.exceptions import ProviderError
from threadchat.models.chat import Thread
from threadchat.services.mistral_service import MistralService
from threadchat.tools.definitions import CapabilityHints, get_enabled_tools

logger = logging.getLogger(__name__)

DEFAULT_INSTRUCTIONS = "You are a helpful assistant."

CREATE_INSTRUCTIONS = "Use the tools to answer the user's questions."

PHONE_PERSONA = (
    "You are in a phone conversation with a human. You need to answer their questions "
    "and help them. Keep your answers short and to the point. \n\n"
)


@dataclass
class AgentContext:
    """Everything one agent run needs."""
    thread: Thread
    text: str
    inputs: list[dict]
    library_ids: list[str] = field(default_factory=list)
    hints: CapabilityHints = field(default_factory=CapabilityHints)


def build_instructions(context: str, default_context: str = "", audio: bool = False) -> str:
    base = context or default_context or DEFAULT_INSTRUCTIONS
    if audio:
        return f"{PHONE_PERSONA}{base}"
    return base


class AgentService:
    def __init__(self, mistral: MistralService, settings: Settings | None = None):
        self.mistral = mistral
        self.settings = settings or get_settings()

    async def _find_agent(self) -> dict | None:
        agents = await self.mistral.list_agents()
        return next((a for a in agents if a.get("name") == self.settings.agent_name), None)

    async def ensure_agent(self) -> dict:
        """Agent descriptor with our fixed name, created on first use."""
        agent = await self._find_agent()
        if agent is None:
            logger.info("Creating agent '%s'", self.settings.agent_name)
            created = await self.mistral.create_agent(
                model=self.settings.resolve_model(),
                name=self.settings.agent_name,
                instructions=CREATE_INSTRUCTIONS,
                description=self.settings.agent_description,
            )
            agent = created if isinstance(created, dict) and created.get("id") else await self._find_agent()

        if not agent or not agent.get("id"):
            raise ProviderError("Agent not available")
        return agent

    async def run(self, ctx: AgentContext) -> dict | None:
        """Configure the agent for this turn and start the conversation."""
        agent = await self.ensure_agent()

        tools = get_enabled_tools(self.settings, ctx.text, ctx.library_ids, ctx.hints)
        logger.info("Thread %s: tools=%s", ctx.thread.id, [t["type"] for t in tools])

        updated = await self.mistral.update_agent(
            agent["id"],
            model=ctx.thread.model or self.settings.resolve_model(),
            instructions=build_instructions(
                ctx.thread.context, self.settings.default_context, audio=ctx.hints.audio
            ),
            tools=tools,
        )
        agent_id = (updated or {}).get("id") or agent["id"]

        logger.info("Starting conversation with agent %s (%d inputs)", agent_id, len(ctx.inputs))
        return await self.mistral.start_conversation(agent_id, ctx.inputs)
