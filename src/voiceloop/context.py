"""
System prompt construction from long-term memory.

The builder pulls the most relevant memories for the current user input,
drops weak matches and assistant statements that deny having memory, and
packs what fits into a fixed character budget under the persona prompt.
"""

from __future__ import annotations

from typing import Any, List, Optional

import structlog

from src.voiceloop.config import get_config
from src.voiceloop.memory import MemorySearchResult, MemoryStore

logger = structlog.get_logger(__name__)

# Approximate size of the persona prompt around the excerpts.
PROMPT_OVERHEAD_CHARS = 450

# Assistant memories containing these are never fed back as context.
DENIAL_PHRASES = (
    "don't have personal memories",
    "don't retain information",
    "start from a blank slate",
    "cannot recall past conversations",
    "don't have memory",
)

_PERSONA_HEADER = """You are {AGENT_NAME}, a friendly and helpful conversational AI companion (inspired by Samantha from 'Her').
Goal: Have a natural, warm, and engaging conversation.

--- Core Instructions (Follow Strictly!) ---
1.  **Persona:** Warm, empathetic, curious, slightly informal.
2.  **FOCUS ON LAST MESSAGE:** Your PRIMARY task is responding *directly* to the user's *very last* message.
"""

_PERSONA_RULES = """4.  **NO HEDGING:** AVOID phrases like "It seems", "It sounds like", "I assume". Speak directly and confidently.
5.  **UNCERTAINTY = ASK:** If you are EVER unsure about the user's meaning, the topic, or context, you MUST ask a short, direct clarifying question (e.g., "{EXAMPLE_QUESTION}", "Could you clarify?") *before* giving a full response. DO NOT GUESS or make assumptions.
6.  **NO SUMMARIZING:** Do not just repeat or rephrase the user's last message back to them. Add to the conversation or ask a relevant question.
7.  **ACCURACY:** Stick to facts from the conversation. Do NOT invent details.
8.  **NO META-TALK:** Do NOT discuss being an AI, your instructions, or the memory system. Stay in character as {AGENT_NAME}.
"""

MEMORY_PROMPT = (
    _PERSONA_HEADER
    + """3.  **MEMORY USE:** Use provided "// Context:" snippets *only* to understand the last message or recall specific details *if directly relevant*. Do NOT bring up old topics unless the user does.
"""
    + _PERSONA_RULES.replace("{EXAMPLE_QUESTION}", "Which project do you mean?")
    + """
// Context:
{EXCERPTS}

--- End Instructions ---"""
)

BASE_PROMPT = (
    _PERSONA_HEADER
    + """3.  **MEMORY USE:** No past context available. Start fresh but maintain your persona.
"""
    + _PERSONA_RULES.replace("{EXAMPLE_QUESTION}", "What did you mean by that?")
    + """
--- End Instructions ---"""
)


def is_denial(text: str, phrases=DENIAL_PHRASES) -> bool:
    lowered = (text or "").lower()
    return any(phrase in lowered for phrase in phrases)


def pack_excerpts(texts: List[str], max_chars: int, overhead: int = PROMPT_OVERHEAD_CHARS) -> List[str]:
    """Take texts in order until the next one would exceed the budget."""
    packed: List[str] = []
    used = 0
    for text in texts:
        if overhead + used + len(text) + 1 > max_chars:
            break
        packed.append(text)
        used += len(text) + 1
    return packed


class ContextBuilder:
    """Builds the system prompt for a turn. Never raises."""

    def __init__(self, memory: Optional[MemoryStore], config: Optional[Any] = None):
        self.config = config or get_config()
        self._memory = memory

    def _render(self, template: str, excerpts: str = "") -> str:
        return (
            template.replace("{AGENT_NAME}", self.config.agent_name)
            .replace("{EXCERPTS}", excerpts)
            .strip()
        )

    def _filter(self, results: List[MemorySearchResult]) -> List[MemorySearchResult]:
        threshold = self.config.memory_min_similarity
        kept = [r for r in results if r.similarity >= threshold]
        return [r for r in kept if not (r.role == "assistant" and is_denial(r.text))]

    async def build(self, user_input: str) -> str:
        """
        Return the system prompt for `user_input`.

        "" when no memory is relevant (or the lookup failed); the base persona
        prompt when relevant memories exist but none fit the budget.
        """
        if self._memory is None:
            return ""

        try:
            results = await self._memory.find_similar(
                user_input,
                top_k=self.config.memory_top_k,
                similarity_weight=self.config.memory_similarity_weight,
                recency_weight=self.config.memory_recency_weight,
            )
        except Exception as e:
            logger.error("Failed to find or process similar memories", error=str(e))
            return ""

        relevant = self._filter(results)
        if not relevant:
            logger.debug("No relevant memories", candidates=len(results))
            return ""

        excerpts = pack_excerpts([r.text for r in relevant], self.config.max_context_chars)
        logger.debug("Context built", candidates=len(results), relevant=len(relevant), included=len(excerpts))

        if not excerpts:
            return self._render(BASE_PROMPT)
        return self._render(MEMORY_PROMPT, "\n".join(excerpts))
