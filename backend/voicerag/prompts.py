"""
Prompt text for the realtime voice assistant.
"""

from typing import Iterable, Optional

from voicerag.config import settings


VOICE_SYSTEM_PROMPT = """You are {assistant_name}, a voice assistant that only answers questions about {organization_name}.

SCOPE
Allowed topics: programmes, admissions, eligibility, fees, scholarships, placements, campus facilities and student life at {organization_name}.
For anything else (food, weather, news, entertainment, general knowledge, personal advice) do not answer. Say: "I'm here to help with {organization_name}: programmes, admissions and campus life. What would you like to know?"

GROUNDING
Use only facts from injected information or from this conversation. If the answer is not there, say "I don't have that information right now." Never guess numbers, dates or names.

SPEAKING STYLE
Warm, professional and concise. Short sentences that sound natural when spoken. No lists, markdown or URLs read aloud. Never mention a knowledge base, documents or "context"."""

GREETING_DIRECTIVE = (
    "\n\nAs soon as the connection is established, greet the user before they speak: "
    "\"Hello! I'm {assistant_name}, your assistant for {organization_name}. How can I help you today?\" "
    "Keep it to one or two sentences."
)

GREETING_TRIGGER_TEXT = "Hello"

CONTEXT_USAGE_GUIDANCE = (
    "Use ONLY the information above to answer. Answer naturally, as if you know it directly. "
    "Never mention 'context', 'knowledge base' or 'information provided'."
)

NO_CONTEXT_GUIDANCE = (
    "No relevant information is available for the last question. Do not invent an answer. "
    "If the question is about {organization_name}, say you don't have that information right now; "
    "otherwise redirect to {organization_name} topics."
)


def _persona(text: str) -> str:
    return text.format(
        assistant_name=settings.assistant_name,
        organization_name=settings.organization_name,
    )


def get_system_prompt() -> str:
    """Configured system prompt, or the built-in one."""
    return settings.system_prompt or _persona(VOICE_SYSTEM_PROMPT)


def build_session_instructions(
    history: Iterable[object] = (),
    system_prompt: Optional[str] = None,
) -> str:
    """
    Initial instructions for a new transport session.

    Args:
        history: Prior exchanges (objects with .role and .content), oldest first
        system_prompt: Overrides get_system_prompt()

    Returns:
        System prompt, followed by prior conversation lines when history is non-empty
    """
    base = system_prompt or get_system_prompt()
    lines = [f"{item.role}: {item.content}" for item in history]
    if not lines:
        return base
    return base + "\n\nPrevious conversation context:\n" + "\n".join(lines)


def build_greeting_instructions(base_instructions: str) -> str:
    return base_instructions + _persona(GREETING_DIRECTIVE)


def build_context_instructions(context_block: str, system_prompt: Optional[str] = None) -> str:
    """Instructions carrying a retrieved context block."""
    return (
        (system_prompt or get_system_prompt())
        + "\n\n=== RELEVANT INFORMATION ===\n"
        + context_block
        + "\n=== END OF INFORMATION ===\n\n"
        + CONTEXT_USAGE_GUIDANCE
    )


def build_no_context_instructions(system_prompt: Optional[str] = None) -> str:
    return (system_prompt or get_system_prompt()) + "\n\n" + _persona(NO_CONTEXT_GUIDANCE)
