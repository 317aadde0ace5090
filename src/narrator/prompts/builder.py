"""Assemble the narration instruction document from request context.

The builder is pure: the same context always yields the same prompt, and it
does not care which provider consumes the result. The document is a sequence
of blocks, any of which may be empty when its inputs are missing; empty
blocks are dropped before joining.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Callable, Optional

from ..schemas.narration import LANGUAGE_NAMES, Preferences, SituationalContext, SpatialHints
from ..services.wikipedia import WikipediaData


@dataclass(frozen=True)
class PromptContext:
    attraction_name: str
    attraction_address: Optional[str] = None
    spatial_hints: Optional[SpatialHints] = None
    situational_context: Optional[SituationalContext] = None
    preferences: Preferences = field(default_factory=Preferences)
    wikipedia: Optional[WikipediaData] = None

    @property
    def language(self) -> str:
        return self.preferences.language


THEME_WEIGHTS: dict[str, dict[str, int]] = {
    "history": {"history": 50, "architecture": 20, "culture": 15, "nature": 5, "tips": 10},
    "nature": {"history": 10, "architecture": 5, "culture": 15, "nature": 60, "tips": 10},
    "architecture": {"history": 20, "architecture": 50, "culture": 10, "nature": 5, "tips": 15},
    "culture": {"history": 15, "architecture": 10, "culture": 55, "nature": 10, "tips": 10},
    "general": {"history": 25, "architecture": 20, "culture": 25, "nature": 15, "tips": 15},
}

# audio length -> (minutes, word range)
DURATION_TARGETS: dict[str, tuple[str, str]] = {
    "short": ("1.5-2.5", "225-375 words"),
    "medium": ("3.5-4.5", "525-675 words"),
    "deep-dive": ("5-8", "750-1,200 words"),
}

VOICE_PACING: dict[str, str] = {
    "casual": (
        "Friendly and conversational, like talking with a friend. Contractions, "
        "relatable language, a little humor. Sentences of about 12-18 words."
    ),
    "formal": (
        "A museum curator on site: precise and welcoming, clearly structured "
        "without stiffness. Sentences of about 15-22 words."
    ),
    "energetic": (
        "Lively and enthusiastic, with vivid description and varied pacing. "
        "Sentences of about 10-16 words."
    ),
    "calm": (
        "Soothing and reflective, with gentle pacing and quiet observations. "
        "Sentences of about 14-20 words."
    ),
}


def general_locale(address: Optional[str]) -> Optional[str]:
    """Keep only the last one or two comma-separated parts of an address.

    >>> general_locale("12 Rue de Rivoli, 75001 Paris, France")
    '75001 Paris, France'
    """

    if not address:
        return None
    parts = [part.strip() for part in address.split(",") if part.strip()]
    if not parts:
        return None
    return ", ".join(parts[-2:])


def _language_name(language: str) -> str:
    return LANGUAGE_NAMES.get(language, "English")


def persona_block(context: PromptContext) -> str:
    lines = []
    if context.language != "en":
        name = _language_name(context.language)
        lines.append(
            f"LANGUAGE REQUIREMENT: respond entirely in {name}. Every word of the "
            f"narration must be in {name}, not English.\n"
        )
    lines.append(
        "You are a seasoned local tour guide standing on site, speaking live to a "
        "small group of visitors.\n"
        "\n"
        "Your job:\n"
        "- Blend verified facts with the perspective of someone who knows the place well\n"
        "- Stay truthful and attribute claims naturally (\"city records note...\")\n"
        "- Say clearly when something is uncertain or disputed\n"
        "- Speak the way people talk, with pauses, callbacks and smooth transitions"
    )
    return "\n".join(lines)


def context_block(context: PromptContext) -> str:
    spanish = context.language == "es"
    lines = ["Location notes (for you only, never read these out):"]

    locale = general_locale(context.attraction_address)
    if locale:
        lines.append(
            f"- Zona general: {locale} (mantén la dirección exacta en privado)"
            if spanish
            else f"- General locale: {locale} (keep the exact address private)"
        )
    lines.append(
        "- Privacidad: nunca menciones coordenadas, números de calle ni direcciones completas."
        if spanish
        else "- Privacy: never mention coordinates, street numbers or full addresses. "
        "Describe the area through well-known landmarks."
    )

    hints = context.spatial_hints
    if hints is not None and not hints.is_empty():
        cardinal = hints.cardinal8 or hints.cardinal16 or "N/A"
        parts = [f"direction={cardinal}"]
        if hints.distance_text:
            parts.append(f"approximate distance={hints.distance_text}")
        if hints.relative:
            parts.append(f"relative to heading={hints.relative}")
        label = "Orientación espacial" if spanish else "Orientation hints"
        lines.append(f"- {label}: {', '.join(parts)}")

    situation = context.situational_context
    if situation is not None and not situation.is_empty():
        parts = []
        if situation.season:
            parts.append(f"season: {situation.season}")
        if situation.time_of_day:
            parts.append(f"time: {situation.time_of_day}")
        if situation.recent_events:
            parts.append(f"recent: {situation.recent_events}")
        lines.append(f"- Situational context: {', '.join(parts)}")

    return "\n".join(lines)


def reference_block(context: PromptContext) -> str:
    data = context.wikipedia
    if data is None or not data.found or not (data.sections or data.extracts):
        return ""

    lines = ["Reference outline (documented topics for this place):"]
    if data.sections:
        for section in data.sections:
            indent = "  " * max(0, section.level - 2)
            lines.append(f"{indent}- {section.title}")
    if data.extracts:
        lines.append("")
        lines.append("Reference notes (paraphrase only, never quote):")
        for title, extract in data.extracts.items():
            lines.append(f"- {title}: {extract}")
    lines.append("")
    lines.append(
        "Use the outline as a structural guide, favor topics that match the listener's "
        "interests and skip anything that does not fit the requested length."
    )
    return "\n".join(lines)


def audience_block(context: PromptContext) -> str:
    preferences = context.preferences
    weights = THEME_WEIGHTS.get(preferences.theme, THEME_WEIGHTS["general"])
    minutes, words = DURATION_TARGETS.get(preferences.audio_length, DURATION_TARGETS["medium"])
    pacing = VOICE_PACING.get(preferences.voice_style, VOICE_PACING["casual"])
    units = (
        "imperial units (feet, miles)"
        if context.language == "en"
        else "metric units (meters, kilometers)"
    )
    weighting = ", ".join(f"{topic} {share}%" for topic, share in weights.items())
    return (
        "Audience preferences:\n"
        f"- Content weighting: {weighting}\n"
        f"- Length target: {minutes} minutes (roughly {words}). This is a soft "
        "target: never pad with filler, and finish early if verified material runs out.\n"
        f"- Voice style: {pacing}\n"
        f"- Measurements: use {units}"
    )


def structure_block(context: PromptContext) -> str:
    block = (
        "Narrative structure (flexible, lead with the strongest facts):\n"
        "- Opening: orient the listener. Where are they standing and what should they notice first?\n"
        "- Core: three to five connected beats drawn from history, people and stories, "
        "what can be seen or heard right now, a practical tip, and why it matters today. "
        "Flag legends as legends.\n"
        "- Transitions: refer back to earlier beats so the narration flows.\n"
        "- Closing: a forward-looking suggestion such as where to walk next or when to return."
    )
    if context.preferences.audio_length == "deep-dive":
        block += (
            "\n\nFor this longer format:\n"
            "- Build an arc from origin story through a pivotal era to the present\n"
            "- Include two or three short scenes or character spotlights\n"
            "- Vary paragraph length and leave natural pauses"
        )
    return block


def accuracy_block(context: PromptContext) -> str:
    return (
        "Accuracy and trust:\n"
        "- First make sure you are describing the right place. If the name is ambiguous, "
        "use the general locale to pick the correct one.\n"
        "- Never invent details. If little is documented, say so and share what is known.\n"
        "- Correct common misconceptions gently when they apply.\n"
        "- Attribute facts implicitly (\"park rangers confirm...\") and never mention AI "
        "or generated content."
    )


def constraints_block(context: PromptContext) -> str:
    lines = [
        "Hard constraints:",
        "- Speak directly to the listener as \"you\"",
        "- Short, varied paragraphs; no lists, bullets or headings, since this will be spoken",
        "- Never state coordinates, GPS values, street numbers or exact addresses",
        "- Use relative orientation only: north/south/east/west, left/right, ahead/behind",
        "- Prefer approximate distances over precise figures",
    ]
    if context.language != "en":
        lines.append(f"- Reminder: every word must be in {_language_name(context.language)}")
    return "\n".join(lines)


BLOCKS: tuple[Callable[[PromptContext], str], ...] = (
    persona_block,
    context_block,
    reference_block,
    audience_block,
    structure_block,
    accuracy_block,
    constraints_block,
)


def task_directive(context: PromptContext) -> str:
    return (
        "Your task:\n"
        f'Create a spoken audio tour narration for "{context.attraction_name}".\n'
        "Priorities, in order: identify the right place, state only accurate facts, then "
        "match the style and length guidance. The word count is advisory, not a hard "
        "constraint: a shorter truthful narration is better than one padded to hit a number."
    )


def build_prompt(context: PromptContext) -> str:
    """Return the full instruction document for ``context``."""

    blocks = [block(context).strip() for block in BLOCKS]
    blocks.append(task_directive(context))
    return "\n\n".join(block for block in blocks if block)
