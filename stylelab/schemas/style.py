"""
Style parameters - the four closed dimensions a message is written in.
A StyleCombination is one bandit arm; style_key() is its identity.
"""
from enum import Enum

from pydantic import BaseModel, ConfigDict


class CopywritingStyle(str, Enum):
    AIDA = "AIDA"
    PAS = "PAS"
    BAB = "BAB"
    PPP = "PPP"
    FAB = "FAB"
    QUEST = "QUEST"


class WritingStyle(str, Enum):
    DESCRIPTIVE = "descriptive"
    NARRATIVE = "narrative"
    PERSUASIVE = "persuasive"
    EXPOSITORY = "expository"
    CONVERSATIONAL = "conversational"
    DIRECT = "direct"


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"
    ENTHUSIASTIC = "enthusiastic"
    URGENT = "urgent"
    EMPATHETIC = "empathetic"
    AUTHORITATIVE = "authoritative"
    CASUAL = "casual"


class Personality(str, Enum):
    CONFIDENT = "confident"
    HUMOROUS = "humorous"
    ANALYTICAL = "analytical"
    CARING = "caring"
    ADVENTUROUS = "adventurous"
    INNOVATIVE = "innovative"
    TRUSTWORTHY = "trustworthy"


COPYWRITING_STYLES = list(CopywritingStyle)
WRITING_STYLES = list(WritingStyle)
TONES = list(Tone)
PERSONALITIES = list(Personality)


class StyleCombination(BaseModel):
    """One combination of the four style dimensions. Hashable, usable as a dict key."""

    model_config = ConfigDict(frozen=True, use_enum_values=False)

    copywriting_style: CopywritingStyle
    writing_style: WritingStyle
    tone: Tone
    personality: Personality

    def style_key(self) -> str:
        return "|".join((
            self.copywriting_style.value,
            self.writing_style.value,
            self.tone.value,
            self.personality.value,
        ))

    @classmethod
    def from_key(cls, key: str) -> "StyleCombination":
        copywriting_style, writing_style, tone, personality = key.split("|")
        return cls(
            copywriting_style=copywriting_style,
            writing_style=writing_style,
            tone=tone,
            personality=personality,
        )

    def to_dict(self) -> dict:
        """JSON-safe dict for JSONB columns."""
        return self.model_dump(mode="json")

    def label(self) -> str:
        return self.style_key().replace("|", "/")


def balanced_style() -> StyleCombination:
    """Fixed baseline combination used by control groups and empty-round defaults."""
    return StyleCombination(
        copywriting_style=CopywritingStyle.AIDA,
        writing_style=WritingStyle.CONVERSATIONAL,
        tone=Tone.PROFESSIONAL,
        personality=Personality.CONFIDENT,
    )
