from enum import Enum
from typing import Dict, List

from pydantic import BaseModel, ConfigDict, Field, ValidationError


# Every card is rendered at this fixed 7:11.6 layout
CARD_WIDTH = 700
CARD_HEIGHT = 1160

AUTO_STYLE = "Auto"


class CardStyle(str, Enum):
    """Closed set of visual styles a blueprint can use"""
    ACADEMIC = "Academic"
    MODERN = "Modern"
    TECH = "Tech"
    HANDWRITTEN = "Handwritten"
    BUSINESS = "Business"


STYLE_OPTIONS: List[Dict[str, str]] = [
    {"id": AUTO_STYLE, "name": "Smart match", "desc": "Let the AI pick"},
    {"id": CardStyle.ACADEMIC.value, "name": "Academic", "desc": "Rigorous, composed"},
    {"id": CardStyle.MODERN.value, "name": "Modern", "desc": "Minimal, bold"},
    {"id": CardStyle.TECH.value, "name": "Tech", "desc": "Hard-edged, futuristic"},
    {"id": CardStyle.HANDWRITTEN.value, "name": "Handwritten", "desc": "Warm, lively"},
    {"id": CardStyle.BUSINESS.value, "name": "Business", "desc": "Efficient, restrained"},
]


class FontPairing(BaseModel):
    """Heading/body typeface recommendation (not checked against real fonts)"""
    model_config = ConfigDict(frozen=True)

    heading: str
    body: str


class CardOutline(BaseModel):
    """Planned content of one card before rendering"""
    model_config = ConfigDict(frozen=True)

    title: str
    points: List[str]


class DesignBlueprint(BaseModel):
    """
    Design plan produced once per document analysis.

    The first outline is the cover card. That convention comes from the
    generation instructions only and is not validated here.
    """
    model_config = ConfigDict(frozen=True)

    style: CardStyle
    themeColor: str = Field(..., description="Theme color (hex-like)")
    secondaryColor: str = Field(..., description="Secondary color (hex-like)")
    fontPairing: FontPairing
    cardOutlines: List[CardOutline] = Field(..., min_length=1)
    description: str

    @property
    def card_count(self) -> int:
        return len(self.cardOutlines)

    def is_valid_index(self, index: int) -> bool:
        return 0 <= index < len(self.cardOutlines)

    def is_cover(self, index: int) -> bool:
        return index == 0


class GeneratedCard(BaseModel):
    """The most recently rendered card. Replaced, never accumulated."""
    model_config = ConfigDict(frozen=True)

    index: int = Field(..., ge=0)
    html: str
    title: str


def is_known_style(style: str) -> bool:
    """True for "Auto" or one of the CardStyle values"""
    return style == AUTO_STYLE or style in {s.value for s in CardStyle}


def parse_blueprint(text: str) -> DesignBlueprint:
    """
    Parse a structured model response into a DesignBlueprint.

    Args:
        text: JSON text returned by the generation service

    Returns:
        The validated blueprint

    Raises:
        ValueError: If the text is not JSON or does not match the blueprint shape
    """
    try:
        return DesignBlueprint.model_validate_json(text)
    except ValidationError as e:
        raise ValueError(f"Blueprint validation failed: {e}") from e
