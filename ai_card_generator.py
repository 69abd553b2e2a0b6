import asyncio
import logging
import os
from typing import Any, Awaitable, Callable, Optional, TypeVar

from google import genai
from google.genai import errors as genai_errors
from google.genai import types
from pydantic import BaseModel
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt, wait_exponential

from card_schema import (
    AUTO_STYLE,
    CARD_HEIGHT,
    CARD_WIDTH,
    CardStyle,
    DesignBlueprint,
    is_known_style,
    parse_blueprint,
)


logger = logging.getLogger(__name__)

T = TypeVar("T")

# Must appear bottom-left on every card
CARD_ATTRIBUTION = "@不想上班计划 AI提效 少工作 多赚钱"

RATE_LIMIT_STATUSES = {"RESOURCE_EXHAUSTED", "QUOTA_EXCEEDED", "RATELIMIT_EXCEEDED"}


class GenerationSettings(BaseModel):
    """Everything the generators need to reach the Gemini service"""
    api_key: Optional[str] = None
    base_url: Optional[str] = None
    analysis_model: str = "gemini-3-flash-preview"
    render_model: str = "gemini-3-pro-preview"
    render_temperature: float = 0.8
    max_retries: int = 3
    initial_delay: float = 3.0

    @classmethod
    def from_env(cls) -> "GenerationSettings":
        # A missing key is not checked here; the first call fails instead
        return cls(
            api_key=os.environ.get("GEMINI_API_KEY") or os.environ.get("AI_INTEGRATIONS_GEMINI_API_KEY"),
            base_url=os.environ.get("AI_INTEGRATIONS_GEMINI_BASE_URL") or None,
        )


def build_client(settings: GenerationSettings) -> genai.Client:
    if settings.base_url:
        return genai.Client(
            api_key=settings.api_key,
            http_options={
                'api_version': '',
                'base_url': settings.base_url
            }
        )
    return genai.Client(api_key=settings.api_key)


class GenerationError(Exception):
    """Failure of an outbound generation call, with machine-readable fields"""

    def __init__(self, message: str, code: Optional[int] = None, status: Optional[str] = None):
        super().__init__(message)
        self.code = code
        self.status = status

    @property
    def is_rate_limit(self) -> bool:
        return self.code == 429 or (self.status or "").upper() in RATE_LIMIT_STATUSES

    @classmethod
    def from_api_error(cls, error: genai_errors.APIError) -> "GenerationError":
        return cls(str(error), code=error.code, status=error.status)


class BlueprintParseError(GenerationError):
    """The structured response could not be parsed into a DesignBlueprint"""
    pass


def is_rate_limit_error(exception: BaseException) -> bool:
    """Check if the exception is a rate limit or quota violation error."""
    if isinstance(exception, GenerationError):
        return exception.is_rate_limit
    for field in ("code", "status"):
        if getattr(exception, field, None) == 429:
            return True
    status = getattr(exception, "status", None)
    return isinstance(status, str) and status.upper() in RATE_LIMIT_STATUSES


def _log_retry(retries: int) -> Callable[[RetryCallState], None]:
    def log(retry_state: RetryCallState) -> None:
        remaining = retries - retry_state.attempt_number + 1
        delay = retry_state.next_action.sleep if retry_state.next_action else 0
        logger.warning(
            "[RETRY] Rate limit hit, retrying in %.1fs (retries left: %d)", delay, remaining
        )
    return log


async def run_with_retry(
    operation: Callable[[], Awaitable[T]],
    retries: int = 3,
    delay: float = 3.0,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    """
    Run an async operation, retrying rate-limit failures with exponential backoff.

    The operation is attempted at most ``retries + 1`` times. Waits between
    attempts are ``delay, delay*2, delay*4, ...`` seconds with no jitter and no
    cap. Any other failure, or the last rate-limit failure, propagates unchanged.

    Args:
        operation: Zero-argument coroutine function to run
        retries: Number of retries after the first attempt
        delay: First backoff delay in seconds
        sleep: Awaitable sleep used between attempts

    Returns:
        The operation's result
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(retries + 1),
        wait=wait_exponential(multiplier=delay, exp_base=2),
        retry=retry_if_exception(is_rate_limit_error),
        before_sleep=_log_retry(retries),
        sleep=sleep,
        reraise=True,
    )
    return await retrying(operation)


def _response_text(response: Any) -> str:
    return response.text or ""


class _GeminiCaller:
    """Shared client handling for the two generation phases"""

    def __init__(
        self,
        settings: GenerationSettings,
        client: Optional[genai.Client] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.settings = settings
        self._client = client
        self._sleep = sleep

    @property
    def client(self) -> genai.Client:
        # Built lazily so a missing key surfaces on the first call
        if self._client is None:
            self._client = build_client(self.settings)
        return self._client

    async def _generate(self, **kwargs) -> str:
        try:
            response = await self.client.aio.models.generate_content(**kwargs)
        except genai_errors.APIError as e:
            raise GenerationError.from_api_error(e) from e
        return _response_text(response)

    async def _with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        return await run_with_retry(
            operation,
            retries=self.settings.max_retries,
            delay=self.settings.initial_delay,
            sleep=self._sleep,
        )


BLUEPRINT_RESPONSE_SCHEMA = types.Schema(
    type=types.Type.OBJECT,
    properties={
        "style": types.Schema(
            type=types.Type.STRING,
            enum=[s.value for s in CardStyle],
            description="Visual style key (Academic/Modern/Tech/Handwritten/Business)",
        ),
        "themeColor": types.Schema(type=types.Type.STRING, description="Theme HEX color"),
        "secondaryColor": types.Schema(type=types.Type.STRING, description="Secondary HEX color"),
        "fontPairing": types.Schema(
            type=types.Type.OBJECT,
            properties={
                "heading": types.Schema(type=types.Type.STRING),
                "body": types.Schema(type=types.Type.STRING),
            },
            required=["heading", "body"],
        ),
        "cardOutlines": types.Schema(
            type=types.Type.ARRAY,
            items=types.Schema(
                type=types.Type.OBJECT,
                properties={
                    "title": types.Schema(type=types.Type.STRING),
                    "points": types.Schema(
                        type=types.Type.ARRAY,
                        items=types.Schema(type=types.Type.STRING),
                    ),
                },
                required=["title", "points"],
            ),
        ),
        "description": types.Schema(type=types.Type.STRING),
    },
    required=["style", "themeColor", "secondaryColor", "fontPairing", "cardOutlines", "description"],
)


def build_style_instruction(preferred_style: str) -> str:
    if not is_known_style(preferred_style):
        raise ValueError(f"Unknown style: {preferred_style}")
    if preferred_style == AUTO_STYLE:
        styles = ", ".join(s.value for s in CardStyle)
        return f"Choose the style that best fits the document from ({styles})."
    return f"You MUST use this style: {preferred_style}."


def build_analysis_prompt(text: str, preferred_style: str) -> str:
    return f"""You are a top-tier information architect and visual designer. Run PHASE 1: deep analysis and design blueprint.

TASKS:
1. DECOMPOSE: Split the source document into a series of knowledge cards.
2. COVER CARD (MANDATORY): The FIRST element of cardOutlines MUST be the cover card summarizing the whole document.
3. SEQUENCE: Plan the remaining cards in logical order. Every card uses a strict 7:11.6 layout ({CARD_WIDTH}x{CARD_HEIGHT}px).
4. STYLE: {build_style_instruction(preferred_style)} Return the English style key in the style field.
5. VISUALS: Define a theme color, a secondary color and a heading/body font pairing.

SOURCE DOCUMENT:
{text}"""


class BlueprintGenerator(_GeminiCaller):
    """Phase 1: document text -> DesignBlueprint"""

    async def analyze(self, text: str, preferred_style: str = AUTO_STYLE) -> DesignBlueprint:
        """
        Analyze a document into a design blueprint.

        Args:
            text: Raw document text (not validated here)
            preferred_style: "Auto" or one of the CardStyle values

        Returns:
            The parsed DesignBlueprint

        Raises:
            GenerationError: If the call fails or retries are exhausted
            BlueprintParseError: If the response does not match the blueprint shape
        """
        prompt = build_analysis_prompt(text, preferred_style)

        async def call() -> DesignBlueprint:
            raw = await self._generate(
                model=self.settings.analysis_model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=BLUEPRINT_RESPONSE_SCHEMA,
                ),
            )
            try:
                return parse_blueprint(raw)
            except ValueError as e:
                logger.error("[BLUEPRINT] Could not parse response: %s", raw[:500])
                raise BlueprintParseError(str(e)) from e

        blueprint = await self._with_retry(call)
        logger.info(
            "[BLUEPRINT] %s style, %d cards planned", blueprint.style.value, blueprint.card_count
        )
        return blueprint


RENDER_SYSTEM_INSTRUCTION = (
    "You are a world-class visual typesetting expert. The HTML you produce must have a "
    "highly polished, component-based aesthetic, and the bottom-left corner must carry "
    f"the attribution: {CARD_ATTRIBUTION}"
)


def build_card_prompt(blueprint: DesignBlueprint, card_index: int) -> str:
    card = blueprint.cardOutlines[card_index]
    total = blueprint.card_count
    role = "COVER card summarizing the whole series" if blueprint.is_cover(card_index) else "content card"
    points = "; ".join(card.points)

    return f"""Run PHASE 2: high-fidelity single card design.

CARD:
- Role: {role}
- Title: {card.title}
- Key content: {points}
- Visual style: {blueprint.style.value}
- Theme color: {blueprint.themeColor}
- Secondary color: {blueprint.secondaryColor}
- Fonts: {blueprint.fontPairing.heading} (headings) / {blueprint.fontPairing.body} (body)
- Progress: {card_index + 1}/{total}

STRICT DESIGN RULES:
1. SIZE: Width locked to {CARD_WIDTH}px, height locked to {CARD_HEIGHT}px. Wrap the card in a root element with class "card-container".
2. EXPORT COMPATIBILITY: Every external resource link MUST carry crossorigin="anonymous".
3. ATTRIBUTION: The bottom-left corner of the card MUST elegantly show: {CARD_ATTRIBUTION}

OUTPUT:
Return only the complete HTML document in a single code block."""


def extract_html(text: str) -> str:
    """
    Pull the markup out of a model reply that may wrap it in a code fence.

    A fence labelled ``html`` wins over a plain fence. Without any fence the
    reply is returned as-is. The result is always stripped.
    """
    if "```html" in text:
        text = text.split("```html", 1)[1].split("```", 1)[0]
    elif "```" in text:
        text = text.split("```")[1]
    return text.strip()


class CardHtmlGenerator(_GeminiCaller):
    """Phase 2: blueprint + card index -> standalone HTML document"""

    async def render(self, blueprint: DesignBlueprint, card_index: int) -> str:
        if not blueprint.is_valid_index(card_index):
            raise IndexError(
                f"Card index {card_index} out of range for {blueprint.card_count} cards"
            )
        prompt = build_card_prompt(blueprint, card_index)

        async def call() -> str:
            raw = await self._generate(
                model=self.settings.render_model,
                contents=prompt,
                config=types.GenerateContentConfig(
                    temperature=self.settings.render_temperature,
                    system_instruction=RENDER_SYSTEM_INSTRUCTION,
                ),
            )
            return extract_html(raw)

        html = await self._with_retry(call)
        logger.info("[CARD HTML] Card %d/%d rendered (%d chars)", card_index + 1, blueprint.card_count, len(html))
        return html
