"""
Two-phase knowledge card workflow.

The controller owns the blueprint, the current card and the error message.
It runs at most one generation request at a time: a request made while
analyzing or generating is rejected through the transition table, never
queued.
"""

import logging
from enum import Enum
from typing import Dict, Optional, Tuple

from ai_card_generator import BlueprintGenerator, CardHtmlGenerator, is_rate_limit_error
from card_schema import AUTO_STYLE, DesignBlueprint, GeneratedCard


logger = logging.getLogger(__name__)

RATE_LIMIT_MESSAGE = (
    "API quota exceeded. Automatic retries were attempted but the quota is exhausted. "
    "Please wait about a minute and try again."
)
GENERIC_ERROR_MESSAGE = "Generation failed. Please check your input or try again."


class WorkflowState(str, Enum):
    IDLE = "IDLE"
    ANALYZING = "ANALYZING"
    BLUEPRINT_READY = "BLUEPRINT_READY"
    GENERATING_CARD = "GENERATING_CARD"
    CARD_READY = "CARD_READY"
    # Never entered: failures fall back to IDLE or BLUEPRINT_READY with a message
    ERROR = "ERROR"


class WorkflowEvent(str, Enum):
    START_ANALYSIS = "START_ANALYSIS"
    ANALYSIS_SUCCEEDED = "ANALYSIS_SUCCEEDED"
    ANALYSIS_FAILED = "ANALYSIS_FAILED"
    REQUEST_CARD = "REQUEST_CARD"
    CARD_SUCCEEDED = "CARD_SUCCEEDED"
    CARD_FAILED = "CARD_FAILED"
    RESET = "RESET"


TRANSITIONS: Dict[Tuple[WorkflowState, WorkflowEvent], WorkflowState] = {
    (WorkflowState.IDLE, WorkflowEvent.START_ANALYSIS): WorkflowState.ANALYZING,
    (WorkflowState.ANALYZING, WorkflowEvent.ANALYSIS_SUCCEEDED): WorkflowState.BLUEPRINT_READY,
    (WorkflowState.ANALYZING, WorkflowEvent.ANALYSIS_FAILED): WorkflowState.IDLE,
    (WorkflowState.BLUEPRINT_READY, WorkflowEvent.REQUEST_CARD): WorkflowState.GENERATING_CARD,
    (WorkflowState.CARD_READY, WorkflowEvent.REQUEST_CARD): WorkflowState.GENERATING_CARD,
    (WorkflowState.GENERATING_CARD, WorkflowEvent.CARD_SUCCEEDED): WorkflowState.CARD_READY,
    (WorkflowState.GENERATING_CARD, WorkflowEvent.CARD_FAILED): WorkflowState.BLUEPRINT_READY,
}
TRANSITIONS.update({(state, WorkflowEvent.RESET): WorkflowState.IDLE for state in WorkflowState})


class InvalidTransition(Exception):
    """Event not allowed in the current workflow state"""

    def __init__(self, state: WorkflowState, event: WorkflowEvent):
        super().__init__(f"Cannot handle {event.value} while {state.value}")
        self.state = state
        self.event = event


def describe_generation_error(error: BaseException) -> str:
    """User-facing message for a failed analysis or card render"""
    if is_rate_limit_error(error):
        return RATE_LIMIT_MESSAGE
    return GENERIC_ERROR_MESSAGE


class WorkflowController:
    def __init__(self, blueprint_generator: BlueprintGenerator, card_generator: CardHtmlGenerator):
        self.blueprint_generator = blueprint_generator
        self.card_generator = card_generator
        self.state = WorkflowState.IDLE
        self.blueprint: Optional[DesignBlueprint] = None
        self.current_card: Optional[GeneratedCard] = None
        self.input_text = ""
        self.selected_style = AUTO_STYLE
        self.error: Optional[str] = None
        # Bumped by every request and by reset; results from an older epoch are dropped
        self._epoch = 0

    @property
    def is_busy(self) -> bool:
        return self.state in (WorkflowState.ANALYZING, WorkflowState.GENERATING_CARD)

    @property
    def has_next(self) -> bool:
        return (
            self.state == WorkflowState.CARD_READY
            and self.blueprint is not None
            and self.current_card is not None
            and self.current_card.index < self.blueprint.card_count - 1
        )

    def can_handle(self, event: WorkflowEvent) -> bool:
        return (self.state, event) in TRANSITIONS

    def _transition(self, event: WorkflowEvent) -> None:
        target = TRANSITIONS.get((self.state, event))
        if target is None:
            raise InvalidTransition(self.state, event)
        logger.debug("[WORKFLOW] %s --%s--> %s", self.state.value, event.value, target.value)
        self.state = target

    def _begin(self, event: WorkflowEvent) -> int:
        self._transition(event)
        self.error = None
        self._epoch += 1
        return self._epoch

    def _is_stale(self, epoch: int) -> bool:
        if epoch != self._epoch:
            logger.info("[WORKFLOW] Discarding result of a superseded request")
            return True
        return False

    async def analyze(self, text: str, style: str = AUTO_STYLE) -> None:
        """
        Build the design blueprint for ``text``.

        Blank text is ignored. On failure the controller returns to IDLE with
        an error message and no blueprint.

        Raises:
            InvalidTransition: If not IDLE (including while a request is in flight)
        """
        if not self.can_handle(WorkflowEvent.START_ANALYSIS):
            raise InvalidTransition(self.state, WorkflowEvent.START_ANALYSIS)
        self.input_text = text
        self.selected_style = style
        if not text.strip():
            return

        epoch = self._begin(WorkflowEvent.START_ANALYSIS)
        try:
            blueprint = await self.blueprint_generator.analyze(text, style)
        except Exception as e:
            if self._is_stale(epoch):
                return
            logger.exception("[WORKFLOW] Blueprint analysis failed")
            self.error = describe_generation_error(e)
            self.blueprint = None
            self._transition(WorkflowEvent.ANALYSIS_FAILED)
            return

        if self._is_stale(epoch):
            return
        self.blueprint = blueprint
        self._transition(WorkflowEvent.ANALYSIS_SUCCEEDED)

    async def generate_card(self, index: int) -> None:
        """
        Render card ``index`` of the current blueprint, replacing the current card.

        On failure the controller returns to BLUEPRINT_READY with an error
        message; blueprint and previous card are kept.

        Raises:
            InvalidTransition: If no blueprint is ready or a request is in flight
            IndexError: If ``index`` is outside the blueprint's outlines
        """
        if not self.can_handle(WorkflowEvent.REQUEST_CARD) or self.blueprint is None:
            raise InvalidTransition(self.state, WorkflowEvent.REQUEST_CARD)
        blueprint = self.blueprint
        if not blueprint.is_valid_index(index):
            raise IndexError(f"Card index {index} out of range for {blueprint.card_count} cards")

        epoch = self._begin(WorkflowEvent.REQUEST_CARD)
        try:
            html = await self.card_generator.render(blueprint, index)
        except Exception as e:
            if self._is_stale(epoch):
                return
            logger.exception("[WORKFLOW] Card %d generation failed", index)
            self.error = describe_generation_error(e)
            self._transition(WorkflowEvent.CARD_FAILED)
            return

        if self._is_stale(epoch):
            return
        self.current_card = GeneratedCard(
            index=index,
            html=html,
            title=blueprint.cardOutlines[index].title,
        )
        self._transition(WorkflowEvent.CARD_SUCCEEDED)

    async def next_card(self) -> bool:
        """Render the card after the current one. Returns False when there is none."""
        if not self.has_next:
            return False
        await self.generate_card(self.current_card.index + 1)
        return True

    def reset(self) -> None:
        self._transition(WorkflowEvent.RESET)
        self._epoch += 1
        self.blueprint = None
        self.current_card = None
        self.input_text = ""
        self.selected_style = AUTO_STYLE
        self.error = None
