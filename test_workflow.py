"""Tests for workflow: state machine transitions, failure folding, stale results"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai_card_generator import BlueprintGenerator, GenerationError
from workflow import (
    GENERIC_ERROR_MESSAGE,
    RATE_LIMIT_MESSAGE,
    TRANSITIONS,
    InvalidTransition,
    WorkflowController,
    WorkflowEvent,
    WorkflowState,
    describe_generation_error,
)


def make_controller(blueprint=None, analyze_side_effect=None, render_side_effect=None):
    blueprint_generator = MagicMock()
    blueprint_generator.analyze = AsyncMock(return_value=blueprint, side_effect=analyze_side_effect)
    card_generator = MagicMock()
    card_generator.render = AsyncMock(
        side_effect=render_side_effect or (lambda bp, index: f"<html>card {index}</html>")
    )
    return WorkflowController(blueprint_generator, card_generator)


async def ready_controller(blueprint, **kwargs):
    controller = make_controller(blueprint, **kwargs)
    await controller.analyze("Hello world", "Auto")
    return controller


class TestTransitionTable:
    def test_reset_allowed_from_every_state(self):
        for state in WorkflowState:
            assert TRANSITIONS[(state, WorkflowEvent.RESET)] is WorkflowState.IDLE

    def test_error_state_never_targeted(self):
        assert WorkflowState.ERROR not in TRANSITIONS.values()

    def test_busy_states_reject_new_requests(self):
        for state in (WorkflowState.ANALYZING, WorkflowState.GENERATING_CARD):
            assert (state, WorkflowEvent.START_ANALYSIS) not in TRANSITIONS
            assert (state, WorkflowEvent.REQUEST_CARD) not in TRANSITIONS


class TestAnalyze:
    @pytest.mark.asyncio
    async def test_blank_text_is_noop(self, blueprint):
        controller = make_controller(blueprint)
        await controller.analyze("   \n\t")
        assert controller.state is WorkflowState.IDLE
        controller.blueprint_generator.analyze.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_success(self, blueprint):
        controller = await ready_controller(blueprint)
        assert controller.state is WorkflowState.BLUEPRINT_READY
        assert controller.blueprint is blueprint
        assert controller.error is None
        controller.blueprint_generator.analyze.assert_awaited_once_with("Hello world", "Auto")

    @pytest.mark.asyncio
    async def test_failure_returns_to_idle(self):
        controller = make_controller(analyze_side_effect=GenerationError("boom", code=500))
        await controller.analyze("Hello world")
        assert controller.state is WorkflowState.IDLE
        assert controller.blueprint is None
        assert controller.error == GENERIC_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_exhausted_quota_message(self):
        controller = make_controller(analyze_side_effect=GenerationError("quota", code=429))
        await controller.analyze("Hello world")
        assert controller.state is WorkflowState.IDLE
        assert controller.error == RATE_LIMIT_MESSAGE

    @pytest.mark.asyncio
    async def test_error_cleared_on_next_attempt(self, blueprint):
        controller = make_controller(blueprint, analyze_side_effect=[GenerationError("boom"), blueprint])
        await controller.analyze("Hello world")
        assert controller.error is not None
        await controller.analyze("Hello world")
        assert controller.state is WorkflowState.BLUEPRINT_READY
        assert controller.error is None

    @pytest.mark.asyncio
    async def test_two_rate_limits_then_success(self, blueprint_response, fake_client, fake_sleep, settings):
        quota = GenerationError("quota", code=429, status="RESOURCE_EXHAUSTED")
        fake_client.aio.models.generate_content.side_effect = [quota, quota, blueprint_response]
        controller = WorkflowController(
            BlueprintGenerator(settings, client=fake_client, sleep=fake_sleep),
            MagicMock(),
        )

        await controller.analyze("Hello world", "Auto")

        assert controller.state is WorkflowState.BLUEPRINT_READY
        assert controller.error is None
        assert fake_client.aio.models.generate_content.await_count == 3

    @pytest.mark.asyncio
    async def test_second_analysis_rejected_while_analyzing(self, blueprint):
        release = asyncio.Event()

        async def slow_analyze(text, style):
            await release.wait()
            return blueprint

        controller = make_controller(analyze_side_effect=slow_analyze)
        first = asyncio.create_task(controller.analyze("Hello world"))
        await asyncio.sleep(0)
        assert controller.state is WorkflowState.ANALYZING

        with pytest.raises(InvalidTransition):
            await controller.analyze("Other text")
        with pytest.raises(InvalidTransition):
            await controller.generate_card(0)

        release.set()
        await first
        assert controller.state is WorkflowState.BLUEPRINT_READY
        assert controller.blueprint_generator.analyze.await_count == 1


class TestGenerateCard:
    @pytest.mark.asyncio
    async def test_requires_blueprint(self):
        controller = make_controller()
        with pytest.raises(InvalidTransition):
            await controller.generate_card(0)

    @pytest.mark.asyncio
    async def test_success(self, blueprint):
        controller = await ready_controller(blueprint)
        await controller.generate_card(0)
        assert controller.state is WorkflowState.CARD_READY
        assert controller.current_card.index == 0
        assert controller.current_card.title == "Hello world"
        assert controller.current_card.html == "<html>card 0</html>"

    @pytest.mark.asyncio
    async def test_out_of_range_rejected_without_request(self, blueprint):
        controller = await ready_controller(blueprint)
        with pytest.raises(IndexError):
            await controller.generate_card(3)
        assert controller.state is WorkflowState.BLUEPRINT_READY
        controller.card_generator.render.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failure_keeps_blueprint_and_previous_card(self, blueprint):
        controller = await ready_controller(
            blueprint,
            render_side_effect=["<html>cover</html>", GenerationError("boom", code=500)],
        )
        await controller.generate_card(0)
        previous = controller.current_card

        await controller.generate_card(1)

        assert controller.state is WorkflowState.BLUEPRINT_READY
        assert controller.blueprint is blueprint
        assert controller.current_card is previous
        assert controller.error == GENERIC_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_new_card_replaces_old(self, blueprint):
        controller = await ready_controller(blueprint)
        await controller.generate_card(0)
        await controller.generate_card(2)
        assert controller.current_card.index == 2
        assert controller.current_card.title == "Farewell"


class TestNextCard:
    @pytest.mark.asyncio
    async def test_walks_sequence(self, blueprint):
        controller = await ready_controller(blueprint)
        await controller.generate_card(0)

        assert await controller.next_card()
        assert controller.current_card.index == 1
        assert await controller.next_card()
        assert controller.current_card.index == 2

    @pytest.mark.asyncio
    async def test_noop_on_last_card(self, blueprint):
        controller = await ready_controller(blueprint)
        await controller.generate_card(2)
        calls = controller.card_generator.render.await_count

        assert not controller.has_next
        assert not await controller.next_card()
        assert controller.card_generator.render.await_count == calls
        assert controller.state is WorkflowState.CARD_READY

    @pytest.mark.asyncio
    async def test_single_card_blueprint(self, single_card_blueprint):
        controller = await ready_controller(single_card_blueprint)
        await controller.generate_card(0)
        assert controller.current_card.index == 0
        assert not await controller.next_card()
        assert controller.card_generator.render.await_count == 1

    @pytest.mark.asyncio
    async def test_noop_before_any_card(self, blueprint):
        controller = await ready_controller(blueprint)
        assert not await controller.next_card()
        controller.card_generator.render.assert_not_awaited()


class TestReset:
    @pytest.mark.asyncio
    async def test_clears_everything(self, blueprint):
        controller = await ready_controller(blueprint)
        controller.selected_style = "Tech"
        await controller.generate_card(0)

        controller.reset()

        assert controller.state is WorkflowState.IDLE
        assert controller.blueprint is None
        assert controller.current_card is None
        assert controller.input_text == ""
        assert controller.selected_style == "Auto"
        assert controller.error is None

    @pytest.mark.asyncio
    async def test_stale_result_discarded_after_reset(self, blueprint):
        release = asyncio.Event()

        async def slow_render(bp, index):
            await release.wait()
            return "<html>late</html>"

        controller = await ready_controller(blueprint, render_side_effect=slow_render)
        pending = asyncio.create_task(controller.generate_card(0))
        await asyncio.sleep(0)
        assert controller.state is WorkflowState.GENERATING_CARD

        controller.reset()
        release.set()
        await pending

        assert controller.state is WorkflowState.IDLE
        assert controller.current_card is None
        assert controller.blueprint is None

    @pytest.mark.asyncio
    async def test_stale_failure_discarded_after_reset(self, blueprint):
        release = asyncio.Event()

        async def slow_failure(text, style):
            await release.wait()
            raise GenerationError("boom")

        controller = make_controller(analyze_side_effect=slow_failure)
        pending = asyncio.create_task(controller.analyze("Hello world"))
        await asyncio.sleep(0)

        controller.reset()
        release.set()
        await pending

        assert controller.state is WorkflowState.IDLE
        assert controller.error is None


def test_describe_generation_error():
    assert describe_generation_error(GenerationError("q", status="RESOURCE_EXHAUSTED")) == RATE_LIMIT_MESSAGE
    assert describe_generation_error(ValueError("bad json")) == GENERIC_ERROR_MESSAGE
