"""Shared fixtures for the knowledge card test suite."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from ai_card_generator import GenerationSettings
from card_schema import DesignBlueprint


@pytest.fixture
def blueprint_dict():
    """Complete blueprint payload as the analysis call returns it."""
    return {
        "style": "Modern",
        "themeColor": "#1E3A8A",
        "secondaryColor": "#F59E0B",
        "fontPairing": {"heading": "Playfair Display", "body": "Inter"},
        "cardOutlines": [
            {"title": "Hello world", "points": ["What this document is about"]},
            {"title": "Greeting", "points": ["Say hello", "Wave"]},
            {"title": "Farewell", "points": ["Say goodbye"]},
        ],
        "description": "Clean modern layout with a strong blue accent.",
    }


@pytest.fixture
def blueprint(blueprint_dict):
    return DesignBlueprint(**blueprint_dict)


@pytest.fixture
def single_card_blueprint(blueprint_dict):
    blueprint_dict["cardOutlines"] = blueprint_dict["cardOutlines"][:1]
    return DesignBlueprint(**blueprint_dict)


@pytest.fixture
def settings():
    return GenerationSettings(api_key="test-key", initial_delay=3.0, max_retries=3)


@pytest.fixture
def recorded_sleeps():
    return []


@pytest.fixture
def fake_sleep(recorded_sleeps):
    async def sleep(seconds):
        recorded_sleeps.append(seconds)
    return sleep


def _make_response(text):
    response = MagicMock()
    response.text = text
    return response


@pytest.fixture
def make_response():
    return _make_response


@pytest.fixture
def fake_client():
    """genai.Client stand-in; set generate_content.side_effect per test."""
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock()
    return client


@pytest.fixture
def blueprint_response(blueprint_dict):
    return _make_response(json.dumps(blueprint_dict))
