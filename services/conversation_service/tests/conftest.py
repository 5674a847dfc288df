"""Shared test fixtures for conversation service tests."""
from __future__ import annotations

import pytest

from services.conversation_service.src.config import ContextSettings, ConversationServiceSettings
from services.conversation_service.src.infrastructure.notifier import RecordingNotifier
from services.conversation_service.tests.fixtures import ScriptedGateway


@pytest.fixture
def gateway() -> ScriptedGateway:
    return ScriptedGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def settings() -> ConversationServiceSettings:
    return ConversationServiceSettings(context=ContextSettings(message_window=15, risk_window=10))
