"""Shared fixtures."""
import pytest

from llmbridge.core.settings import get_settings
from llmbridge.services.gateway_service import set_gateway

from fakes import FakeClock, ScriptedTransport, openai_reply


@pytest.fixture(autouse=True)
def reset_globals():
    """Module-level gateway and cached settings must not leak between tests."""
    yield
    set_gateway(None)
    get_settings.cache_clear()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def transport():
    return ScriptedTransport([openai_reply()])
