"""Shared fixtures for ralph tests."""

from pathlib import Path

import pytest
from fakes import FakeAgentBinary


@pytest.fixture
def fake_binary(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> FakeAgentBinary:
    """Scripted stand-in for the agent binary, with CURSOR_API_KEY unset."""
    monkeypatch.delenv("CURSOR_API_KEY", raising=False)
    return FakeAgentBinary(tmp_path)
