"""Shared pytest fixtures for the action server tests."""

from __future__ import annotations

import pytest

from helpers import RecordingChannel, ScriptedEngine


@pytest.fixture
def engine() -> ScriptedEngine:
    return ScriptedEngine()


@pytest.fixture
def channel() -> RecordingChannel:
    return RecordingChannel()
