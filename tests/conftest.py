"""Shared test fixtures."""

from __future__ import annotations

import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_dispatch.orchestrator.registry import MachineRepository
from agent_dispatch.orchestrator.repository import TaskRepository

FAKE_AGENT_COMMAND = f"{sys.executable} -m agent_dispatch.sessions.fake_agent"


@pytest.fixture()
def fake_agent() -> str:
    """Command template prefix running the scripted stream-json agent."""

    return FAKE_AGENT_COMMAND


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite:///{tmp_path / 'dispatch.db'}"


@pytest.fixture()
def repository(db_url: str) -> Iterator[TaskRepository]:
    repo = TaskRepository(db_url, busy_timeout_ms=30_000)
    repo.init_schema()
    try:
        yield repo
    finally:
        repo.close()


@pytest.fixture()
def machine_registry(repository: TaskRepository, db_url: str) -> Iterator[MachineRepository]:
    registry = MachineRepository(db_url, busy_timeout_ms=30_000)
    try:
        yield registry
    finally:
        registry.close()
