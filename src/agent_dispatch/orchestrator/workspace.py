"""Workspace preparation for task sessions."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Protocol

from agent_dispatch.orchestrator.models import TaskView

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


class WorkspacePreparer(Protocol):
    """Provides a checkout for a task and reports what the session changed."""

    def prepare(self, task: TaskView) -> Path: ...

    def collect_changes(self, workspace: Path) -> list[str]: ...


class DirectoryWorkspacePreparer:
    """Maps each project to ``<root>/<project>``.

    Changed files come from ``git status --porcelain`` when the directory is a
    git checkout, otherwise from modification times captured at prepare time.
    """

    def __init__(self, root_dir: Path, *, git_timeout_seconds: float = 30.0) -> None:
        self.root_dir = root_dir
        self.git_timeout_seconds = git_timeout_seconds
        self._snapshots: dict[Path, dict[str, float]] = {}

    def prepare(self, task: TaskView) -> Path:
        workspace = (self.root_dir / workspace_dir_name(task.project)).resolve()
        workspace.mkdir(parents=True, exist_ok=True)
        if not (workspace / ".git").exists():
            self._snapshots[workspace] = _mtime_snapshot(workspace)
        return workspace

    def collect_changes(self, workspace: Path) -> list[str]:
        if (workspace / ".git").exists():
            return self._git_changes(workspace)
        before = self._snapshots.pop(workspace, {})
        after = _mtime_snapshot(workspace)
        return sorted(path for path, mtime in after.items() if before.get(path) != mtime)

    def _git_changes(self, workspace: Path) -> list[str]:
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", "status", "--porcelain"],  # noqa: S607
                cwd=workspace,
                capture_output=True,
                text=True,
                timeout=self.git_timeout_seconds,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as error:
            logger.warning("git status failed in %s: %s", workspace, error)
            return []
        if completed.returncode != 0:
            logger.warning("git status failed in %s: %s", workspace, completed.stderr.strip())
            return []
        return parse_porcelain_status(completed.stdout)


def workspace_dir_name(project: str) -> str:
    name = _UNSAFE_NAME_RE.sub("-", project.strip()).strip(".-")
    return name or "project"


def parse_porcelain_status(output: str) -> list[str]:
    """File paths from ``git status --porcelain`` output, renames resolved to the new path."""

    paths: list[str] = []
    for line in output.splitlines():
        if len(line) < 4:
            continue
        path = line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        paths.append(path.strip('"'))
    return paths


def _mtime_snapshot(workspace: Path) -> dict[str, float]:
    snapshot: dict[str, float] = {}
    for path in workspace.rglob("*"):
        if path.is_file():
            snapshot[str(path.relative_to(workspace))] = path.stat().st_mtime
    return snapshot
