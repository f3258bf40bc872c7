"""Task outcome reporting."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Protocol

from agent_dispatch.orchestrator.models import TaskStatus
from agent_dispatch.sessions.router import TopicRouter

_SUMMARY_PREVIEW_CHARS = 600
_MAX_LISTED_FILES = 20


@dataclass(slots=True)
class TaskReport:
    task_id: str
    project: str
    status: TaskStatus
    topic_id: str | None
    summary: str = ""
    error_reason: str | None = None
    files_changed: list[str] = field(default_factory=list)
    pr_url: str | None = None


class ResultReporter(Protocol):
    async def report(self, report: TaskReport) -> None: ...


class ChatResultReporter:
    """Posts the task outcome into the task's topic."""

    def __init__(self, router: TopicRouter) -> None:
        self._router = router

    async def report(self, report: TaskReport) -> None:
        if report.topic_id is None:
            return
        await self._router.notify(report.topic_id, render_report(report))


def render_report(report: TaskReport) -> str:
    short_id = report.task_id[:8]
    if report.status == TaskStatus.COMPLETED:
        lines = [f"Task {short_id} completed ({report.project})."]
        if report.files_changed:
            lines.append(f"Files changed ({len(report.files_changed)}):")
            lines.extend(f"  {path}" for path in report.files_changed[:_MAX_LISTED_FILES])
            if len(report.files_changed) > _MAX_LISTED_FILES:
                lines.append(f"  ... and {len(report.files_changed) - _MAX_LISTED_FILES} more")
        if report.pr_url:
            lines.append(f"PR: {report.pr_url}")
        if report.summary:
            lines.append("")
            lines.append(report.summary[-_SUMMARY_PREVIEW_CHARS:])
        return "\n".join(lines)
    return f"Task {short_id} {report.status.value}: {report.error_reason or 'no reason recorded'}"
