"""Runs the side effects that follow a committed booking.

Each task gets its own timeout and its own error handling, so a slow calendar
never blocks the confirmation email and neither can fail the booking. All
tasks are awaited before ``run_post_commit_tasks`` returns.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from therapy_booking.core.errors import ExternalCollaboratorFailed

logger = logging.getLogger(__name__)


@dataclass
class PostCommitTask:
    name: str
    factory: Callable[[], Awaitable[Any]]


@dataclass
class TaskFailure:
    name: str
    error: BaseException

    def describe(self) -> str:
        return f'{self.name}: {self.error}'


@dataclass
class PostCommitReport:
    results: dict[str, Any] = field(default_factory=dict)
    failures: list[TaskFailure] = field(default_factory=list)


_SUCCESS = object()


async def _run_task(task: PostCommitTask, timeout: float):
    try:
        return _SUCCESS, await asyncio.wait_for(task.factory(), timeout=timeout)
    except asyncio.TimeoutError:
        logger.warning('Post-commit task %s timed out after %.1fs', task.name, timeout)
        return None, TaskFailure(task.name, ExternalCollaboratorFailed(f'{task.name} timed out after {timeout}s'))
    except Exception as exc:
        logger.exception('Post-commit task %s failed', task.name)
        return None, TaskFailure(task.name, exc)


async def _run_all(tasks: list[PostCommitTask], timeout: float) -> PostCommitReport:
    outcomes = await asyncio.gather(*(_run_task(task, timeout) for task in tasks))

    report = PostCommitReport()
    for task, (marker, value) in zip(tasks, outcomes):
        if marker is _SUCCESS:
            report.results[task.name] = value
        else:
            report.failures.append(value)
    return report


def run_post_commit_tasks(tasks: list[PostCommitTask], timeout: float) -> PostCommitReport:
    """Run ``tasks`` concurrently on a private event loop and collect outcomes.

    Meant to be called from synchronous request handlers, which FastAPI runs
    in a worker thread with no event loop of its own.
    """
    if not tasks:
        return PostCommitReport()
    return asyncio.run(_run_all(tasks, timeout))
