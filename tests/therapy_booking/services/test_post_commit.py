import asyncio

from therapy_booking.core.errors import ExternalCollaboratorFailed
from therapy_booking.services.post_commit import PostCommitTask, run_post_commit_tasks


async def succeed(value):
    return value


async def fail():
    raise RuntimeError('boom')


async def hang():
    await asyncio.sleep(5)


def test_no_tasks_returns_empty_report() -> None:
    report = run_post_commit_tasks([], timeout=1)

    assert report.results == {}
    assert report.failures == []


def test_results_are_keyed_by_task_name() -> None:
    report = run_post_commit_tasks(
        [PostCommitTask('first', lambda: succeed(1)), PostCommitTask('second', lambda: succeed('two'))],
        timeout=1,
    )

    assert report.results == {'first': 1, 'second': 'two'}
    assert report.failures == []


def test_one_failure_does_not_stop_the_others() -> None:
    report = run_post_commit_tasks(
        [PostCommitTask('broken', fail), PostCommitTask('fine', lambda: succeed(True))],
        timeout=1,
    )

    assert report.results == {'fine': True}
    assert [failure.name for failure in report.failures] == ['broken']
    assert report.failures[0].describe() == 'broken: boom'


def test_timeout_becomes_collaborator_failure() -> None:
    report = run_post_commit_tasks(
        [PostCommitTask('slow', hang), PostCommitTask('fast', lambda: succeed('ok'))],
        timeout=0.05,
    )

    assert report.results == {'fast': 'ok'}
    assert isinstance(report.failures[0].error, ExternalCollaboratorFailed)
