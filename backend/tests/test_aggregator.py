from datetime import timedelta
from decimal import Decimal

import pytest

from washmap.core.aggregator import StatusAggregator, derive_campaign_status
from washmap.core.errors import InvalidTransition, UnknownCampaign, UnknownTask
from washmap.core.records import utcnow
from washmap.core.status import Status

U, P, D, F = Status.UNPROCESSED, Status.PROCESSING, Status.PROCESSED, Status.FAILED


@pytest.mark.parametrize(
    'statuses,enabled,gate,expected',
    [
        ([], True, True, U),
        ([D, D, D], True, True, D),
        ([D, D, D], False, False, D),
        ([D, P, U], False, True, P),
        ([D, F, U], False, True, F),
        ([D, F, U], True, True, P),
        ([U, U], True, True, P),
        ([U, U], True, False, U),
        ([U, U], False, True, U),
        ([D, U], False, True, P),
    ],
)
def test_derive_campaign_status(statuses, enabled, gate, expected):
    assert derive_campaign_status(statuses, enabled, gate) is expected


def _finish(repository, task, signature='sig'):
    repository.claim_task(task.id)
    return repository.complete_task(task.id, signature)


def _fail(repository, task, error='boom'):
    repository.claim_task(task.id)
    return repository.fail_task(task.id, error)


def test_refresh_marks_processed_and_disables(repository, planned):
    plan = planned()
    for task in repository.list_tasks(plan.campaign.id):
        _finish(repository, task)

    campaign = StatusAggregator(repository).refresh(plan.campaign.id)
    assert campaign.status is Status.PROCESSED
    assert campaign.enabled is False


def test_summary_counts(repository, planned):
    plan = planned()
    tasks = repository.list_tasks(plan.campaign.id)
    _finish(repository, tasks[0])
    _fail(repository, tasks[1])

    summary = StatusAggregator(repository).get_status(plan.campaign.id)
    assert summary.counts == {'unprocessed': 4, 'processing': 0, 'processed': 1, 'failed': 1}
    assert [task.id for task in summary.failed_tasks] == [tasks[1].id]
    assert summary.pending == 5


def test_disable_with_failures_marks_failed_until_reenabled(repository, planned):
    plan = planned()
    tasks = repository.list_tasks(plan.campaign.id)
    _finish(repository, tasks[0])
    _fail(repository, tasks[1])
    aggregator = StatusAggregator(repository)

    assert aggregator.set_enabled(plan.campaign.id, False).status is Status.FAILED
    assert aggregator.refresh(plan.campaign.id).status is Status.FAILED
    assert aggregator.resume(plan.campaign.id).status is Status.PROCESSING


def test_retry_failed_resets_and_enables(repository, planned):
    plan = planned(enabled=False)
    tasks = repository.list_tasks(plan.campaign.id)
    _fail(repository, tasks[0])
    _fail(repository, tasks[1])

    reset = StatusAggregator(repository).retry_failed(plan.campaign.id)

    assert reset == 2
    assert repository.get_campaign(plan.campaign.id).enabled is True
    assert all(task.status is Status.UNPROCESSED for task in repository.list_tasks(plan.campaign.id))


def test_retry_task_requires_failed(repository, planned):
    plan = planned()
    tasks = repository.list_tasks(plan.campaign.id)
    aggregator = StatusAggregator(repository)

    with pytest.raises(InvalidTransition):
        aggregator.retry_task(tasks[0].id)

    _fail(repository, tasks[0])
    assert aggregator.retry_task(tasks[0].id).status is Status.UNPROCESSED


def test_update_task_validation(repository, planned):
    plan = planned()
    tasks = repository.list_tasks(plan.campaign.id)
    aggregator = StatusAggregator(repository)

    with pytest.raises(ValueError):
        aggregator.update_task(tasks[2].id)
    with pytest.raises(ValueError):
        aggregator.update_task(tasks[2].id, amount=Decimal('0'))

    updated = aggregator.update_task(tasks[2].id, amount=Decimal('2400'), gas=Decimal('0.5'))
    assert updated.amount == Decimal('2400')
    assert updated.gas == Decimal('0.5')

    _finish(repository, tasks[0])
    with pytest.raises(InvalidTransition):
        aggregator.update_task(tasks[0].id, amount=Decimal('1'))


def test_update_campaign_gas_reaches_pending_tasks(repository, planned):
    plan = planned(gas='0.1')
    tasks = repository.list_tasks(plan.campaign.id)
    _finish(repository, tasks[0])

    campaign = StatusAggregator(repository).update_campaign(plan.campaign.id, task_gas=Decimal('0.2'), endpoint='https://rpc')

    assert campaign.task_gas == Decimal('0.2')
    assert campaign.endpoint == 'https://rpc'
    gases = {task.id: task.gas for task in repository.list_tasks(plan.campaign.id)}
    assert gases[tasks[0].id] == Decimal('0.1')
    assert all(gas == Decimal('0.2') for task_id, gas in gases.items() if task_id != tasks[0].id)


def test_release_stalled_only_touches_expired_unsigned_claims(repository, planned):
    plan = planned()
    tasks = repository.list_tasks(plan.campaign.id)
    repository.claim_task(tasks[0].id, owner='crashed-run')
    _finish(repository, tasks[1])
    aggregator = StatusAggregator(repository)

    assert aggregator.release_stalled(plan.campaign.id, lease_s=120) == 0
    assert repository.get_task(tasks[0].id).status is Status.PROCESSING

    released = aggregator.release_stalled(plan.campaign.id, lease_s=120, now=utcnow() + timedelta(minutes=5))

    assert released == 1
    stalled = repository.get_task(tasks[0].id)
    assert stalled.status is Status.UNPROCESSED
    assert stalled.claim_owner is None
    assert repository.get_task(tasks[1].id).status is Status.PROCESSED


def test_close_expired(repository, planned):
    old = planned()
    finished = planned(root_address='0x' + 'b' * 40)
    for task in repository.list_tasks(finished.campaign.id):
        _finish(repository, task)
    repository.update_campaign(finished.campaign.id, status=Status.PROCESSED)

    closed = StatusAggregator(repository).close_expired(900, now=utcnow() + timedelta(hours=1))

    assert closed == [old.campaign.id]
    campaign = repository.get_campaign(old.campaign.id)
    assert campaign.enabled is False
    assert campaign.status is Status.FAILED


def test_unknown_ids(repository):
    aggregator = StatusAggregator(repository)
    with pytest.raises(UnknownCampaign):
        aggregator.get_status('missing')
    with pytest.raises(UnknownTask):
        aggregator.retry_task('missing')
