from datetime import timedelta
from threading import Barrier, Thread

import pytest

from washmap.core.errors import ClaimConflict, InvalidTransition, MapInUse, UnknownMap, UnknownTask
from washmap.core.records import utcnow
from washmap.core.status import Status


def test_claim_is_compare_and_set(repository, planned):
    plan = planned()
    task = repository.list_tasks(plan.campaign.id)[0]

    claimed = repository.claim_task(task.id)
    assert claimed.status is Status.PROCESSING
    assert claimed.attempts == 1
    with pytest.raises(ClaimConflict):
        repository.claim_task(task.id)


def test_concurrent_claims_have_one_winner(repository, planned):
    plan = planned()
    task = repository.list_tasks(plan.campaign.id)[0]
    barrier = Barrier(8)
    outcomes = []

    def contender():
        barrier.wait()
        try:
            repository.claim_task(task.id)
            outcomes.append('won')
        except ClaimConflict:
            outcomes.append('lost')

    threads = [Thread(target=contender) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert outcomes.count('won') == 1
    assert outcomes.count('lost') == 7


def test_processed_is_terminal(repository, planned):
    plan = planned()
    task = repository.list_tasks(plan.campaign.id)[0]
    repository.claim_task(task.id)
    done = repository.complete_task(task.id, 'sig-1')

    assert done.is_success is True
    assert done.signature == 'sig-1'
    with pytest.raises(InvalidTransition):
        repository.fail_task(task.id, 'late failure')
    with pytest.raises(ClaimConflict):
        repository.claim_task(task.id)


def test_complete_requires_claim(repository, planned):
    plan = planned()
    task = repository.list_tasks(plan.campaign.id)[0]
    with pytest.raises(InvalidTransition):
        repository.complete_task(task.id, 'sig')


def test_failed_task_can_be_reclaimed(repository, planned):
    plan = planned()
    task = repository.list_tasks(plan.campaign.id)[0]
    repository.claim_task(task.id)
    failed = repository.fail_task(task.id, 'rpc timeout')
    assert failed.error == 'rpc timeout'

    again = repository.claim_task(task.id)
    assert again.attempts == 2
    assert again.error is None


def test_page_tasks_orders_and_slices(repository, planned):
    plan = planned()
    first_page = repository.page_tasks(plan.campaign.id, page=1, page_size=4)
    second_page = repository.page_tasks(plan.campaign.id, page=2, page_size=4)
    descending = repository.page_tasks(plan.campaign.id, page=1, page_size=2, order_field='sort_id', descending=True)

    assert first_page.total == 6
    assert [task.sort_id for task in first_page.tasks] == [0, 1, 2, 3]
    assert [task.sort_id for task in second_page.tasks] == [4, 5]
    assert [task.sort_id for task in descending.tasks] == [5, 4]


def test_delete_map_refused_while_campaigns_exist(repository, planned):
    plan = planned()
    with pytest.raises(MapInUse):
        repository.delete_map(plan.campaign.map_id)


def test_recent_root_addresses(repository, planned):
    planned()
    assert repository.recent_root_addresses(utcnow() - timedelta(minutes=1)) == {'0x' + 'a' * 40}
    assert repository.recent_root_addresses(utcnow() + timedelta(minutes=1)) == set()


def test_unknown_records(repository):
    with pytest.raises(UnknownMap):
        repository.get_map('nope')
    with pytest.raises(UnknownTask):
        repository.claim_task('nope')


def test_update_campaign_rejects_unknown_fields(repository, planned):
    plan = planned()
    with pytest.raises(ValueError):
        repository.update_campaign(plan.campaign.id, total_amount=1)


def test_claim_records_lease(repository, planned):
    plan = planned()
    task = repository.list_tasks(plan.campaign.id)[0]

    claimed = repository.claim_task(task.id, owner='run-a')

    assert claimed.claim_owner == 'run-a'
    assert claimed.claimed_at is not None


def test_outcome_requires_current_lease(repository, planned):
    plan = planned()
    task = repository.list_tasks(plan.campaign.id)[0]
    repository.claim_task(task.id, owner='run-a')

    with pytest.raises(ClaimConflict):
        repository.complete_task(task.id, 'sig', owner='run-b')
    with pytest.raises(ClaimConflict):
        repository.fail_task(task.id, 'boom', owner='run-b')

    done = repository.complete_task(task.id, 'sig', owner='run-a')
    assert done.status is Status.PROCESSED
    with pytest.raises(ClaimConflict):
        repository.complete_task(task.id, 'sig', owner='run-a')


def test_reset_skips_claims_taken_after_cutoff(repository, planned):
    plan = planned()
    old, fresh = repository.list_tasks(plan.campaign.id)[:2]
    repository.claim_task(old.id, owner='run-a')
    cutoff = utcnow() + timedelta(seconds=1)
    repository._tasks[fresh.id] = repository._tasks[fresh.id].copy(
        status=Status.PROCESSING, claim_owner='run-b', claimed_at=cutoff + timedelta(seconds=1)
    )

    reset = repository.reset_campaign_tasks(
        plan.campaign.id, Status.PROCESSING, Status.UNPROCESSED, unsigned_only=True, claimed_before=cutoff
    )

    assert reset == 1
    assert repository.get_task(old.id).status is Status.UNPROCESSED
    assert repository.get_task(fresh.id).claim_owner == 'run-b'
