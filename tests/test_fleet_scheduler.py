import asyncio
from datetime import timedelta

import pytest
from sqlmodel import select

from printfarm.core.exceptions import DeviceUnreachable
from printfarm.models import (
    DeviceStatusEnum,
    Job,
    JobPriorityEnum,
    JobStatusEnum,
    PowerEvent,
    PowerEventTypeEnum,
    QueueEntry,
    QueueEntryStatusEnum,
)
from printfarm.models.energy import EnergySettingsUpdate
from printfarm.schemas.events import EventTopic
from printfarm.utils.timeutils import utc_now


async def _entries(fleet):
    async with fleet.session_maker() as session:
        return (await session.exec(select(QueueEntry).order_by(QueueEntry.id))).all()


async def _jobs(fleet):
    async with fleet.session_maker() as session:
        return (await session.exec(select(Job).order_by(Job.id))).all()


@pytest.mark.asyncio
async def test_tick_assigns_min_of_idle_devices_and_candidates(fleet, make_device, make_entry):
    """Three idle devices, two queued jobs: exactly two assignments."""
    for name in ("P-01", "P-02", "P-03"):
        await make_device(name)
    await make_entry("bracket")
    await make_entry("gear")

    assignments = await fleet.scheduler.run_cycle()

    assert len(assignments) == 2
    assert len({a.device_id for a in assignments}) == 2
    entries = await _entries(fleet)
    assert all(e.status == QueueEntryStatusEnum.ASSIGNED for e in entries)
    jobs = await _jobs(fleet)
    assert all(j.status == JobStatusEnum.PRINTING for j in jobs)
    assert {j.assigned_device_id for j in jobs} == {e.device_id for e in entries}


@pytest.mark.asyncio
async def test_tick_serves_highest_priority_first(fleet, make_device, make_entry):
    await make_device("P-01")
    low = await make_entry("low-job", JobPriorityEnum.LOW)
    high = await make_entry("high-job", JobPriorityEnum.HIGH)
    medium = await make_entry("medium-job", JobPriorityEnum.MEDIUM)

    assignments = await fleet.scheduler.run_cycle()

    assert [a.queue_entry_id for a in assignments] == [high.id]
    statuses = {e.id: e.status for e in await _entries(fleet)}
    assert statuses[low.id] == QueueEntryStatusEnum.QUEUED
    assert statuses[medium.id] == QueueEntryStatusEnum.QUEUED


@pytest.mark.asyncio
async def test_tick_is_fifo_within_a_priority(fleet, make_device, make_entry):
    now = utc_now()
    await make_device("P-01")
    late = await make_entry("late", created_at=now)
    early = await make_entry("early", created_at=now - timedelta(minutes=5))

    assignments = await fleet.scheduler.run_cycle()

    assert [a.queue_entry_id for a in assignments] == [early.id]
    statuses = {e.id: e.status for e in await _entries(fleet)}
    assert statuses[late.id] == QueueEntryStatusEnum.QUEUED


@pytest.mark.asyncio
async def test_only_idle_device_receives_top_entry(fleet, make_device, make_entry):
    """Device A idle, B printing; queue [P=5 at t1, P=1 at t2]."""
    now = utc_now()
    device_a = await make_device("A")
    await make_device("B", status=DeviceStatusEnum.PRINTING)
    await make_entry("medium", JobPriorityEnum.MEDIUM, created_at=now - timedelta(seconds=10))
    urgent = await make_entry("urgent", JobPriorityEnum.HIGH, created_at=now)

    assignments = await fleet.scheduler.run_cycle()

    assert len(assignments) == 1
    assert assignments[0].queue_entry_id == urgent.id
    assert assignments[0].device_id == device_a.id


@pytest.mark.asyncio
async def test_offline_maintenance_and_occupied_devices_are_skipped(fleet, make_device, make_entry):
    await make_device("offline", status=DeviceStatusEnum.OFFLINE)
    await make_device("service", maintenance_mode=True)
    await make_device("retired", is_active=False)
    held = await make_device("held")
    await make_entry("running")
    await make_entry("waiting")

    # First tick occupies "held"; its telemetry may still say idle
    first = await fleet.scheduler.run_cycle()
    assert [a.device_id for a in first] == [held.id]

    second = await fleet.scheduler.run_cycle()
    assert second == []


@pytest.mark.asyncio
async def test_blocked_tick_changes_nothing(fleet, recorder, make_device, make_entry, record_load):
    await make_device("P-01")
    await make_entry("bracket")
    await record_load(5.5, max_kw=6.0)

    assignments = await fleet.scheduler.run_cycle()

    assert assignments == []
    entries = await _entries(fleet)
    assert entries[0].status == QueueEntryStatusEnum.QUEUED
    assert entries[0].device_id is None
    jobs = await _jobs(fleet)
    assert jobs[0].status == JobStatusEnum.QUEUED
    assert jobs[0].assigned_device_id is None

    async with fleet.session_maker() as session:
        events = (await session.exec(select(PowerEvent))).all()
    assert [e.type for e in events] == [PowerEventTypeEnum.OVERLOAD_PREVENTED]
    assert recorder.of(EventTopic.QUEUE_UPDATED, "JOB_ASSIGNED") == []
    fleet.device_client.start_print.assert_not_called()


@pytest.mark.asyncio
async def test_tick_with_empty_queue_is_a_no_op(fleet, make_device):
    await make_device("P-01")
    assert await fleet.scheduler.run_cycle() == []


@pytest.mark.asyncio
async def test_staggered_starts_are_deferred_without_sleeping(fleet, recorder, make_device, make_entry):
    for name in ("P-01", "P-02", "P-03"):
        await make_device(name)
    for name in ("a", "b", "c"):
        await make_entry(name)

    loop = asyncio.get_running_loop()
    began = loop.time()
    assignments = await fleet.scheduler.run_cycle()
    elapsed = loop.time() - began

    assert [a.start_delay_sec for a in assignments] == [0, 300, 600]
    assert elapsed < 5
    assert fleet.scheduler.pending_start_count == 2

    await asyncio.gather(*list(fleet.scheduler._start_tasks))
    fleet.device_client.start_print.assert_awaited_once()

    events = recorder.of(EventTopic.QUEUE_UPDATED, "JOB_ASSIGNED")
    assert [e.payload["mode"] for e in events] == ["auto", "auto", "auto"]

    fleet.scheduler.cancel_pending_starts()
    assert fleet.scheduler.pending_start_count == 0


@pytest.mark.asyncio
async def test_stagger_disabled_starts_everything_at_once(fleet, session, make_device, make_entry):
    await fleet.energy.update_settings(session, EnergySettingsUpdate(stagger_enabled=False))
    for name in ("P-01", "P-02"):
        await make_device(name)
    for name in ("a", "b"):
        await make_entry(name)

    assignments = await fleet.scheduler.run_cycle()

    assert [a.start_delay_sec for a in assignments] == [0, 0]
    assert fleet.scheduler.pending_start_count == 0
    await asyncio.gather(*list(fleet.scheduler._start_tasks))
    assert fleet.device_client.start_print.await_count == 2


@pytest.mark.asyncio
async def test_failed_start_signal_leaves_state_for_operator(fleet, recorder, make_device, make_entry):
    device = await make_device("P-01")
    await make_entry("bracket")
    fleet.device_client.start_print.side_effect = DeviceUnreachable(device.id, "Connection refused")

    await fleet.scheduler.run_cycle()
    await asyncio.gather(*list(fleet.scheduler._start_tasks))

    failures = recorder.of(EventTopic.QUEUE_UPDATED, "START_FAILED")
    assert len(failures) == 1
    assert failures[0].payload["error"] == "Connection refused"
    jobs = await _jobs(fleet)
    assert jobs[0].status == JobStatusEnum.PRINTING


@pytest.mark.asyncio
async def test_tick_waits_for_the_assignment_lock(fleet, make_device, make_entry):
    await make_device("P-01")
    await make_entry("bracket")

    await fleet.scheduler.lock.acquire()
    try:
        tick = asyncio.create_task(fleet.scheduler.run_cycle())
        for _ in range(5):
            await asyncio.sleep(0)
        assert not tick.done()
    finally:
        fleet.scheduler.lock.release()

    assert len(await tick) == 1


@pytest.mark.asyncio
async def test_commit_assignment_skips_entry_that_is_no_longer_queued(fleet, make_device, make_entry):
    device = await make_device("P-01")
    entry = await make_entry("bracket")

    async with fleet.session_maker() as session:
        first = await fleet.scheduler.commit_assignment(session, entry.id, device.id)
        second = await fleet.scheduler.commit_assignment(session, entry.id, device.id)

    assert first is not None
    assert second is None


# --- Startup reconciliation ---

async def _interrupted_assignment(fleet, make_entry, device_id):
    """An entry committed as ASSIGNED whose job never left QUEUED."""
    entry = await make_entry("interrupted")
    async with fleet.session_maker() as session:
        db_entry = await session.get(QueueEntry, entry.id)
        db_entry.status = QueueEntryStatusEnum.ASSIGNED
        db_entry.device_id = device_id
        session.add(db_entry)
        await session.commit()
    return entry


@pytest.mark.asyncio
async def test_reconcile_replays_interrupted_assignment(fleet, make_device, make_entry):
    device = await make_device("P-01")
    entry = await _interrupted_assignment(fleet, make_entry, device.id)

    report = await fleet.scheduler.reconcile()

    assert report.replayed == [entry.job_id]
    async with fleet.session_maker() as session:
        job = await session.get(Job, entry.job_id)
    assert job.status == JobStatusEnum.PRINTING
    assert job.assigned_device_id == device.id
    await asyncio.gather(*list(fleet.scheduler._start_tasks))
    fleet.device_client.start_print.assert_awaited_once()


@pytest.mark.asyncio
async def test_reconcile_reverts_when_device_is_taken(fleet, make_device, make_entry):
    device = await make_device("P-01")
    running = await make_entry("running")
    async with fleet.session_maker() as session:
        await fleet.scheduler.commit_assignment(session, running.id, device.id)
    entry = await _interrupted_assignment(fleet, make_entry, device.id)

    report = await fleet.scheduler.reconcile()

    assert report.reverted == [entry.id]
    assert report.restored == [running.job_id]
    async with fleet.session_maker() as session:
        db_entry = await session.get(QueueEntry, entry.id)
        job = await session.get(Job, entry.job_id)
    assert db_entry.status == QueueEntryStatusEnum.QUEUED
    assert db_entry.device_id is None
    assert job.status == JobStatusEnum.QUEUED


@pytest.mark.asyncio
async def test_reconcile_closes_entries_of_finished_jobs(fleet, make_entry):
    entry = await make_entry("done-already")
    async with fleet.session_maker() as session:
        job = await session.get(Job, entry.job_id)
        job.status = JobStatusEnum.COMPLETED
        session.add(job)
        await session.commit()

    report = await fleet.scheduler.reconcile()

    assert report.closed == [entry.id]
    async with fleet.session_maker() as session:
        assert (await session.get(QueueEntry, entry.id)).status == QueueEntryStatusEnum.DONE


@pytest.mark.asyncio
async def test_reconcile_flags_contradictory_rows(fleet, recorder, make_device, make_entry):
    device = await make_device("P-01")
    entry = await make_entry("confused")
    async with fleet.session_maker() as session:
        job = await session.get(Job, entry.job_id)
        job.status = JobStatusEnum.PRINTING
        job.assigned_device_id = device.id
        session.add(job)
        await session.commit()

    report = await fleet.scheduler.reconcile()

    assert report.flagged == [entry.job_id]
    async with fleet.session_maker() as session:
        job = await session.get(Job, entry.job_id)
    assert job.needs_reconciliation is True
    assert job.status == JobStatusEnum.PRINTING
    assert recorder.of(EventTopic.QUEUE_UPDATED, "RECONCILED")


@pytest.mark.asyncio
async def test_reconcile_of_consistent_state_is_silent(fleet, recorder, make_device, make_entry):
    device = await make_device("P-01")
    entry = await make_entry("fine")
    async with fleet.session_maker() as session:
        await fleet.scheduler.commit_assignment(session, entry.id, device.id)

    report = await fleet.scheduler.reconcile()

    assert report.restored == [entry.job_id]
    assert not (report.replayed or report.reverted or report.closed or report.flagged)
    assert recorder.of(EventTopic.QUEUE_UPDATED, "RECONCILED") == []


@pytest.mark.asyncio
async def test_tick_publishes_assignments_after_releasing_lock(fleet, make_device, make_entry):
    await make_device("P-01")
    await make_device("P-02")
    await make_entry("bracket")
    await make_entry("gear")
    lock_held = []

    async def on_event(event):
        if event.payload.get("type") == "JOB_ASSIGNED":
            lock_held.append(fleet.scheduler.lock.locked())

    fleet.event_bus.subscribe(on_event)
    await fleet.scheduler.run_cycle()
    await asyncio.gather(*list(fleet.scheduler._start_tasks))
    fleet.scheduler.cancel_pending_starts()

    assert lock_held == [False, False]
