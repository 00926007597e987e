"""Tests for listener supervision: restart, reconciliation, shutdown."""

import asyncio
import os
import signal
from datetime import datetime, timezone

import pytest

from idlewatch.core import MailboxCredential
from idlewatch.supervisor import IdleManager

from tests.fakes import FakeMailboxStore, FakeSpawner, wait_until


def mailbox(id, **kwargs):
    return MailboxCredential(id=id, email_address=f"box{id}@example.com", host="imap.example.com", **kwargs)


def make_manager(store, spawner=None, **kwargs):
    return IdleManager(store, spawner or FakeSpawner(), **kwargs)


# =============================================================================
# Worker lifecycle
# =============================================================================

@pytest.mark.asyncio
async def test_start_worker_tracks_one_handle_per_mailbox():
    spawner = FakeSpawner()
    manager = make_manager(FakeMailboxStore(mailbox(1)), spawner)

    await manager.start_worker(mailbox(1))
    await manager.start_worker(mailbox(1))

    assert manager.tracked_ids == {1}
    assert len(spawner.for_mailbox(1)) == 2
    assert len(spawner.live(1)) == 1
    assert spawner.workers[0].stop_calls == 1


@pytest.mark.asyncio
async def test_stop_worker_unknown_id_is_noop():
    manager = make_manager(FakeMailboxStore())
    await manager.stop_worker(42)
    assert manager.tracked_ids == set()


@pytest.mark.asyncio
async def test_spawn_failure_is_retried_on_next_reconcile():
    store = FakeMailboxStore(mailbox(1), mailbox(2))
    spawner = FakeSpawner(fail_ids={2})
    manager = make_manager(store, spawner)

    await manager.reconcile()
    assert manager.tracked_ids == {1}

    spawner.fail_ids.clear()
    await manager.reconcile()
    assert manager.tracked_ids == {1, 2}


# =============================================================================
# Supervision passes
# =============================================================================

@pytest.mark.asyncio
async def test_dead_worker_for_eligible_mailbox_is_restarted():
    spawner = FakeSpawner()
    manager = make_manager(FakeMailboxStore(mailbox(1)), spawner)
    await manager.start_worker(mailbox(1))

    spawner.workers[0].crash()
    await manager.check_workers()

    assert len(spawner.live(1)) == 1
    assert manager.handles[1].worker is spawner.workers[1]
    assert manager.handles[1].restarts == 1


@pytest.mark.asyncio
async def test_restart_is_unbounded():
    spawner = FakeSpawner()
    manager = make_manager(FakeMailboxStore(mailbox(1)), spawner)
    await manager.start_worker(mailbox(1))

    for _ in range(5):
        spawner.workers[-1].crash()
        await manager.check_workers()

    assert len(spawner.for_mailbox(1)) == 6
    assert manager.handles[1].restarts == 5


@pytest.mark.asyncio
async def test_dead_worker_for_ineligible_mailbox_is_dropped():
    store = FakeMailboxStore(mailbox(1))
    spawner = FakeSpawner()
    manager = make_manager(store, spawner)
    await manager.start_worker(mailbox(1))

    store.mailboxes[1].deleted_at = datetime.now(timezone.utc)
    spawner.workers[0].crash()
    await manager.check_workers()

    assert manager.tracked_ids == set()
    assert len(spawner.workers) == 1


@pytest.mark.asyncio
async def test_live_workers_do_not_hit_the_store():
    store = FakeMailboxStore(mailbox(1))
    manager = make_manager(store)
    await manager.start_worker(mailbox(1))
    before = manager.handles[1].last_seen_alive

    await manager.check_workers()

    assert store.queries == 0
    assert manager.handles[1].last_seen_alive >= before


@pytest.mark.asyncio
async def test_reconcile_matches_eligible_set_exactly():
    store = FakeMailboxStore(mailbox(1), mailbox(2))
    spawner = FakeSpawner()
    manager = make_manager(store, spawner)
    await manager.reconcile()
    assert manager.tracked_ids == {1, 2}

    store.mailboxes[1].is_active = False
    store.mailboxes[2].provider = "gmail"
    store.mailboxes[3] = mailbox(3)
    await manager.reconcile()

    assert manager.tracked_ids == {m.id for m in await store.list_eligible_mailboxes()} == {3}
    assert spawner.live(1) == [] and spawner.live(2) == []


@pytest.mark.asyncio
async def test_explicit_mailbox_ids_limit_scope():
    store = FakeMailboxStore(mailbox(1), mailbox(2), mailbox(3))
    manager = make_manager(store, mailbox_ids=[2, 3])

    assert [m.id for m in await manager.discover_eligible_mailboxes()] == [2, 3]


@pytest.mark.asyncio
async def test_all_flag_overrides_ids():
    store = FakeMailboxStore(mailbox(1), mailbox(2))
    manager = make_manager(store, mailbox_ids=[2], all_mailboxes=True)

    assert [m.id for m in await manager.discover_eligible_mailboxes()] == [1, 2]


# =============================================================================
# Main loop
# =============================================================================

@pytest.mark.asyncio
async def test_run_without_mailboxes_exits_immediately(caplog):
    spawner = FakeSpawner()
    manager = make_manager(FakeMailboxStore(mailbox(1, is_active=False)), spawner)

    assert await asyncio.wait_for(manager.run(), timeout=1) == 0
    assert spawner.workers == []
    assert "No IMAP mailboxes found to monitor." in caplog.text


@pytest.mark.asyncio
async def test_crash_restart_and_deactivation_scenario():
    store = FakeMailboxStore(mailbox(1))
    spawner = FakeSpawner()
    manager = make_manager(store, spawner, all_mailboxes=True, reconcile_interval=0.02)
    task = asyncio.create_task(manager.run())

    await wait_until(lambda: len(spawner.live(1)) == 1)
    assert manager.tracked_ids == {1}

    # Kill the worker directly: a new one appears within a tick
    spawner.workers[0].crash()
    await wait_until(lambda: len(spawner.for_mailbox(1)) == 2 and len(spawner.live(1)) == 1)

    # Deactivate the mailbox: its worker is stopped and the handle removed
    store.mailboxes[1].is_active = False
    await wait_until(lambda: manager.tracked_ids == set())
    assert spawner.live(1) == []

    manager.request_shutdown()
    assert await asyncio.wait_for(task, timeout=1) == 0


@pytest.mark.asyncio
async def test_new_mailbox_gets_a_worker_within_a_tick():
    store = FakeMailboxStore(mailbox(1))
    spawner = FakeSpawner()
    manager = make_manager(store, spawner, reconcile_interval=0.02)
    task = asyncio.create_task(manager.run())

    await wait_until(lambda: manager.tracked_ids == {1})
    store.mailboxes[2] = mailbox(2)
    await wait_until(lambda: manager.tracked_ids == {1, 2})

    manager.request_shutdown()
    await asyncio.wait_for(task, timeout=1)


@pytest.mark.asyncio
async def test_shutdown_interrupts_reconcile_sleep_and_stops_all_workers():
    store = FakeMailboxStore(mailbox(1), mailbox(2))
    spawner = FakeSpawner()
    manager = make_manager(store, spawner, reconcile_interval=3600)
    task = asyncio.create_task(manager.run())

    await wait_until(lambda: manager.tracked_ids == {1, 2})
    spawner.workers[0].crash()  # already dead when shutdown comes

    manager.request_shutdown()
    assert await asyncio.wait_for(task, timeout=1) == 0

    assert manager.tracked_ids == set()
    assert all(not w.is_running() for w in spawner.workers)
    assert [w.stop_calls for w in spawner.workers] == [1, 1]


@pytest.mark.asyncio
async def test_shutdown_is_idempotent():
    spawner = FakeSpawner()
    manager = make_manager(FakeMailboxStore(mailbox(1)), spawner)
    await manager.start_worker(mailbox(1))

    await manager.shutdown()
    await manager.shutdown()
    manager.request_shutdown()

    assert spawner.workers[0].stop_calls == 1
    assert manager.stopping


def test_default_reconcile_interval():
    assert IdleManager.RECONCILE_INTERVAL == 60


# =============================================================================
# Fault isolation
# =============================================================================

@pytest.mark.asyncio
async def test_malformed_mailbox_row_does_not_stop_other_listeners(repository):
    await repository.save_mailbox(mailbox(1))
    spawner = FakeSpawner()
    manager = make_manager(repository, spawner, reconcile_interval=0.02)
    task = asyncio.create_task(manager.run())
    await wait_until(lambda: manager.tracked_ids == {1})

    await repository.db.conn.execute(
        "INSERT INTO mailboxes (id, email_address, imap_host, imap_encryption) VALUES (?, ?, ?, ?)",
        (2, "broken@example.com", "imap.example.com", "notls"),
    )
    await repository.db.conn.commit()
    await repository.save_mailbox(mailbox(3))

    await wait_until(lambda: manager.tracked_ids == {1, 3})
    assert not task.done()
    assert spawner.workers[0].is_running()

    manager.request_shutdown()
    assert await asyncio.wait_for(task, timeout=1) == 0


@pytest.mark.asyncio
async def test_store_errors_are_retried_on_next_tick(caplog):
    store = FakeMailboxStore(mailbox(1), mailbox(2))
    spawner = FakeSpawner()
    manager = make_manager(store, spawner, reconcile_interval=0.02)
    task = asyncio.create_task(manager.run())
    await wait_until(lambda: manager.tracked_ids == {1, 2})

    store.error = OSError("database is locked")
    spawner.workers[0].crash()
    queries = store.queries
    await wait_until(lambda: store.queries >= queries + 3)

    assert not task.done()
    assert spawner.workers[1].is_running()
    assert "database is locked" in caplog.text

    store.error = None
    await wait_until(lambda: len(spawner.live(1)) == 1)

    manager.request_shutdown()
    assert await asyncio.wait_for(task, timeout=1) == 0


# =============================================================================
# Signals
# =============================================================================

@pytest.mark.asyncio
async def test_sigterm_stops_manager_and_workers():
    spawner = FakeSpawner()
    manager = make_manager(FakeMailboxStore(mailbox(1), mailbox(2)), spawner, reconcile_interval=3600)
    loop = asyncio.get_running_loop()
    manager.install_signal_handlers(loop)
    try:
        task = asyncio.create_task(manager.run())
        await wait_until(lambda: manager.tracked_ids == {1, 2})

        os.kill(os.getpid(), signal.SIGTERM)

        assert await asyncio.wait_for(task, timeout=2) == 0
        assert manager.stopping
        assert all(not w.is_running() for w in spawner.workers)
    finally:
        loop.remove_signal_handler(signal.SIGTERM)
        loop.remove_signal_handler(signal.SIGINT)
