from couchlogin.service.sweeper import DeletionWatcher, SweepReport, SweepWorker

DAY_MS = 86_400_000


async def test_run_once_reports_every_sweep(stack, clock):
    await stack.setup()
    await stack.register("alice")
    session = await stack.accounts.login("alice", "secret123")
    await stack.accounts.forgot_password("alice@example.com")
    await stack.adapter.store_key("ghost", "orphan-key", "pw", clock.now + 1000, clock.now)
    stack.relay.open()

    assert await stack.sweeper.run_once() == SweepReport()

    clock.advance(DAY_MS + 1000)
    report = await stack.sweeper.run_once()
    assert report.expired_sessions == 1
    assert report.expired_credentials == 1
    assert report.expired_resets == 1
    assert report.expired_channels == 1

    user = await stack.users.get("alice")
    assert session.token not in user.session
    assert user.forgot_password is None
    assert len(stack.relay) == 0
    assert await stack.sweeper.run_once() == SweepReport()


async def test_sweeper_without_optional_parts(stack):
    await stack.setup()
    worker = SweepWorker(stack.engine, stack.adapter, interval=60)
    report = await worker.run_once()
    assert report.expired_resets == 0
    assert report.expired_channels == 0


async def test_zero_interval_disables_the_loop(stack):
    await stack.setup()
    await stack.sweeper.start()
    assert not stack.sweeper.running
    await stack.sweeper.stop()


async def test_start_and_stop_loop(stack):
    await stack.setup()
    worker = SweepWorker(stack.engine, stack.adapter, interval=3600)
    await worker.start()
    assert worker.running
    await worker.start()
    await worker.stop()
    assert not worker.running


async def test_deletion_watcher_lifecycle(stack):
    await stack.setup()
    watcher = DeletionWatcher(stack.accounts)
    assert not watcher.running
    await watcher.start()
    assert watcher.running
    await watcher.stop()
    assert not watcher.running
