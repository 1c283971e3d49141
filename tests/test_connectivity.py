import json

import pytest

from kubepki.connectivity import (
    Check,
    ConnectivityCache,
    ConnectivityChecker,
    ConnectivityMonitor,
    UpdateStatus,
)
from kubepki.errors import LedgerError
from kubepki.runner import SshTarget

from _util import FakeRunner, failing

TARGET = SshTarget(user="ops", key_path="/keys/id_rsa")


def _clock():
    t = [1000.0]
    def now():
        return t[0]
    return t, now


def test_verified_expires_after_ttl_without_recheck():
    t, now = _clock()
    cache = ConnectivityCache(ttl_seconds=300, now_fn=now)
    cache.update_status("10.0.0.1", True)
    assert cache.is_verified("10.0.0.1") is True
    assert cache.needs_recheck("10.0.0.1") is False

    t[0] += 299
    assert cache.is_verified("10.0.0.1") is True

    t[0] += 1
    assert cache.is_verified("10.0.0.1") is False
    assert cache.needs_recheck("10.0.0.1") is True


def test_failed_check_is_not_verified_but_fresh():
    _, now = _clock()
    cache = ConnectivityCache(ttl_seconds=300, now_fn=now)
    cache.update_status("10.0.0.2", False)
    assert cache.is_verified("10.0.0.2") is False
    assert cache.needs_recheck("10.0.0.2") is False
    assert cache.needs_recheck("never-seen") is True


def test_clear_expired():
    t, now = _clock()
    cache = ConnectivityCache(ttl_seconds=10, now_fn=now)
    cache.update_status("a", True)
    t[0] += 5
    cache.update_status("b", True)
    t[0] += 6
    assert cache.clear_expired() == 1
    assert cache.hosts() == ["b"]


def test_save_and_load(tmp_path):
    _, now = _clock()
    path = tmp_path / "ssh_cache.json"
    cache = ConnectivityCache(path, ttl_seconds=300, now_fn=now)
    cache.update_status("10.0.0.1", True)
    cache.save()

    doc = json.loads(path.read_text())
    assert doc == {"connections": {"10.0.0.1": {"verified": True, "timestamp": 1000}}}

    other = ConnectivityCache(path, ttl_seconds=300, now_fn=now)
    assert other.load() == 1
    assert other.is_verified("10.0.0.1")
    assert [p.name for p in tmp_path.iterdir()] == ["ssh_cache.json"]


def test_load_malformed(tmp_path):
    path = tmp_path / "ssh_cache.json"
    path.write_text(json.dumps({"connections": {"h": {"verified": True}}}))
    with pytest.raises(LedgerError):
        ConnectivityCache(path).load()


def test_ensure_reachable_uses_cache_then_probes():
    _, now = _clock()
    runner = FakeRunner()
    checker = ConnectivityChecker(ConnectivityCache(ttl_seconds=300, now_fn=now), runner, TARGET)

    assert checker.ensure_reachable("10.0.0.1") is True
    assert checker.ensure_reachable("10.0.0.1") is True
    assert len(runner.calls) == 1
    argv = runner.calls[0]
    assert argv[0] == "ssh"
    assert "BatchMode=yes" in argv and "StrictHostKeyChecking=no" in argv
    assert argv[-2] == "ops@10.0.0.1"


@pytest.mark.asyncio
async def test_monitor_handles_messages(tmp_path):
    _, now = _clock()
    runner = FakeRunner(fail=failing(lambda a: "ops@10.0.0.2" in a, rc=255))
    cache = ConnectivityCache(tmp_path / "ssh_cache.json", ttl_seconds=300, now_fn=now)
    monitor = ConnectivityMonitor(ConnectivityChecker(cache, runner, TARGET), lambda: [], interval=30)

    await monitor.handle(Check("10.0.0.1"))
    await monitor.handle(Check("10.0.0.2"))
    await monitor.handle(UpdateStatus("10.0.0.3", True))

    assert cache.is_verified("10.0.0.1")
    assert not cache.is_verified("10.0.0.2")
    assert cache.is_verified("10.0.0.3")
    assert (tmp_path / "ssh_cache.json").exists()


@pytest.mark.asyncio
async def test_timer_enqueues_only_due_hosts():
    _, now = _clock()
    cache = ConnectivityCache(ttl_seconds=300, now_fn=now)
    cache.update_status("fresh", True)
    monitor = ConnectivityMonitor(
        ConnectivityChecker(cache, FakeRunner(), TARGET), lambda: ["fresh", "stale", ""], interval=30
    )

    assert monitor.enqueue_due() == 1
    assert monitor.queue.get_nowait() == Check("stale")


@pytest.mark.asyncio
async def test_monitor_worker_processes_queue(tmp_path):
    cache = ConnectivityCache(tmp_path / "ssh_cache.json", ttl_seconds=300)
    monitor = ConnectivityMonitor(ConnectivityChecker(cache, FakeRunner(), TARGET), lambda: ["10.0.0.7"], interval=3600)
    monitor.start()
    try:
        monitor.request_check("10.0.0.8")
        await monitor.queue.join()
    finally:
        await monitor.stop()
    assert cache.is_verified("10.0.0.7")
    assert cache.is_verified("10.0.0.8")


@pytest.mark.asyncio
async def test_stale_host_is_queued_once_until_handled(tmp_path):
    _, now = _clock()
    cache = ConnectivityCache(ttl_seconds=300, now_fn=now)
    monitor = ConnectivityMonitor(
        ConnectivityChecker(cache, FakeRunner(), TARGET), lambda: ["10.0.0.9"], interval=30
    )

    counts = [monitor.enqueue_due() for _ in range(5)]

    assert counts == [1, 0, 0, 0, 0]
    assert monitor.queue.qsize() == 1
    assert monitor.request_check("10.0.0.9") is False

    await monitor.handle(monitor.queue.get_nowait())
    assert cache.is_verified("10.0.0.9")
    assert monitor.request_check("10.0.0.9") is True


@pytest.mark.asyncio
async def test_full_queue_skips_checks():
    _, now = _clock()
    cache = ConnectivityCache(ttl_seconds=300, now_fn=now)
    hosts = [f"10.0.1.{i}" for i in range(5)]
    monitor = ConnectivityMonitor(
        ConnectivityChecker(cache, FakeRunner(), TARGET), lambda: hosts, interval=30, max_queued=3
    )

    assert monitor.enqueue_due() == 3
    assert monitor.queue.qsize() == 3
    assert monitor.request_check("10.0.1.4") is False
