import asyncio

import pytest

from homeio_agent.broadcast import StateBroadcastHub
from homeio_agent.models import InstallProgressEvent


class FakeCollector:
    def __init__(self, gate=None):
        self.calls = 0
        self.gate = gate
        self.apps = []
        self.error = None

    async def collect(self):
        self.calls += 1
        if self.gate is not None:
            await self.gate.wait()
        if self.error is not None:
            raise self.error
        return {
            "system": {"cpu": {"usage": 5}},
            "storage": {"usagePercent": 10},
            "network": {"uploadMbps": 0.0, "downloadMbps": 0.0},
            "runningApps": [],
            "installedApps": list(self.apps),
            "otherContainers": [],
        }


def drain(q):
    items = []
    while not q.empty():
        items.append(q.get_nowait())
    return items


def event(app_id="myapp", progress=0.5, status="running", ts=None):
    kwargs = {} if ts is None else {"timestamp": ts}
    return InstallProgressEvent(appId=app_id, containerName=app_id, name=app_id, icon="/i.png",
                                progress=progress, status=status, **kwargs)


@pytest.mark.asyncio
async def test_subscription_starts_with_snapshot():
    hub = StateBroadcastHub(collector=FakeCollector())
    q = hub.subscribe()
    first = q.get_nowait()
    assert first["type"] == "snapshot"
    assert first["data"]["installedApps"] == []
    assert hub.subscriber_count == 1
    hub.unsubscribe(q)
    assert hub.subscriber_count == 0


@pytest.mark.asyncio
async def test_unchanged_polls_publish_nothing():
    hub = StateBroadcastHub(collector=FakeCollector())
    q = hub.subscribe()
    drain(q)

    await hub.poll_once()
    assert [m["type"] for m in drain(q)] == ["system-update", "apps-update"]

    await hub.poll_once()
    assert drain(q) == []
    assert hub.snapshot()["connected"] is True


@pytest.mark.asyncio
async def test_collector_failure_marks_disconnected():
    collector = FakeCollector()
    hub = StateBroadcastHub(collector=collector)
    await hub.poll_once()
    q = hub.subscribe()
    drain(q)

    collector.error = RuntimeError("docker ps exited with code 1")
    await hub.poll_once()
    msgs = drain(q)
    assert len(msgs) == 1
    assert msgs[0]["type"] == "system-update"
    assert msgs[0]["data"]["connected"] is False
    assert msgs[0]["data"]["lastError"] == "docker ps exited with code 1"
    # last good data is kept
    assert hub.snapshot()["system"] == {"cpu": {"usage": 5}}

    collector.error = None
    await hub.poll_once()
    assert hub.snapshot()["connected"] is True
    assert hub.snapshot()["lastError"] is None


@pytest.mark.asyncio
async def test_concurrent_refreshes_coalesce_into_one_rerun():
    gate = asyncio.Event()
    collector = FakeCollector(gate)
    hub = StateBroadcastHub(collector=collector)

    running = asyncio.create_task(hub.poll_once())
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    assert collector.calls == 1

    assert await hub.trigger_refresh() is False
    assert await hub.trigger_refresh() is False

    gate.set()
    assert await running is True
    assert collector.calls == 2
    assert hub.polls == 2


@pytest.mark.asyncio
async def test_refresh_during_slow_poll_picks_up_new_app():
    gate = asyncio.Event()
    collector = FakeCollector(gate)
    hub = StateBroadcastHub(collector=collector)
    q = hub.subscribe()
    drain(q)

    running = asyncio.create_task(hub.poll_once())
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    # a deploy finished while the scheduled poll was in flight
    collector.apps = [{"appId": "myapp", "status": "running"}]
    await hub.trigger_refresh()
    gate.set()
    await running

    assert hub.snapshot()["installedApps"] == [{"appId": "myapp", "status": "running"}]
    apps_updates = [m for m in drain(q) if m["type"] == "apps-update"]
    assert apps_updates[-1]["data"]["installedApps"][0]["appId"] == "myapp"


@pytest.mark.asyncio
async def test_terminal_progress_expires_after_grace_period():
    hub = StateBroadcastHub(collector=FakeCollector(), expiry_seconds=0.05)
    q = hub.subscribe()
    drain(q)

    hub.push_progress(event(progress=1.0, status="completed"))
    assert "myapp" in hub.snapshot()["installProgress"]

    await asyncio.sleep(0.15)
    assert hub.snapshot()["installProgress"] == {}
    types = [m["type"] for m in drain(q)]
    assert types == ["install-progress", "install-progress-expired"]


@pytest.mark.asyncio
async def test_newer_event_cancels_expiry():
    hub = StateBroadcastHub(collector=FakeCollector(), expiry_seconds=0.05)
    hub.push_progress(event(progress=1.0, status="error", ts=1.0))
    hub.push_progress(event(progress=0.05, status="starting", ts=2.0))

    await asyncio.sleep(0.15)
    current = hub.snapshot()["installProgress"]["myapp"]
    assert current["status"] == "starting"
    assert current["timestamp"] == 2.0


@pytest.mark.asyncio
async def test_slow_subscriber_loses_oldest_messages():
    hub = StateBroadcastHub(collector=FakeCollector(), queue_size=2)
    q = hub.subscribe()
    for i, app in enumerate(["a", "b", "c"]):
        hub.push_progress(event(app_id=app, ts=float(i)))

    msgs = drain(q)
    assert [m["data"]["appId"] for m in msgs] == ["b", "c"]


@pytest.mark.asyncio
async def test_start_and_stop_the_poll_loop():
    collector = FakeCollector()
    hub = StateBroadcastHub(collector=collector, poll_interval=0.01)
    hub.start()
    await asyncio.sleep(0.05)
    await hub.stop()
    assert collector.calls >= 2
    calls = collector.calls
    await asyncio.sleep(0.03)
    assert collector.calls == calls
