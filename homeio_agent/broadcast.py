"""
Process-wide state owner and fan-out.

The hub owns the canonical snapshot; observers get an asyncio.Queue of
messages. Every mutation replaces a whole field and is compared with the old
value first, so unchanged polls produce no traffic.

Message types:
    snapshot                  full state, first message on every subscription
    system-update             system/storage/network/runningApps (+ connected/lastError)
    apps-update               installedApps/otherContainers
    install-progress          one InstallProgressEvent
    install-progress-expired  a terminal event left the state after its grace period
"""

import asyncio
import logging
import threading
import time
from typing import Any, Dict, Optional, Set

from homeio_agent import settings
from homeio_agent.models import InstallProgressEvent

log = logging.getLogger(__name__)

SYSTEM_FIELDS = ("system", "storage", "network", "runningApps")
APPS_FIELDS = ("installedApps", "otherContainers")


def empty_state() -> Dict[str, Any]:
    return {
        "system": None,
        "storage": None,
        "network": None,
        "runningApps": [],
        "installedApps": [],
        "otherContainers": [],
        "installProgress": {},
        "connected": False,
        "lastError": None,
    }


class StateBroadcastHub:
    def __init__(
        self,
        collector=None,
        poll_interval: Optional[float] = None,
        expiry_seconds: Optional[float] = None,
        queue_size: Optional[int] = None,
    ):
        if collector is None:
            from homeio_agent.system_status import SystemCollector

            collector = SystemCollector()
        self.collector = collector
        self.poll_interval = settings.BROADCAST_POLL_SECONDS if poll_interval is None else poll_interval
        self.expiry_seconds = settings.PROGRESS_EXPIRY_SECONDS if expiry_seconds is None else expiry_seconds
        self.queue_size = settings.SUBSCRIBER_QUEUE_SIZE if queue_size is None else queue_size

        self._state = empty_state()
        self._subscribers: Set[asyncio.Queue] = set()
        self._expiry: Dict[str, asyncio.TimerHandle] = {}
        self._polling = False
        self._rerun = False
        self._task: Optional[asyncio.Task] = None
        self.polls = 0

    # -----------------------------
    # Subscribers
    # -----------------------------

    def snapshot(self) -> Dict[str, Any]:
        return dict(self._state)

    def subscribe(self) -> asyncio.Queue:
        q: asyncio.Queue = asyncio.Queue(maxsize=self.queue_size)
        q.put_nowait({"type": "snapshot", "data": self.snapshot(), "timestamp": time.time()})
        self._subscribers.add(q)
        log.debug("subscriber added: total=%s", len(self._subscribers))
        return q

    def unsubscribe(self, q: asyncio.Queue) -> None:
        self._subscribers.discard(q)
        log.debug("subscriber removed: total=%s", len(self._subscribers))

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def _publish(self, message: Dict[str, Any]) -> None:
        for q in list(self._subscribers):
            if q.full():
                # slow consumer: drop its oldest message
                try:
                    q.get_nowait()
                except asyncio.QueueEmpty:
                    pass
            q.put_nowait(message)

    def _replace(self, field: str, value: Any) -> bool:
        if self._state.get(field) == value:
            return False
        self._state = {**self._state, field: value}
        return True

    # -----------------------------
    # Polling
    # -----------------------------

    async def poll_once(self) -> bool:
        """
        Run one poll. If a poll is already running, ask it to run once more
        and return False instead of polling concurrently.
        """
        if self._polling:
            self._rerun = True
            return False
        self._polling = True
        try:
            while True:
                self._rerun = False
                await self._collect_and_apply()
                if not self._rerun:
                    break
        finally:
            self._polling = False
        return True

    async def trigger_refresh(self) -> bool:
        return await self.poll_once()

    async def _collect_and_apply(self) -> None:
        self.polls += 1
        try:
            data = await self.collector.collect()
        except Exception as e:
            log.warning("state poll failed: %s", e)
            changed = self._replace("connected", False)
            changed = self._replace("lastError", str(e)) or changed
            if changed:
                self._publish(self._system_message())
            return

        system_changed = False
        for field in SYSTEM_FIELDS:
            if field in data:
                system_changed = self._replace(field, data[field]) or system_changed
        system_changed = self._replace("connected", True) or system_changed
        system_changed = self._replace("lastError", None) or system_changed
        if system_changed:
            self._publish(self._system_message())

        apps_changed = False
        for field in APPS_FIELDS:
            if field in data:
                apps_changed = self._replace(field, data[field]) or apps_changed
        if apps_changed:
            self._publish(
                {
                    "type": "apps-update",
                    "data": {f: self._state[f] for f in APPS_FIELDS},
                    "timestamp": time.time(),
                }
            )

    def _system_message(self) -> Dict[str, Any]:
        data = {f: self._state[f] for f in SYSTEM_FIELDS}
        data["connected"] = self._state["connected"]
        data["lastError"] = self._state["lastError"]
        return {"type": "system-update", "data": data, "timestamp": time.time()}

    async def _loop(self) -> None:
        log.info("state broadcast loop started: interval=%ss", self.poll_interval)
        while True:
            await self.poll_once()
            await asyncio.sleep(self.poll_interval)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        for handle in self._expiry.values():
            handle.cancel()
        self._expiry.clear()

    # -----------------------------
    # Install progress
    # -----------------------------

    def push_progress(self, event: InstallProgressEvent) -> None:
        """Store and fan out one event. Must run on the event loop thread."""
        payload = event.model_dump()
        self._state = {**self._state, "installProgress": {**self._state["installProgress"], event.appId: payload}}

        pending = self._expiry.pop(event.appId, None)
        if pending is not None:
            pending.cancel()
        if event.terminal:
            loop = asyncio.get_running_loop()
            self._expiry[event.appId] = loop.call_later(
                self.expiry_seconds, self._expire, event.appId, event.timestamp
            )
        self._publish({"type": "install-progress", "data": payload, "timestamp": event.timestamp})

    def _expire(self, app_id: str, timestamp: float) -> None:
        self._expiry.pop(app_id, None)
        current = self._state["installProgress"].get(app_id)
        if current is None or current.get("timestamp") != timestamp:
            return
        progress = {k: v for k, v in self._state["installProgress"].items() if k != app_id}
        self._state = {**self._state, "installProgress": progress}
        self._publish({"type": "install-progress-expired", "appId": app_id, "timestamp": time.time()})


_hub: Optional[StateBroadcastHub] = None
_hub_lock = threading.Lock()


def get_hub() -> StateBroadcastHub:
    global _hub
    with _hub_lock:
        if _hub is None:
            _hub = StateBroadcastHub()
        return _hub


def set_hub(hub: Optional[StateBroadcastHub]) -> None:
    global _hub
    with _hub_lock:
        _hub = hub
