"""
Client Observer

Follows one broadcast from the requesting side (the patient's or pharmacy's "searching"
dialog). Three producers run side by side:

- push: snapshots from the change feed, when a subscription is available
- poll: a periodic fetch of the latest snapshot
- escalation: a periodic call to the escalation trigger, so a stalled broadcast keeps
  moving even when no worker is running

Push and poll both hand snapshots to reconcile(), which is the only place observer state
changes. reconcile() ignores stale snapshots and fires on_accepted / on_failed at most once.
"""

import asyncio
import inspect
import json
import logging
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import httpx
from pydantic import BaseModel

from ...shared.clock import system_clock
from .state import BroadcastSnapshot, BroadcastStatus

logger = logging.getLogger(__name__)

SnapshotPayload = Union[BroadcastSnapshot, dict]


class ObserverView(BaseModel):
    """What a searching dialog renders"""

    broadcast_id: int
    status: BroadcastStatus
    phase: str
    round: int
    candidates_notified: int
    search_radius_km: float
    phase_seconds_left: int
    accepted_by_id: Optional[int] = None
    failure_reason: Optional[str] = None
    version: int


def build_view(snapshot: BroadcastSnapshot, now: datetime) -> ObserverView:
    seconds_left = 0
    if not snapshot.is_terminal:
        seconds_left = max(0, int((snapshot.phase_timeout_at - now).total_seconds()))

    return ObserverView(
        broadcast_id=snapshot.id,
        status=snapshot.status,
        phase=snapshot.current_phase.value,
        round=snapshot.broadcast_round,
        candidates_notified=len(snapshot.notified_ids),
        search_radius_km=snapshot.search_radius_km,
        phase_seconds_left=seconds_left,
        accepted_by_id=snapshot.accepted_by_id,
        failure_reason=snapshot.failure_reason.value if snapshot.failure_reason else None,
        version=snapshot.version,
    )


async def _call(callback, *args):
    result = callback(*args)
    if inspect.isawaitable(result):
        await result


class BroadcastObserver:
    def __init__(
        self,
        broadcast_id: int,
        fetch_snapshot: Callable[[int], Awaitable[SnapshotPayload]],
        trigger_escalation: Callable[[], Awaitable[object]],
        subscribe: Optional[Callable[[int], AsyncIterator[SnapshotPayload]]] = None,
        on_accepted: Optional[Callable[[BroadcastSnapshot], object]] = None,
        on_failed: Optional[Callable[[BroadcastSnapshot], object]] = None,
        poll_interval: float = 2.0,
        escalation_interval: float = 5.0,
        clock=None,
    ):
        self.broadcast_id = broadcast_id
        self.fetch_snapshot = fetch_snapshot
        self.trigger_escalation = trigger_escalation
        self.subscribe = subscribe
        self.on_accepted = on_accepted
        self.on_failed = on_failed
        self.poll_interval = poll_interval
        self.escalation_interval = escalation_interval
        self.clock = clock or system_clock

        self.snapshot: Optional[BroadcastSnapshot] = None
        self.view: Optional[ObserverView] = None
        self._handled = False
        self._resolved = asyncio.Event()
        self._tasks: list[asyncio.Task] = []

    @property
    def handled(self) -> bool:
        return self._handled

    async def reconcile(self, payload: SnapshotPayload) -> Optional[ObserverView]:
        """Fold the latest snapshot into observer state; stale and repeated snapshots are no-ops"""
        snapshot = (
            payload
            if isinstance(payload, BroadcastSnapshot)
            else BroadcastSnapshot.model_validate(payload)
        )
        if snapshot.id != self.broadcast_id:
            return self.view
        if self.snapshot is not None and snapshot.version < self.snapshot.version:
            return self.view

        self.snapshot = snapshot
        self.view = build_view(snapshot, self.clock.now())

        if snapshot.is_terminal and not self._handled:
            self._handled = True
            self._resolved.set()
            if snapshot.status == BroadcastStatus.ACCEPTED:
                logger.info(f"🎉 Broadcast {snapshot.id} accepted by {snapshot.accepted_by_id}")
                if self.on_accepted:
                    await _call(self.on_accepted, snapshot)
            else:
                logger.info(f"❌ Broadcast {snapshot.id} failed: {self.view.failure_reason}")
                if self.on_failed:
                    await _call(self.on_failed, snapshot)

        return self.view

    async def _push_loop(self) -> None:
        try:
            async for payload in self.subscribe(self.broadcast_id):
                await self.reconcile(payload)
                if self._handled:
                    return
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"⚠️ Change feed for broadcast {self.broadcast_id} lost, polling only: {e}")

    async def _poll_loop(self) -> None:
        while not self._handled:
            try:
                await self.reconcile(await self.fetch_snapshot(self.broadcast_id))
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Polling broadcast {self.broadcast_id} failed: {e}")
            if self._handled:
                return
            await asyncio.sleep(self.poll_interval)

    async def _escalation_loop(self) -> None:
        while not self._handled:
            await asyncio.sleep(self.escalation_interval)
            if self._handled:
                return
            try:
                await self.trigger_escalation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"⚠️ Escalation trigger failed: {e}")

    def start(self) -> "BroadcastObserver":
        if self._tasks:
            return self
        self._tasks.append(asyncio.create_task(self._poll_loop()))
        self._tasks.append(asyncio.create_task(self._escalation_loop()))
        if self.subscribe is not None:
            self._tasks.append(asyncio.create_task(self._push_loop()))
        return self

    async def wait(self, timeout: Optional[float] = None) -> Optional[BroadcastSnapshot]:
        """Wait until the broadcast is accepted or failed; returns the terminal snapshot"""
        try:
            await asyncio.wait_for(self._resolved.wait(), timeout)
        except asyncio.TimeoutError:
            return None
        return self.snapshot

    async def close(self) -> None:
        """Stop every producer. Safe to call more than once."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def __aenter__(self) -> "BroadcastObserver":
        return self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class HttpBroadcastSource:
    """Observer producers backed by the broadcast HTTP API"""

    def __init__(self, base_url: str, client: Optional[httpx.AsyncClient] = None):
        self.base_url = base_url.rstrip("/")
        self.client = client or httpx.AsyncClient(timeout=30.0)

    async def fetch_snapshot(self, broadcast_id: int) -> dict:
        response = await self.client.get(f"{self.base_url}/broadcasts/{broadcast_id}")
        response.raise_for_status()
        return response.json()["broadcast"]

    async def trigger_escalation(self) -> dict:
        response = await self.client.post(f"{self.base_url}/broadcasts/escalate")
        response.raise_for_status()
        return response.json()

    async def subscribe(self, broadcast_id: int) -> AsyncIterator[dict]:
        """Server-sent events from GET /broadcasts/{id}/events"""
        url = f"{self.base_url}/broadcasts/{broadcast_id}/events"
        async with self.client.stream("GET", url, timeout=None) as response:
            response.raise_for_status()
            async for line in response.aiter_lines():
                if line.startswith("data:"):
                    yield json.loads(line[len("data:") :].strip())

    def observer(self, broadcast_id: int, **kwargs) -> BroadcastObserver:
        return BroadcastObserver(
            broadcast_id,
            fetch_snapshot=self.fetch_snapshot,
            trigger_escalation=self.trigger_escalation,
            subscribe=self.subscribe,
            **kwargs,
        )

    async def aclose(self) -> None:
        await self.client.aclose()
