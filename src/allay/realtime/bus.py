"""Per-tenant in-process event bus for live dashboard updates.

Architecture:
    Aggregator.broadcast(tenant, payload)
        → TenantEventBus snapshots the tenant's subscriber set
        → each Subscription's bounded queue receives the framed event
        → the SSE response drains the queue to the browser

Delivery model:
    - At-most-once, no replay. Events emitted while nobody is subscribed
      are dropped.
    - Frames for one subscriber arrive in emission order (single queue,
      single reader).
    - A subscriber whose queue is closed or full is dead. Broadcast and
      heartbeat both prune dead subscribers instead of raising.

Concurrency:
    - The registry (tenant_id → set of subscriptions) is guarded by one
      process-wide threading.Lock. Critical sections never await.
    - Broadcast iterates a snapshot taken under the lock, so subscribe /
      unsubscribe during a broadcast is safe.
    - Unsubscribe is idempotent; heartbeat, broadcast and transport abort
      may all race to remove the same subscription.
"""

from __future__ import annotations

import asyncio
import threading
import uuid
from typing import Any, AsyncIterator

import structlog

from allay.config import settings
from allay.realtime.events import (
    Connected,
    ConversationUpdate,
    Heartbeat,
    UpdatePayload,
    encode_frame,
)

logger = structlog.get_logger()


class SubscriberGone(Exception):
    """Raised by Subscription.offer when the subscriber can no longer receive."""


# ═══════════════════════════════════════════════════════════════════════════════
# SUBSCRIPTION HANDLE
# ═══════════════════════════════════════════════════════════════════════════════

class Subscription:
    """One live dashboard connection.

    Owns its output queue, its cancellation signal and its heartbeat task.
    Lifetime ends on ``close()``, never on garbage collection.
    """

    def __init__(self, tenant_id: str, queue_max: int) -> None:
        self.id = uuid.uuid4().hex
        self.tenant_id = tenant_id
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=queue_max)
        self._cancelled = asyncio.Event()
        self._heartbeat: asyncio.Task[None] | None = None

    def __repr__(self) -> str:
        return f"Subscription(tenant_id={self.tenant_id!r}, id={self.id!r})"

    @property
    def closed(self) -> bool:
        return self._cancelled.is_set()

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def offer(self, frame: str) -> None:
        """Enqueue a frame without waiting. Raises SubscriberGone if dead."""
        if self.closed:
            raise SubscriberGone(self.id)
        try:
            self._queue.put_nowait(frame)
        except asyncio.QueueFull:
            raise SubscriberGone(self.id) from None

    def close(self) -> None:
        """Cancel the heartbeat and wake the reader. Safe to call repeatedly."""
        if self.closed:
            return
        self._cancelled.set()
        task = self._heartbeat
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            # Reader re-checks `closed` after every frame, so it still stops.
            pass

    async def frames(self) -> AsyncIterator[str]:
        """Yield queued frames until the subscription is closed."""
        while not self.closed:
            frame = await self._queue.get()
            if frame is None or self.closed:
                return
            yield frame


# ═══════════════════════════════════════════════════════════════════════════════
# EVENT BUS
# ═══════════════════════════════════════════════════════════════════════════════

class TenantEventBus:
    """Registry of live subscriptions keyed by tenant, plus fan-out."""

    def __init__(
        self,
        heartbeat_interval: float | None = None,
        queue_max: int | None = None,
    ) -> None:
        self._heartbeat_interval = (
            heartbeat_interval
            if heartbeat_interval is not None
            else settings.sse_heartbeat_interval_s
        )
        self._queue_max = queue_max if queue_max is not None else settings.sse_queue_max
        self._subscribers: dict[str, set[Subscription]] = {}
        self._lock = threading.Lock()

        # Metrics
        self._broadcasts = 0
        self._frames_delivered = 0
        self._pruned = 0

    # ── Registry ──────────────────────────────────────────────────────────

    def subscribe(self, tenant_id: str) -> Subscription:
        """Register a new subscriber for a tenant.

        Must be called from a running event loop: the heartbeat task is
        scheduled on it. The subscriber's first frame is ``connected``.
        """
        sub = Subscription(tenant_id, self._queue_max)
        sub.offer(encode_frame(Connected(tenant_id=tenant_id)))

        with self._lock:
            self._subscribers.setdefault(tenant_id, set()).add(sub)
            count = len(self._subscribers[tenant_id])

        sub._heartbeat = asyncio.get_running_loop().create_task(
            self._heartbeat_loop(sub),
            name=f"sse-heartbeat-{sub.id}",
        )
        logger.info(
            "sse_subscribed",
            tenant_id=tenant_id,
            subscription_id=sub.id,
            tenant_subscribers=count,
        )
        return sub

    def unsubscribe(self, tenant_id: str, sub: Subscription) -> bool:
        """Remove a subscriber. Returns False if it was already gone."""
        sub.close()
        with self._lock:
            subs = self._subscribers.get(tenant_id)
            if not subs or sub not in subs:
                return False
            subs.discard(sub)
            if not subs:
                del self._subscribers[tenant_id]
        logger.info("sse_unsubscribed", tenant_id=tenant_id, subscription_id=sub.id)
        return True

    def _prune(self, sub: Subscription, reason: str) -> None:
        if self.unsubscribe(sub.tenant_id, sub):
            self._pruned += 1
            logger.warning(
                "sse_subscriber_pruned",
                tenant_id=sub.tenant_id,
                subscription_id=sub.id,
                reason=reason,
            )

    # ── Fan-out ───────────────────────────────────────────────────────────

    def broadcast(self, tenant_id: str, payload: UpdatePayload) -> int:
        """Deliver a conversation update to every live subscriber of a tenant.

        Never raises for delivery problems: dead subscribers are pruned.

        Returns:
            Number of subscribers the frame was enqueued for.
        """
        frame = encode_frame(ConversationUpdate(data=payload))
        with self._lock:
            targets = list(self._subscribers.get(tenant_id, ()))

        delivered = 0
        dead: list[Subscription] = []
        for sub in targets:
            try:
                sub.offer(frame)
                delivered += 1
            except SubscriberGone:
                dead.append(sub)

        for sub in dead:
            self._prune(sub, reason="broadcast_failed")

        self._broadcasts += 1
        self._frames_delivered += delivered
        logger.debug(
            "sse_broadcast",
            tenant_id=tenant_id,
            update_type=payload.type.value,
            delivered=delivered,
            pruned=len(dead),
        )
        return delivered

    async def _heartbeat_loop(self, sub: Subscription) -> None:
        while not sub.closed:
            await asyncio.sleep(self._heartbeat_interval)
            if sub.closed:
                return
            try:
                sub.offer(encode_frame(Heartbeat()))
            except SubscriberGone:
                self._prune(sub, reason="heartbeat_failed")
                return

    async def stream(self, tenant_id: str) -> AsyncIterator[str]:
        """Subscribe and drain frames for an SSE response.

        Registration happens on the first iteration, inside the cleanup
        scope. A response cancelled before it starts streaming never
        registers; one that stops iterating for any reason, cancellation
        included, is unregistered.
        """
        sub = self.subscribe(tenant_id)
        try:
            async for frame in sub.frames():
                yield frame
        finally:
            self.unsubscribe(tenant_id, sub)

    # ── Introspection / lifecycle ─────────────────────────────────────────

    def subscriber_count(self, tenant_id: str | None = None) -> int:
        with self._lock:
            if tenant_id is not None:
                return len(self._subscribers.get(tenant_id, ()))
            return sum(len(s) for s in self._subscribers.values())

    def has_tenant(self, tenant_id: str) -> bool:
        with self._lock:
            return tenant_id in self._subscribers

    def snapshot(self) -> dict[str, Any]:
        with self._lock:
            per_tenant = {t: len(s) for t, s in self._subscribers.items()}
        return {
            "tenants": len(per_tenant),
            "subscribers": sum(per_tenant.values()),
            "broadcasts_total": self._broadcasts,
            "frames_delivered_total": self._frames_delivered,
            "subscribers_pruned_total": self._pruned,
        }

    async def shutdown(self) -> None:
        """Close every subscription and wait for heartbeat tasks to finish."""
        with self._lock:
            subs = [s for group in self._subscribers.values() for s in group]
            self._subscribers.clear()
        tasks = [s._heartbeat for s in subs if s._heartbeat is not None]
        for sub in subs:
            sub.close()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("sse_bus_shutdown", closed=len(subs))


# ═══════════════════════════════════════════════════════════════════════════════
# SINGLETON
# ═══════════════════════════════════════════════════════════════════════════════

_bus: TenantEventBus | None = None


def get_event_bus() -> TenantEventBus:
    """Get or create the process-wide TenantEventBus singleton."""
    global _bus
    if _bus is None:
        _bus = TenantEventBus()
    return _bus
