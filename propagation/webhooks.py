"""
Webhook Dispatcher
==================
At-least-once delivery of consent changes to external services.

Each subscriber has its own FIFO queue. The head of a queue blocks the
events behind it until it is delivered or dead-lettered, so a service
never sees consent states out of order; different subscribers are
drained in parallel on a thread pool.

A newer event for the same subject and category replaces any queued,
not yet in-flight delivery of an older one to the same subscriber.
A delivery whose version the subscriber has already received, such as a
re-queued dead letter, is dropped when it reaches the head of the queue.

With a database, queued deliveries and delivery cursors survive a
restart and are restored when the subscription is registered again.

Payloads carry a salted subject hash, never the raw identifier, and are
signed with HMAC-SHA256 in the ``X-Consent-Signature`` header.
"""

import asyncio
import hashlib
import hmac
import json
import threading
from abc import ABC, abstractmethod
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Deque, Dict, List, Optional, Set

import requests
import structlog

from core.exceptions import WebhookDeliveryFailure
from core.models import ChangeEvent, DeadLetter, WebhookSubscription
from core.utils import generate_id, hash_identifier, isoformat, redact, utcnow

logger = structlog.get_logger(__name__)


SIGNATURE_HEADER = "X-Consent-Signature"


# =============================================================================
# Transport
# =============================================================================


class WebhookTransport(ABC):
    """Sends one signed payload; returns the HTTP status code."""

    @abstractmethod
    def post(self, url: str, body: bytes, headers: Dict[str, str], timeout: float) -> int:
        """Raise on network errors and timeouts; return the status otherwise."""
        pass

    def close(self) -> None:
        pass


class RequestsWebhookTransport(WebhookTransport):
    """Transport backed by a shared ``requests.Session``."""

    def __init__(self, session: Optional[requests.Session] = None, user_agent: str = "consent-engine"):
        self.session = session or requests.Session()
        self.session.headers["User-Agent"] = user_agent

    def post(self, url: str, body: bytes, headers: Dict[str, str], timeout: float) -> int:
        response = self.session.post(url, data=body, headers=headers, timeout=timeout)
        return response.status_code

    def close(self) -> None:
        self.session.close()


def pair_key(event: ChangeEvent) -> str:
    """Cursor key of an event's subject and category."""
    return f"{event.subject}:{event.category}"


def sign_payload(body: bytes, secret: str) -> str:
    """``sha256=<hex hmac>`` signature of a payload."""
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return f"sha256={digest}"


def verify_signature(body: bytes, secret: str, signature: str) -> bool:
    """Receiver-side check of a payload signature."""
    return hmac.compare_digest(sign_payload(body, secret), signature)


# =============================================================================
# Deliveries
# =============================================================================


@dataclass
class Delivery:
    """One event queued for one subscriber."""

    event: ChangeEvent
    service_id: str
    delivery_id: str = field(default_factory=lambda: generate_id("dlv"))
    attempt_count: int = 0
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None
    enqueued_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        return self.next_attempt_at is None or now >= self.next_attempt_at


@dataclass
class DispatchStats:
    """Counters for the dispatcher."""

    enqueued: int = 0
    delivered: int = 0
    failed_attempts: int = 0
    dead_lettered: int = 0
    superseded: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "enqueued": self.enqueued,
            "delivered": self.delivered,
            "failed_attempts": self.failed_attempts,
            "dead_lettered": self.dead_lettered,
            "superseded": self.superseded,
        }


class WebhookDispatcher:
    """
    Background delivery of ChangeEvents to webhook subscriptions.

    Example:
        >>> dispatcher = WebhookDispatcher(db, hash_salt="salt")
        >>> dispatcher.subscribe(WebhookSubscription(...))
        >>> dispatcher.enqueue(event)
        >>> dispatcher.process_pending()
    """

    def __init__(
        self,
        db=None,
        transport: Optional[WebhookTransport] = None,
        hash_salt: str = "",
        max_workers: int = 8,
        poll_interval: float = 1.0,
        clock: Callable[[], datetime] = utcnow,
    ):
        """
        Initialize the dispatcher.

        Args:
            db: ConsentDB for durable queues, cursors and dead letters;
                kept in memory when None.
            transport: HTTP transport (requests-based by default).
            hash_salt: Salt for the subject hash sent to subscribers.
            max_workers: Subscribers drained in parallel.
            poll_interval: Seconds between background passes.
            clock: Source of the current time.
        """
        self.db = db
        self.transport = transport or RequestsWebhookTransport()
        self.hash_salt = hash_salt
        self.max_workers = max_workers
        self.poll_interval = poll_interval
        self.clock = clock

        self._subscriptions: Dict[str, WebhookSubscription] = {}
        self._queues: Dict[str, Deque[Delivery]] = {}
        self._in_flight: Dict[str, str] = {}
        self._draining: Set[str] = set()
        self._dead_letters: List[DeadLetter] = []
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="webhook"
        )
        self._task: Optional[asyncio.Task] = None
        self.stats = DispatchStats()

    # -------------------------------------------------------------------------
    # Subscriptions
    # -------------------------------------------------------------------------

    def subscribe(self, subscription: WebhookSubscription) -> None:
        """
        Register a subscription.

        With a database, deliveries still queued from an earlier run are
        put back at the head of the queue in their original order, and the
        delivery cursor is restored.
        """
        restored: List[Delivery] = []
        if self.db is not None:
            cursor = subscription.delivery_cursor
            for key, version in self.db.load_cursors(subscription.service_id).items():
                cursor[key] = max(cursor.get(key, 0), version)
            restored = [Delivery(**row) for row in self.db.list_deliveries(subscription.service_id)]
        with self._lock:
            self._subscriptions[subscription.service_id] = subscription
            queue = self._queues.setdefault(subscription.service_id, deque())
            known = {d.delivery_id for d in queue}
            fresh = [d for d in restored if d.delivery_id not in known]
            queue.extendleft(reversed(fresh))
        logger.info(
            "Webhook subscription registered",
            service_id=subscription.service_id,
            endpoint=subscription.endpoint,
            categories=sorted(subscription.categories),
            restored=len(fresh),
        )

    def unsubscribe(self, service_id: str) -> bool:
        """Remove a subscription and drop its queued deliveries."""
        with self._lock:
            removed = self._subscriptions.pop(service_id, None)
            self._queues.pop(service_id, None)
        if self.db is not None:
            self.db.delete_deliveries(service_id)
        return removed is not None

    def get_subscription(self, service_id: str) -> Optional[WebhookSubscription]:
        return self._subscriptions.get(service_id)

    def subscriptions(self) -> List[WebhookSubscription]:
        with self._lock:
            return list(self._subscriptions.values())

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------

    def enqueue(self, event: ChangeEvent) -> int:
        """
        Queue an event for every interested subscriber.

        Returns:
            Number of deliveries queued.
        """
        queued = 0
        key = pair_key(event)
        with self._lock:
            for service_id, subscription in self._subscriptions.items():
                if not subscription.wants(event.category):
                    continue
                if subscription.delivery_cursor.get(key, 0) >= event.version:
                    continue
                queue = self._queues.setdefault(service_id, deque())
                self._cancel_stale(service_id, queue, event)
                delivery = Delivery(event=event, service_id=service_id, enqueued_at=self.clock())
                queue.append(delivery)
                self._persist(delivery)
                queued += 1
            self.stats.enqueued += queued
        if queued:
            logger.debug(
                "Webhook deliveries queued",
                subject=redact(event.subject),
                category=event.category,
                version=event.version,
                subscribers=queued,
            )
        return queued

    def _cancel_stale(self, service_id: str, queue: Deque[Delivery], event: ChangeEvent) -> None:
        in_flight = self._in_flight.get(service_id)
        stale = [
            d for d in queue
            if d.event.key == event.key
            and d.event.version < event.version
            and d.delivery_id != in_flight
        ]
        for delivery in stale:
            queue.remove(delivery)
            self._forget(delivery)
            self.stats.superseded += 1
            logger.debug(
                "Stale webhook delivery cancelled",
                service_id=service_id,
                delivery_id=delivery.delivery_id,
                superseded_by=event.version,
            )

    def pending_count(self, service_id: Optional[str] = None) -> int:
        with self._lock:
            if service_id is not None:
                return len(self._queues.get(service_id, ()))
            return sum(len(q) for q in self._queues.values())

    def pending(self, service_id: str) -> List[Delivery]:
        with self._lock:
            return list(self._queues.get(service_id, ()))

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    def process_pending(self) -> Dict[str, int]:
        """
        Run one delivery pass over every subscriber with due work.

        Subscribers are drained in parallel; each queue is drained in order
        and stops at the first delivery that has to wait for a retry.

        Returns:
            Deliveries completed per subscriber in this pass.
        """
        now = self.clock()
        with self._lock:
            ready = [
                service_id for service_id, queue in self._queues.items()
                if queue and queue[0].is_due(now) and service_id not in self._draining
            ]
            self._draining.update(ready)

        futures = {sid: self._executor.submit(self._drain, sid) for sid in ready}
        results = {}
        for service_id, future in futures.items():
            try:
                results[service_id] = future.result()
            finally:
                with self._lock:
                    self._draining.discard(service_id)
        return results

    def _drain(self, service_id: str) -> int:
        delivered = 0
        while True:
            with self._lock:
                queue = self._queues.get(service_id)
                subscription = self._subscriptions.get(service_id)
                if not queue or subscription is None:
                    return delivered
                delivery = queue[0]
                key = pair_key(delivery.event)
                if subscription.delivery_cursor.get(key, 0) >= delivery.event.version:
                    self._pop(service_id, delivery)
                    self._forget(delivery)
                    self.stats.superseded += 1
                    logger.info(
                        "Superseded webhook delivery dropped",
                        service_id=service_id,
                        delivery_id=delivery.delivery_id,
                        version=delivery.event.version,
                        delivered_version=subscription.delivery_cursor[key],
                    )
                    continue
                if not delivery.is_due(self.clock()):
                    return delivered
                self._in_flight[service_id] = delivery.delivery_id

            try:
                ok = self._attempt(subscription, delivery)
            finally:
                with self._lock:
                    self._in_flight.pop(service_id, None)

            with self._lock:
                if ok:
                    self._pop(service_id, delivery)
                    self._forget(delivery)
                    cursor = subscription.delivery_cursor
                    cursor[key] = max(cursor.get(key, 0), delivery.event.version)
                    if self.db is not None:
                        self.db.save_cursor(service_id, key, cursor[key])
                    self.stats.delivered += 1
                    delivered += 1
                    continue

                self.stats.failed_attempts += 1
                if delivery.attempt_count >= subscription.retry_policy.max_attempts:
                    self._pop(service_id, delivery)
                    dead = True
                else:
                    delivery.next_attempt_at = self.clock() + subscription.retry_policy.get_delay(
                        delivery.attempt_count
                    )
                    self._persist(delivery)
                    dead = False

            if dead:
                self._dead_letter(subscription, delivery)
                self._forget(delivery)
                continue
            logger.info(
                "Webhook delivery will be retried",
                service_id=service_id,
                delivery_id=delivery.delivery_id,
                attempt=delivery.attempt_count,
                next_attempt_at=isoformat(delivery.next_attempt_at),
                error=delivery.last_error,
            )
            return delivered

    def _persist(self, delivery: Delivery) -> None:
        if self.db is not None:
            self.db.save_delivery(
                delivery.delivery_id,
                delivery.service_id,
                delivery.event,
                attempt_count=delivery.attempt_count,
                next_attempt_at=delivery.next_attempt_at,
                last_error=delivery.last_error,
                enqueued_at=delivery.enqueued_at,
            )

    def _forget(self, delivery: Delivery) -> None:
        if self.db is not None:
            self.db.delete_delivery(delivery.delivery_id)

    def _pop(self, service_id: str, delivery: Delivery) -> None:
        queue = self._queues.get(service_id)
        if queue and queue[0] is delivery:
            queue.popleft()
        elif queue and delivery in queue:
            queue.remove(delivery)

    def _attempt(self, subscription: WebhookSubscription, delivery: Delivery) -> bool:
        body = self.build_payload(delivery.event)
        headers = {
            "Content-Type": "application/json",
            SIGNATURE_HEADER: sign_payload(body, subscription.secret),
            "X-Consent-Delivery": delivery.delivery_id,
            "X-Consent-Event": delivery.event.event_id,
        }
        delivery.attempt_count += 1
        try:
            status = self.transport.post(
                subscription.endpoint, body, headers, subscription.timeout_seconds
            )
        except (requests.RequestException, OSError) as e:
            delivery.last_error = f"{type(e).__name__}: {e}"
            return False
        if 200 <= status < 300:
            return True
        delivery.last_error = f"HTTP {status}"
        return False

    def build_payload(self, event: ChangeEvent) -> bytes:
        payload = {
            "subject_hash": hash_identifier(event.subject, self.hash_salt),
            "category": event.category,
            "state": event.new_state.value,
            "version": event.version,
            "timestamp": isoformat(event.timestamp),
        }
        return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")

    def _dead_letter(self, subscription: WebhookSubscription, delivery: Delivery) -> None:
        failure = WebhookDeliveryFailure(
            subscription.service_id,
            subscription.endpoint,
            delivery.attempt_count,
            delivery.last_error,
        )
        letter = DeadLetter(
            delivery_id=delivery.delivery_id,
            service_id=subscription.service_id,
            endpoint=subscription.endpoint,
            event=delivery.event,
            attempt_count=delivery.attempt_count,
            last_error=delivery.last_error,
            dead_lettered_at=self.clock(),
        )
        with self._lock:
            self.stats.dead_lettered += 1
            if self.db is None:
                self._dead_letters.append(letter)
        if self.db is not None:
            self.db.save_dead_letter(letter)
        logger.error("Webhook delivery exhausted retries", **failure.to_dict())

    def dead_letters(self, service_id: Optional[str] = None) -> List[DeadLetter]:
        if self.db is not None:
            return self.db.list_dead_letters(service_id)
        with self._lock:
            return [
                d for d in self._dead_letters
                if service_id is None or d.service_id == service_id
            ]

    def redeliver(self, delivery_id: str) -> bool:
        """Re-queue a dead-lettered delivery after operator action."""
        letter = next((d for d in self.dead_letters() if d.delivery_id == delivery_id), None)
        if letter is None:
            return False
        with self._lock:
            queue = self._queues.get(letter.service_id)
            if queue is None:
                return False
            delivery = Delivery(
                event=letter.event, service_id=letter.service_id, enqueued_at=self.clock()
            )
            queue.append(delivery)
            self._persist(delivery)
            if self.db is None:
                self._dead_letters = [d for d in self._dead_letters if d.delivery_id != delivery_id]
        if self.db is not None:
            self.db.resolve_dead_letter(delivery_id)
        logger.info("Dead letter re-queued", delivery_id=delivery_id, service_id=letter.service_id)
        return True

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self) -> None:
        """Start the background delivery loop."""
        if self._task is None:
            self._task = asyncio.create_task(self._delivery_loop())
            logger.info("Webhook dispatcher started", interval=self.poll_interval)

    async def stop(self) -> None:
        """Stop the background loop; queued deliveries stay queued."""
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
            logger.info("Webhook dispatcher stopped", pending=self.pending_count())

    async def _delivery_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            try:
                await loop.run_in_executor(None, self.process_pending)
                await asyncio.sleep(self.poll_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Webhook delivery pass failed", error=str(e))
                await asyncio.sleep(self.poll_interval)

    def shutdown(self) -> None:
        """Release the worker pool and transport."""
        self._executor.shutdown(wait=True)
        self.transport.close()

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "subscriptions": len(self._subscriptions),
                "pending": {sid: len(q) for sid, q in self._queues.items()},
                "stats": self.stats.to_dict(),
            }
