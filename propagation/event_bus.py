"""
Consent Event Bus
=================
Typed publish/subscribe for committed consent changes.

In-process subscribers run synchronously and best-effort: a failing
subscriber is logged and never stops the others or the mutation that
published the event. Webhook subscriptions are handed to the
WebhookDispatcher, which delivers them on a background queue.
"""

import threading
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Set

import structlog

from core.models import NECESSARY_CATEGORY, ChangeEvent
from core.utils import redact

logger = structlog.get_logger(__name__)


class ConsentSubscriber(ABC):
    """Anything that reacts to committed consent changes."""

    @abstractmethod
    def handle(self, event: ChangeEvent) -> None:
        pass


class CallbackSubscriber(ConsentSubscriber):
    """Adapts a plain ``callback(event)`` function."""

    def __init__(self, callback: Callable[[ChangeEvent], None], name: Optional[str] = None):
        self.callback = callback
        self.name = name or getattr(callback, "__name__", "callback")

    def handle(self, event: ChangeEvent) -> None:
        self.callback(event)


class EventBus:
    """
    Fans committed ChangeEvents out to subscribers and webhooks.

    Example:
        >>> bus = EventBus(dispatcher)
        >>> bus.subscribe(lifecycle)
        >>> bus.publish(event)
    """

    def __init__(self, dispatcher=None):
        """
        Args:
            dispatcher: Optional WebhookDispatcher receiving every event.
        """
        self.dispatcher = dispatcher
        self._subscribers: List[ConsentSubscriber] = []
        self._lock = threading.Lock()
        self.failures = 0

    def subscribe(self, subscriber: ConsentSubscriber) -> None:
        with self._lock:
            if subscriber not in self._subscribers:
                self._subscribers.append(subscriber)
        logger.debug("Subscriber registered", subscriber=type(subscriber).__name__)

    def unsubscribe(self, subscriber: ConsentSubscriber) -> bool:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)
                return True
        return False

    @property
    def subscribers(self) -> List[ConsentSubscriber]:
        with self._lock:
            return list(self._subscribers)

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every subscriber, then queue its webhooks.

        Returns:
            Number of in-process subscribers that handled the event.
        """
        handled = 0
        for subscriber in self.subscribers:
            try:
                subscriber.handle(event)
                handled += 1
            except Exception as e:
                self.failures += 1
                logger.error(
                    "Subscriber failed",
                    subscriber=type(subscriber).__name__,
                    event_id=event.event_id,
                    category=event.category,
                    error=str(e),
                    exc_info=True,
                )

        if self.dispatcher is not None:
            try:
                self.dispatcher.enqueue(event)
            except Exception as e:
                self.failures += 1
                logger.error(
                    "Webhook enqueue failed",
                    event_id=event.event_id,
                    error=str(e),
                    exc_info=True,
                )
        return handled


# =============================================================================
# Feature Gate
# =============================================================================


class FeatureGate(ConsentSubscriber):
    """
    Answers whether a gated service may run for a subject.

    A service is enabled only while every category gating it is granted;
    unreadable consent state disables it. Services no category gates are
    always enabled.
    """

    def __init__(self, registry, cache):
        """
        Args:
            registry: CategoryRegistry declaring which categories gate which services.
            cache: CacheLayer used for fail-closed reads.
        """
        self.registry = registry
        self.cache = cache
        self._listeners: List[Callable[[str, str, bool], None]] = []

    def is_enabled(self, subject: str, service_id: str) -> bool:
        categories = self.registry.categories_gating(service_id)
        return all(self.cache.is_granted(subject, c) for c in sorted(categories))

    def enabled_services(self, subject: str) -> Set[str]:
        services = set()
        for category in self.registry:
            services.update(category.gated_services)
        return {s for s in services if self.is_enabled(subject, s)}

    def on_toggle(self, listener: Callable[[str, str, bool], None]) -> None:
        """Register ``listener(subject, service_id, enabled)`` for gate changes."""
        self._listeners.append(listener)

    def handle(self, event: ChangeEvent) -> None:
        if event.category == NECESSARY_CATEGORY:
            return
        for service_id in self.registry.services_for(event.category):
            enabled = self.is_enabled(event.subject, service_id)
            logger.info(
                "Service gate updated",
                subject=redact(event.subject),
                service=service_id,
                enabled=enabled,
            )
            for listener in list(self._listeners):
                listener(event.subject, service_id, enabled)
