"""
Consent Propagation
===================
Event bus, feature gate and webhook delivery of consent changes.
"""

from .event_bus import CallbackSubscriber, ConsentSubscriber, EventBus, FeatureGate
from .webhooks import (
    Delivery,
    RequestsWebhookTransport,
    WebhookDispatcher,
    WebhookTransport,
    sign_payload,
    verify_signature,
)

__all__ = [
    "CallbackSubscriber",
    "ConsentSubscriber",
    "Delivery",
    "EventBus",
    "FeatureGate",
    "RequestsWebhookTransport",
    "WebhookDispatcher",
    "WebhookTransport",
    "sign_payload",
    "verify_signature",
]
