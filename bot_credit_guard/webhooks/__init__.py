"""
Webhook subsystem.

Subscription registry, envelope signing, and queued delivery.
"""

from .dispatcher import DeliveryResult, WebhookDispatcher, WebhookEvent
from .registry import WebhookRegistry

__all__ = ["DeliveryResult", "WebhookDispatcher", "WebhookEvent", "WebhookRegistry"]
