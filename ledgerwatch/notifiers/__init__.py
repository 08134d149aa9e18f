"""Outbound delivery of parsed mutations."""

from ledgerwatch.notifiers.webhook import DeliveryClient, delivery_backoff

__all__ = [
    "DeliveryClient",
    "delivery_backoff",
]
