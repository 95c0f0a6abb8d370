from .notifier import (
    Delivered,
    DeliveryFailed,
    NoCodeAvailable,
    NotConfigured,
    NotificationRelay,
    RelayError,
)

__all__ = [
    "Delivered",
    "DeliveryFailed",
    "NoCodeAvailable",
    "NotConfigured",
    "NotificationRelay",
    "RelayError",
]
