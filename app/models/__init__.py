from .payment_event import PaymentEvent, PaymentEventType

__all__ = [
    "PaymentEvent",
    "PaymentEventType",
]
