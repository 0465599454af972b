"""
Clients package

External collaborators: the card-data aggregator and push/SMS transports.
"""

from .aggregator import Aggregator, PlaidAggregator
from .transports import (
    ApnsPushTransport,
    PushTransport,
    SmsTransport,
    TwilioSmsTransport,
    push_to_parents,
    push_to_person,
    send_many,
)

__all__ = [
    "Aggregator",
    "PlaidAggregator",
    "ApnsPushTransport",
    "PushTransport",
    "SmsTransport",
    "TwilioSmsTransport",
    "push_to_parents",
    "push_to_person",
    "send_many",
]
