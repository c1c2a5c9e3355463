"""
Event catalog: inbound/outbound names, payload models and frame helpers.
"""

from blogcast.components.events.types import (
    InboundEvent,
    OutboundEvent,
    VALID_INBOUND_EVENTS,
    INBOUND_PAYLOADS,
    WireModel,
    parse_frame,
    envelope,
    iso_timestamp,
)

__all__ = [
    "InboundEvent",
    "OutboundEvent",
    "VALID_INBOUND_EVENTS",
    "INBOUND_PAYLOADS",
    "WireModel",
    "parse_frame",
    "envelope",
    "iso_timestamp",
]
