"""
Notification relay: delivery and session continuity over a stateful transport.

Modules:
- readiness: connection state machine, credential restore/save triggers
- delivery_queue: ordered single-consumer send queue with retry
- dispatcher: admission (readiness + rate limit) and notification flows
- auto_reply: welcome replies to inbound greetings
- service: the relay context object and process lifecycle
"""

__all__ = [
    "auto_reply",
    "config",
    "delivery_queue",
    "dispatcher",
    "errors",
    "readiness",
    "service",
]
