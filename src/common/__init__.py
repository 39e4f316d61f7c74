"""
Common building blocks for notify-relay.

Modules:
- transport: transport capability protocol and lifecycle events
- gateway: HTTP messaging-gateway client and transport adapter
- rate_limiter: per-recipient fixed-window limiter
- messages: notification message templates
"""

__all__ = [
    "gateway",
    "messages",
    "rate_limiter",
    "transport",
]
