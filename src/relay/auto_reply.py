from __future__ import annotations

import logging
from typing import Iterable, Optional

from common.messages import DEFAULT_SUPPORT_URL, GREETING_KEYWORDS, format_welcome_reply, is_greeting
from common.transport import InboundMessage

from .dispatcher import EnqueueResult, NotificationDispatcher


logger = logging.getLogger(__name__)


class GreetingResponder:
    """
    Answers inbound greetings with a short welcome and the support link.

    Replies go through the dispatcher like any other notification, so they share the
    per-recipient rate limit and the ordered delivery queue. A sender who keeps
    greeting gets at most the limiter's quota of replies per window.
    """

    def __init__(
        self,
        dispatcher: NotificationDispatcher,
        *,
        support_url: str = DEFAULT_SUPPORT_URL,
        keywords: Iterable[str] = GREETING_KEYWORDS,
    ) -> None:
        self._dispatcher = dispatcher
        self._reply = format_welcome_reply(support_url)
        self._keywords = tuple(k.lower() for k in keywords)

    def handle(self, message: InboundMessage) -> Optional[EnqueueResult]:
        """Queue a welcome reply if `message` is a greeting; returns the admission result."""
        if not is_greeting(message.text, self._keywords):
            return None
        result = self._dispatcher.enqueue(message.sender, self._reply)
        if not result.accepted:
            logger.info("Greeting reply to %s not queued: %s", message.sender, result.reason)
        return result


__all__ = [
    "GreetingResponder",
]
