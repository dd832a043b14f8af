"""
Event routing.

Maps a verified envelope's event kind to its handler. Kinds nobody registered
for are acknowledged and dropped so new Stripe event types never fail
delivery.
"""

import logging
from typing import Callable, Optional

from billing.models import Outcome, WebhookEnvelope

logger = logging.getLogger(__name__)

Handler = Callable[[WebhookEnvelope], Optional[Outcome]]


class EventDispatcher:
    """Registry of event kind -> handler."""

    def __init__(self):
        self._handlers: dict[str, Handler] = {}

    def register(self, kind: str, handler: Handler) -> None:
        if kind in self._handlers:
            raise ValueError(f"Handler already registered for {kind}")
        self._handlers[kind] = handler

    def handles(self, kind: str) -> bool:
        return kind in self._handlers

    @property
    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def dispatch(self, envelope: WebhookEnvelope) -> Outcome:
        handler = self._handlers.get(envelope.kind)
        if handler is None:
            logger.info(f"Unhandled event type: {envelope.kind}")
            return Outcome.IGNORED

        logger.info(f"Processing Stripe event: {envelope.kind} (id={envelope.event_id})")
        # Handlers that return nothing processed the event
        return handler(envelope) or Outcome.PROCESSED
