"""
Tutor Event Channel

In-process publish/subscribe channel between mode screens and the tutor
widget. Two signals:

- ASK_TUTOR: {"question": str, "context": str, "timestamp"?: int}
- WRONG_ANSWER: no payload

Each signal has at most one subscriber. Any screen may publish.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, Optional

from learning_session_orchestrator.errors import ChannelSubscriptionError

logger = logging.getLogger(__name__)

Handler = Callable[[Optional[Dict[str, Any]]], None]


class TutorSignal(str, Enum):
    ASK_TUTOR = "ask-tutor"
    WRONG_ANSWER = "wrong-answer"


class TutorChannel:
    """
    Explicit message channel for tutor triggers.

    Delivery is synchronous: publish() calls the subscriber before returning.
    """

    def __init__(self):
        self._subscribers: Dict[TutorSignal, Handler] = {}

    def subscribe(self, signal: TutorSignal, handler: Handler) -> Callable[[], None]:
        """
        Register the single consumer of a signal.

        Returns:
            Callable that removes the subscription

        Raises:
            ChannelSubscriptionError: If the signal already has a subscriber
        """
        if signal in self._subscribers:
            raise ChannelSubscriptionError(f"Signal {signal.value} already has a subscriber")
        self._subscribers[signal] = handler
        logger.debug(f"📡 [TutorChannel] Subscribed to {signal.value}")

        def unsubscribe():
            if self._subscribers.get(signal) is handler:
                del self._subscribers[signal]
                logger.debug(f"📡 [TutorChannel] Unsubscribed from {signal.value}")

        return unsubscribe

    def has_subscriber(self, signal: TutorSignal) -> bool:
        return signal in self._subscribers

    def publish(self, signal: TutorSignal, payload: Optional[Dict[str, Any]] = None) -> bool:
        """
        Deliver a signal to its subscriber.

        Returns:
            True if a subscriber received it, False if it was dropped
        """
        handler = self._subscribers.get(signal)
        if handler is None:
            logger.debug(f"📡 [TutorChannel] No subscriber for {signal.value}, dropping")
            return False
        handler(payload)
        return True

    def ask_tutor(self, question: str, context: str = "", timestamp: Optional[int] = None) -> bool:
        """Publish a question; a timestamp marks it as a one-shot text-selection trigger."""
        payload: Dict[str, Any] = {"question": question, "context": context}
        if timestamp is not None:
            payload["timestamp"] = timestamp
        return self.publish(TutorSignal.ASK_TUTOR, payload)

    def wrong_answer(self) -> bool:
        return self.publish(TutorSignal.WRONG_ANSWER)
