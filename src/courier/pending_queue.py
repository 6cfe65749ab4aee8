"""
Courier - Pending message queue.

Created by orpheus497

Holds message envelopes that arrive before the secure session is
established. The queue lives in memory only, belongs to a single
handshake state machine, and is drained exactly once, in arrival order,
when the session becomes established.
"""

import logging
from collections import deque
from typing import Deque, List, Optional

from .errors import ErrorCode, SessionError
from .protocol import MessageEnvelope

logger = logging.getLogger(__name__)


class PendingMessageQueue:
    """
    FIFO buffer of early inbound messages.

    Args:
        max_size: Optional cap on queued envelopes. None keeps the queue
            unbounded; when a cap is set, envelopes arriving while the queue
            is full are dropped and the queued ones keep their order.
    """

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size
        self.dropped = 0
        self._items: Deque[MessageEnvelope] = deque()
        self._drained = False

    @property
    def drained(self) -> bool:
        """True once drain() has run."""
        return self._drained

    def enqueue(self, envelope: MessageEnvelope) -> bool:
        """
        Append an envelope.

        Returns:
            True if queued, False if dropped because the cap was reached

        Raises:
            SessionError: If the queue has already been drained
        """
        if self._drained:
            raise SessionError(
                ErrorCode.E402_QUEUE_ALREADY_DRAINED,
                "Pending queue already drained",
            )

        if self.max_size is not None and len(self._items) >= self.max_size:
            self.dropped += 1
            logger.warning(
                f"Pending queue full ({self.max_size}), dropping message "
                f"from {envelope.sender} (counter {envelope.counter})"
            )
            return False

        self._items.append(envelope)
        return True

    def drain(self) -> List[MessageEnvelope]:
        """
        Remove and return every queued envelope in arrival order.

        May only be called once.
        """
        if self._drained:
            raise SessionError(
                ErrorCode.E402_QUEUE_ALREADY_DRAINED,
                "Pending queue already drained",
            )
        self._drained = True
        items = list(self._items)
        self._items.clear()
        return items

    def __len__(self) -> int:
        return len(self._items)

    def __repr__(self) -> str:
        return f"PendingMessageQueue(size={len(self._items)}, drained={self._drained})"
