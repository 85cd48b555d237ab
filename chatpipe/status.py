"""
Delivery status state machine.

    sending -> sent | failed
    sent -> delivered -> read
    any non-failed state -> read   (batch mark-as-read short-circuit)

failed is terminal for a row; a resend always creates new rows. Re-applying
the current status is a no-op success. Guards are applied here, at the
application layer; the store itself is last-writer-wins.

Operations on the id of a reassembled message apply to every fragment row
of its chunk group.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable, List, Optional

from chatpipe.errors import InvalidStatusTransition, NotFound
from chatpipe.storage import MessageStore
from chatpipe.utils import format_ts, utc_now

logger = logging.getLogger(__name__)


class MessageStatus(str, Enum):
    SENDING = "sending"
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"
    FAILED = "failed"


_NEXT = {
    MessageStatus.SENDING: {MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.SENT: {MessageStatus.DELIVERED},
    MessageStatus.DELIVERED: set(),
    MessageStatus.READ: set(),
    MessageStatus.FAILED: set(),
}


def can_transition(current: MessageStatus, target: MessageStatus) -> bool:
    current, target = MessageStatus(current), MessageStatus(target)
    if current == target:
        return True
    if current == MessageStatus.FAILED:
        return False
    if target == MessageStatus.READ:
        return True
    return target in _NEXT[current]


class DeliveryStatusTracker:
    def __init__(self, store: MessageStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self._clock = clock

    def _now(self) -> str:
        return format_ts(self._clock())

    def _resolve(self, message_id: str):
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"message {message_id} not found")
        return message

    def _row_ids(self, messages: Iterable) -> List[str]:
        """Expand fragment rows to their whole chunk group."""
        ids, groups = [], []
        for message in messages:
            if message.chunk_group_id:
                groups.append(message.chunk_group_id)
            else:
                ids.append(message.id)
        return ids + self.store.get_group_member_ids(groups)

    def mark_status(self, message_id: str, status) -> MessageStatus:
        """
        Move one message to `status`.

        Returns:
            The resulting status

        Raises:
            NotFound: unknown message id
            InvalidStatusTransition: the move would regress or skip a step
        """
        target = MessageStatus(status)
        message = self._resolve(message_id)
        current = MessageStatus(message.status)

        if current == target:
            logger.debug(f"Message {message_id} already {target.value}")
            return current
        if not can_transition(current, target):
            raise InvalidStatusTransition(
                f"cannot move message {message_id} from {current.value} to {target.value}"
            )

        self.store.update_status(self._row_ids([message]), target.value, self._now())
        logger.info(f"Message {message_id}: {current.value} -> {target.value}")
        return target

    def batch_mark_delivered(self, message_ids: List[str]) -> List[str]:
        """
        Advance every listed message that is currently `sent` to `delivered`.

        Messages already delivered or read, and unknown ids, are left alone.

        Returns:
            Ids of the rows that were advanced
        """
        if not message_ids:
            return []
        messages = [m for m in (self.store.get_message(i) for i in message_ids) if m is not None]
        advanced = self.store.update_status(
            self._row_ids(messages),
            MessageStatus.DELIVERED.value,
            self._now(),
            only_from=[MessageStatus.SENT.value],
        )
        logger.info(f"Batch delivered: {len(advanced)} of {len(message_ids)} requested")
        return advanced

    def mark_read(self, message_id: str, reader_id: str) -> bool:
        """
        Record that reader_id has read the message.

        A receipt is unique per (message, reader); repeating it is a no-op.
        When the reader is the recipient the message status becomes read.

        Returns:
            True if a new receipt was recorded
        """
        message = self._resolve(message_id)
        recorded = self.store.insert_read_receipt(message.id, reader_id, self._now())

        if reader_id == message.receiver_id and message.status != MessageStatus.READ.value:
            self.store.update_status(
                self._row_ids([message]),
                MessageStatus.READ.value,
                self._now(),
                only_from=[s.value for s in MessageStatus if s not in (MessageStatus.READ, MessageStatus.FAILED)],
            )
        if recorded:
            logger.info(f"Message {message_id} read by {reader_id}")
        return recorded

    def mark_conversation_read(self, reader_id: str, other_id: str) -> int:
        """Mark every unread message from other_id to reader_id as read."""
        unread = self.store.unread_ids(reader_id, other_id)
        if not unread:
            return 0
        now = self._now()
        for message_id in unread:
            self.store.insert_read_receipt(message_id, reader_id, now)
        updated = self.store.update_status(
            unread,
            MessageStatus.READ.value,
            now,
            only_from=[s.value for s in MessageStatus if s not in (MessageStatus.READ, MessageStatus.FAILED)],
        )
        logger.info(f"{reader_id} read {len(updated)} messages from {other_id}")
        return len(updated)

    def unread_count(self, user_id: str, from_user_id: Optional[str] = None) -> int:
        return self.store.count_unread(user_id, from_user_id)
