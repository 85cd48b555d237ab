"""
Time-boxed message editing with history retention.

Only the sender may edit, and only within the edit window measured from the
stored creation time. The window boundary is inclusive. Each accepted edit
appends the superseded content (as stored) to edit_history, oldest first;
the current content never appears in its own history.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from chatpipe.codec import ContentCodec
from chatpipe.errors import (
    CodecError,
    EditWindowExpired,
    EmptyContent,
    NotAuthorized,
    NotFound,
    ValidationError,
)
from chatpipe.messages import EditRecord
from chatpipe.metrics import record_edit_outcome
from chatpipe.sanitizer import sanitize_message
from chatpipe.storage import MessageStore
from chatpipe.utils import format_ts, parse_ts, utc_now

logger = logging.getLogger(__name__)

EDIT_WINDOW = timedelta(minutes=5)


def can_edit(created_at, sender_id: str, requester_id: str, now: Optional[datetime] = None,
             window: timedelta = EDIT_WINDOW) -> bool:
    """
    True iff requester_id is the sender and now - created_at <= window.

    created_at may be an aware datetime or a stored ISO-8601 string.
    """
    if requester_id != sender_id:
        return False
    if isinstance(created_at, str):
        created_at = parse_ts(created_at)
    now = now or utc_now()
    return now - created_at <= window


class EditController:
    def __init__(
        self,
        store: MessageStore,
        codec: ContentCodec,
        *,
        window: timedelta = EDIT_WINDOW,
        max_length: int = 1000,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.window = window
        self.max_length = max_length
        self._clock = clock

    def can_edit(self, created_at, sender_id: str, requester_id: str) -> bool:
        return can_edit(created_at, sender_id, requester_id, now=self._clock(), window=self.window)

    def edit(self, message_id: str, new_content: str, requester_id: str):
        """
        Replace a message's content.

        The window is checked against the stored created_at, never a
        client-supplied one. A message and its sender-addressed copy are
        edited together.

        Returns:
            The updated Message row

        Raises:
            EmptyContent: replacement is empty or only whitespace/script
            ValidationError: replacement too long, or the row is a fragment
            NotFound: unknown message id
            NotAuthorized: requester is not the sender
            EditWindowExpired: the edit window has passed
        """
        try:
            content = self._clean(new_content)
            message = self.store.get_message(message_id)
            if message is None:
                raise NotFound(f"message {message_id} not found")
            if message.sender_id != requester_id:
                raise NotAuthorized("only the sender can edit this message")
            if not self.can_edit(message.created_at, message.sender_id, requester_id):
                raise EditWindowExpired("edit window has expired")
            if message.is_fragment:
                raise ValidationError("fragments of a chunked message cannot be edited")
        except (ValidationError, NotFound, NotAuthorized, EditWindowExpired) as e:
            logger.info(f"Edit of {message_id} by {requester_id} rejected: {e.message}")
            record_edit_outcome("rejected")
            raise

        now = format_ts(self._clock())
        targets = [message]
        if message.correlation_id:
            targets = self.store.get_correlated(message.correlation_id) or [message]

        for row in targets:
            history = list(row.edit_history or [])
            history.append({"content": row.content, "edited_at": row.edited_at or row.created_at})
            self.store.update_content(row.id, {
                "content": self.codec.encode(content),
                "is_edited": True,
                "edited_at": now,
                "edit_history": history,
                "updated_at": now,
            })

        record_edit_outcome("accepted")
        logger.info(f"Message {message_id} edited by {requester_id} ({len(targets)} row(s))")
        return self.store.get_message(message_id)

    def get_edit_history(self, message_id: str, requester_id: str) -> List[EditRecord]:
        """
        Decoded edit history, oldest first.

        Raises:
            NotFound: unknown message id
            NotAuthorized: requester is not a participant
        """
        message = self.store.get_message(message_id)
        if message is None:
            raise NotFound(f"message {message_id} not found")
        if requester_id not in (message.sender_id, message.receiver_id):
            raise NotAuthorized("only conversation participants can view edit history")
        return decode_history(self.codec, message.edit_history)

    def _clean(self, new_content: str) -> str:
        if new_content is None or not new_content.strip():
            raise EmptyContent("message content cannot be empty")
        content = sanitize_message(new_content)
        if not content:
            raise EmptyContent("message content is empty after sanitization")
        if len(content) > self.max_length:
            raise ValidationError(
                f"edited content exceeds {self.max_length} characters", code="content_too_large"
            )
        return content


def decode_history(codec: ContentCodec, history: Optional[list]) -> List[EditRecord]:
    records = []
    for entry in history or []:
        try:
            content = codec.decode(entry["content"])
        except CodecError:
            logger.warning("Undecodable edit history entry; returning it as stored")
            content = entry["content"]
        records.append(EditRecord(content=content, edited_at=entry["edited_at"]))
    return records
