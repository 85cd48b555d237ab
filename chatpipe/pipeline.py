"""
Server-side send path: validate, sanitize, chunk, encode and persist.

One logical message becomes one row, or several fragment rows sharing a
chunk group id, all written in a single store transaction. With
store_self_copy enabled a second, independently encoded set of rows is
written in the same transaction so the sender can read back their own
message under a per-recipient codec.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, List, Optional

from chatpipe.chunking import DEFAULT_CHUNK_SIZE, DEFAULT_THRESHOLD, Fragment, chunk
from chatpipe.codec import ContentCodec
from chatpipe.errors import EmptyContent, RateLimitExceeded, TransientIOError, ValidationError
from chatpipe.messages import CONTENT_TYPES
from chatpipe.metrics import record_send_outcome
from chatpipe.rate_limit import FixedWindowRateLimiter
from chatpipe.sanitizer import sanitize_message
from chatpipe.status import MessageStatus
from chatpipe.storage import MessageStore
from chatpipe.utils import format_ts, new_id, utc_now

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    message_ids: List[str]
    created_at: str
    group_id: Optional[str] = None
    self_copy_ids: List[str] = field(default_factory=list)

    @property
    def fragments(self) -> int:
        return len(self.message_ids)

    @property
    def message_id(self) -> str:
        return self.message_ids[0]


class MessagePipeline:
    def __init__(
        self,
        store: MessageStore,
        codec: ContentCodec,
        *,
        chunk_threshold: int = DEFAULT_THRESHOLD,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_content_length: int = 100_000,
        store_self_copy: bool = False,
        rate_limiter: Optional[FixedWindowRateLimiter] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.store = store
        self.codec = codec
        self.chunk_threshold = chunk_threshold
        self.chunk_size = chunk_size
        self.max_content_length = max_content_length
        self.store_self_copy = store_self_copy
        self.rate_limiter = rate_limiter
        self._clock = clock

    def validate(self, sender_id: str, receiver_id: str, content: str, content_type: str) -> str:
        """
        Check participants and content; return the content to persist.

        Raises:
            ValidationError: invalid participant, content type or size
            EmptyContent: content is empty after sanitization
        """
        sender_id = (sender_id or "").strip()
        receiver_id = (receiver_id or "").strip()
        if not sender_id or not receiver_id:
            raise ValidationError("sender and receiver are required", code="invalid_participant")
        if sender_id == receiver_id:
            raise ValidationError("cannot send a message to yourself", code="invalid_participant")
        if content_type not in CONTENT_TYPES:
            raise ValidationError(f"content_type must be one of {', '.join(CONTENT_TYPES)}")
        if content is None or not content.strip():
            raise EmptyContent("message content cannot be empty")
        if len(content) > self.max_content_length:
            raise ValidationError(
                f"message exceeds {self.max_content_length} characters", code="content_too_large"
            )

        if content_type == "text":
            content = sanitize_message(content)
            if not content:
                raise EmptyContent("message content is empty after sanitization")
        return content

    def send_message(self, sender_id: str, receiver_id: str, content: str,
                     content_type: str = "text") -> SendResult:
        """
        Persist one logical message.

        Args:
            sender_id: Author
            receiver_id: Recipient
            content: Plaintext payload
            content_type: text or image

        Returns:
            SendResult with the stored row ids

        Raises:
            ValidationError: non-retryable input problems
            RateLimitExceeded: sender is over the configured rate
            TransientIOError: store failure, safe to retry
        """
        try:
            content = self.validate(sender_id, receiver_id, content, content_type)
        except ValidationError as e:
            logger.info(f"Rejected message from {sender_id!r} to {receiver_id!r}: {e.message}")
            record_send_outcome("rejected")
            raise
        sender_id, receiver_id = sender_id.strip(), receiver_id.strip()

        if self.rate_limiter is not None:
            limit = self.rate_limiter.hit(f"messages:{sender_id}")
            if not limit.allowed:
                record_send_outcome("rejected")
                raise RateLimitExceeded("rate limit exceeded", retry_after=limit.retry_after)

        created_at = format_ts(self._clock())
        correlation_id = new_id()

        rows = self._build_rows(sender_id, receiver_id, content, content_type,
                                created_at, correlation_id, is_self_copy=False)
        primary_count = len(rows)
        if self.store_self_copy:
            rows += self._build_rows(sender_id, receiver_id, content, content_type,
                                     created_at, correlation_id, is_self_copy=True)

        try:
            stored = self.store.insert_rows(rows)
        except TransientIOError:
            record_send_outcome("error")
            raise

        primary = stored[:primary_count]
        result = SendResult(
            message_ids=[row.id for row in primary],
            created_at=created_at,
            group_id=primary[0].chunk_group_id,
            self_copy_ids=[row.id for row in stored[primary_count:]],
        )
        record_send_outcome("chunked" if result.group_id else "stored")
        logger.info(
            f"Message {result.message_id} from {sender_id} to {receiver_id} stored "
            f"as {result.fragments} row(s)"
        )
        return result

    def _build_rows(self, sender_id: str, receiver_id: str, content: str, content_type: str,
                    created_at: str, correlation_id: str, is_self_copy: bool) -> List[dict]:
        if content_type == "text":
            fragments = chunk(content, self.chunk_threshold, self.chunk_size)
        else:
            # Images are stored whole
            fragments = [Fragment(content=content)]

        rows = []
        for fragment in fragments:
            info = fragment.chunk_info
            rows.append({
                "id": new_id(),
                "sender_id": sender_id,
                "receiver_id": receiver_id,
                "content": self.codec.encode(fragment.content),
                "content_type": content_type,
                "created_at": created_at,
                "status": MessageStatus.SENT.value,
                "chunk_group_id": info.group_id if info else None,
                "chunk_index": info.index if info else None,
                "total_chunks": info.total_chunks if info else None,
                "correlation_id": correlation_id,
                "is_self_copy": is_self_copy,
            })
        return rows
