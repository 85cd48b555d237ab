"""
Conversation assembly: stored rows -> ordered logical messages.

Steps, in order:
1. fetch the most recent rows of the pair (ascending creation order)
2. decode each row's content through the codec
3. reassemble complete chunk groups
4. drop duplicate logical events (e.g. a sender-addressed copy)
5. sort by creation time, store order breaking ties

Fragments are encoded one by one at write time, so decoding happens per row
before reassembly. Dedup runs after decoding because two encodings of the
same plaintext differ at rest.
"""

import logging
from typing import Callable, List, Optional

from chatpipe.chunking import ChunkInfo, reassemble
from chatpipe.codec import ContentCodec
from chatpipe.editing import decode_history
from chatpipe.errors import CodecError
from chatpipe.messages import LogicalMessage
from chatpipe.storage import MessageStore

logger = logging.getLogger(__name__)


def dedup_key(message: LogicalMessage) -> tuple:
    # Heuristic identity: two distinct messages with equal content sent in the
    # same millisecond by the same sender collapse into one.
    key = (message.sender_id, message.content, message.created_at, message.content_type)
    info = message.chunk_info
    if info is not None:
        # Fragments of one group share sender and created_at; only a copy's
        # fragment at the same position is the same event
        key += (info.index, info.total_chunks)
    return key


def deduplicate(messages: List[LogicalMessage],
                key: Callable[[LogicalMessage], tuple] = dedup_key) -> List[LogicalMessage]:
    """Keep the first occurrence of each key, dropping later ones silently."""
    seen = set()
    result = []
    for message in messages:
        k = key(message)
        if k in seen:
            continue
        seen.add(k)
        result.append(message)
    dropped = len(messages) - len(result)
    if dropped:
        logger.debug(f"Dropped {dropped} duplicate message(s)")
    return result


class ConversationAssembler:
    def __init__(self, store: MessageStore, codec: ContentCodec, *, default_limit: int = 100):
        self.store = store
        self.codec = codec
        self.default_limit = default_limit

    def load_conversation(self, user_a: str, user_b: str,
                          limit: Optional[int] = None) -> List[LogicalMessage]:
        """
        Return the visible messages exchanged by two users.

        Args:
            user_a: One participant
            user_b: The other participant (order does not matter)
            limit: Maximum rows to fetch (defaults to default_limit)
        """
        rows = self.store.query_conversation(user_a, user_b, limit or self.default_limit)
        decoded = [self.to_logical(row) for row in rows]
        position = {message.id: i for i, message in enumerate(decoded)}

        merged = reassemble(decoded)
        unique = deduplicate(merged)
        unique.sort(key=lambda m: (m.created_at, position[m.id]))

        logger.debug(
            f"Assembled {len(unique)} messages from {len(rows)} rows ({user_a}<->{user_b})"
        )
        return unique

    def _decode(self, row) -> str:
        try:
            return self.codec.decode(row.content)
        except CodecError as e:
            logger.warning(f"Row {row.id} could not be decoded ({e.message}); returning it as stored")
            return row.content

    def to_logical(self, row) -> LogicalMessage:
        """Decode one stored row without reassembly."""
        chunk_info = None
        if row.chunk_group_id is not None:
            chunk_info = ChunkInfo(
                group_id=row.chunk_group_id,
                index=row.chunk_index,
                total_chunks=row.total_chunks,
            )
        return LogicalMessage(
            id=row.id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=self._decode(row),
            content_type=row.content_type,
            created_at=row.created_at,
            status=row.status,
            is_edited=bool(row.is_edited),
            edited_at=row.edited_at,
            edit_history=decode_history(self.codec, row.edit_history),
            chunk_info=chunk_info,
        )
