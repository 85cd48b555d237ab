"""
Client session: optimistic sends backed by the offline queue.

Every send is rendered locally right away with status `sending`. It moves to
`sent` once the send operation succeeds (immediately or from the queue) and
to `failed` when it is rejected or the queue gives up on it. Transient
failures are never raised to the caller; validation errors are.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from chatpipe.assembler import ConversationAssembler
from chatpipe.config import settings
from chatpipe.errors import ChatPipelineError, ValidationError
from chatpipe.offline_queue import (
    DEFAULT_MAX_RETRIES,
    DrainReport,
    OfflineSendQueue,
    QueuedSend,
    SendOperation,
)
from chatpipe.pipeline import MessagePipeline
from chatpipe.polling import ConversationPoller
from chatpipe.status import MessageStatus
from chatpipe.utils import format_ts, new_id, utc_now

logger = logging.getLogger(__name__)


@dataclass
class LocalMessage:
    local_id: str
    receiver_id: str
    content: str
    content_type: str
    created_at: str
    status: MessageStatus = MessageStatus.SENDING


@dataclass(frozen=True)
class DeliveryOutcome:
    local_id: str
    status: MessageStatus
    queued: bool


def pipeline_sender(pipeline: MessagePipeline, sender_id: str) -> SendOperation:
    """
    Adapt an in-process MessagePipeline to the queue's send operation.

    The store call runs in a worker thread so the event loop never blocks.
    Pipeline errors propagate; the queue decides whether they are retryable.
    """
    async def send(content: str, content_type: str, receiver_id: str) -> bool:
        await asyncio.to_thread(pipeline.send_message, sender_id, receiver_id, content, content_type)
        return True

    return send


class ChatSession:
    def __init__(self, user_id: str, send_operation: SendOperation, *,
                 max_retries: int = DEFAULT_MAX_RETRIES, online: bool = True,
                 clock: Callable[[], datetime] = utc_now):
        self.user_id = user_id
        self._clock = clock
        self._send = send_operation
        self._local: Dict[str, LocalMessage] = {}
        self.queue = OfflineSendQueue(
            send_operation,
            max_retries=max_retries,
            online=online,
            on_sent=self._queued_sent,
            on_dropped=self._queued_dropped,
            clock=clock,
        )

    @property
    def online(self) -> bool:
        return self.queue.online

    async def send(self, content: str, content_type: str, receiver_id: str) -> DeliveryOutcome:
        """
        Send now if online, otherwise queue.

        Raises:
            ValidationError: the message can never be sent as written
        """
        if not self.online:
            local_id = self.queue.enqueue(content, content_type, receiver_id)
            self._track(local_id, content, content_type, receiver_id)
            return DeliveryOutcome(local_id, MessageStatus.SENDING, queued=True)

        try:
            ok = await self._send(content, content_type, receiver_id)
        except ValidationError:
            logger.info(f"Message from {self.user_id} to {receiver_id} rejected")
            raise
        except ChatPipelineError as e:
            if not e.retryable:
                raise
            logger.warning(f"Send failed ({e.code}); queueing for retry")
            ok = False
        except (OSError, asyncio.TimeoutError) as e:
            logger.warning(f"Send failed ({e.__class__.__name__}); queueing for retry")
            ok = False

        if ok:
            local = self._track(None, content, content_type, receiver_id)
            local.status = MessageStatus.SENT
            return DeliveryOutcome(local.local_id, MessageStatus.SENT, queued=False)

        local_id = self.queue.enqueue(content, content_type, receiver_id)
        self._track(local_id, content, content_type, receiver_id)
        return DeliveryOutcome(local_id, MessageStatus.SENDING, queued=True)

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        return self.queue.set_online(online)

    async def flush(self) -> DrainReport:
        return await self.queue.drain()

    def queue_snapshot(self) -> List[QueuedSend]:
        return self.queue.snapshot()

    def local_messages(self) -> List[LocalMessage]:
        """Optimistically rendered messages in the order they were composed."""
        return list(self._local.values())

    def _track(self, local_id: Optional[str], content: str, content_type: str,
               receiver_id: str) -> LocalMessage:
        if local_id is None:
            local_id = new_id()
        local = LocalMessage(
            local_id=local_id,
            receiver_id=receiver_id,
            content=content,
            content_type=content_type,
            created_at=format_ts(self._clock()),
        )
        self._local[local_id] = local
        return local

    def _queued_sent(self, entry: QueuedSend) -> None:
        local = self._local.get(entry.local_id)
        if local is not None:
            local.status = MessageStatus.SENT

    def _queued_dropped(self, entry: QueuedSend) -> None:
        local = self._local.get(entry.local_id)
        if local is not None:
            local.status = MessageStatus.FAILED


def local_session(user_id: str, pipeline: MessagePipeline, *, online: bool = True) -> ChatSession:
    """Session sending through an in-process pipeline, retries tuned from settings."""
    return ChatSession(
        user_id,
        pipeline_sender(pipeline, user_id),
        max_retries=settings.MAX_SEND_RETRIES,
        online=online,
    )


def conversation_poller(assembler: ConversationAssembler, user_id: str, other_id: str,
                        on_update: Optional[Callable[[list], None]] = None) -> ConversationPoller:
    """
    Poller re-reading one conversation on the configured schedule.

    Wire realtime "new data" signals for the pair to poller.notify().
    """
    async def refresh() -> list:
        return await asyncio.to_thread(assembler.load_conversation, user_id, other_id)

    return ConversationPoller(
        refresh,
        interval=settings.POLL_INTERVAL_SECONDS,
        jitter=settings.POLL_JITTER_SECONDS,
        on_update=on_update,
    )
