"""
Client-resident queue of messages that could not be sent yet.

Entries are drained in enqueue order while connectivity is up. Each entry
is attempted at most once per drain; a failed attempt increments its retry
count and the entry is dropped once the count reaches max_retries. Errors
flagged as non-retryable drop the entry straight away.

Draining is edge-triggered: set_online(True) after being offline schedules a
drain when the queue is non-empty. Only one drain runs at a time; a drain
requested while another is running is skipped.
"""

import asyncio
import dataclasses
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Awaitable, Callable, List, Optional

from chatpipe.errors import ChatPipelineError
from chatpipe.metrics import record_queue_event
from chatpipe.utils import format_ts, new_id, utc_now

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3

# (content, content_type, receiver_id) -> True on success, False on application-level failure
SendOperation = Callable[[str, str, str], Awaitable[bool]]
EntryCallback = Callable[["QueuedSend"], None]


@dataclass
class QueuedSend:
    local_id: str
    content: str
    content_type: str
    receiver_id: str
    created_at: str
    retry_count: int = 0


@dataclass
class DrainReport:
    sent: List[str] = field(default_factory=list)
    retried: List[str] = field(default_factory=list)
    dropped: List[str] = field(default_factory=list)
    skipped: bool = False


class OfflineSendQueue:
    def __init__(
        self,
        send_operation: SendOperation,
        *,
        max_retries: int = DEFAULT_MAX_RETRIES,
        online: bool = True,
        on_sent: Optional[EntryCallback] = None,
        on_dropped: Optional[EntryCallback] = None,
        id_factory: Callable[[], str] = new_id,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._send = send_operation
        self.max_retries = max_retries
        self._online = online
        self._entries: List[QueuedSend] = []
        self._draining = False
        self._drain_task: Optional[asyncio.Task] = None
        self._on_sent = on_sent
        self._on_dropped = on_dropped
        self._id_factory = id_factory
        self._clock = clock

    def __len__(self) -> int:
        return len(self._entries)

    @property
    def online(self) -> bool:
        return self._online

    @property
    def is_draining(self) -> bool:
        return self._draining

    @property
    def drain_task(self) -> Optional[asyncio.Task]:
        return self._drain_task

    def enqueue(self, content: str, content_type: str, receiver_id: str) -> str:
        """Append a message to the queue and return its local id."""
        entry = QueuedSend(
            local_id=self._id_factory(),
            content=content,
            content_type=content_type,
            receiver_id=receiver_id,
            created_at=format_ts(self._clock()),
        )
        self._entries.append(entry)
        record_queue_event("enqueued")
        logger.info(f"Queued message {entry.local_id} for {receiver_id} ({len(self._entries)} pending)")
        return entry.local_id

    def remove(self, local_id: str) -> bool:
        before = len(self._entries)
        self._entries = [e for e in self._entries if e.local_id != local_id]
        return len(self._entries) < before

    def snapshot(self) -> List[QueuedSend]:
        """Copies of the pending entries, oldest first."""
        return [dataclasses.replace(entry) for entry in self._entries]

    def set_online(self, online: bool) -> Optional[asyncio.Task]:
        """
        Record a connectivity change.

        Returns:
            The scheduled drain task on a down -> up transition with entries
            pending, otherwise None
        """
        was_online, self._online = self._online, online
        if not online or was_online or not self._entries:
            return None
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("Connectivity restored outside an event loop; drain not scheduled")
            return None
        logger.info(f"Connectivity restored, draining {len(self._entries)} queued message(s)")
        self._drain_task = loop.create_task(self.drain())
        return self._drain_task

    async def drain(self) -> DrainReport:
        """
        Attempt every currently queued entry once, oldest first.

        Entries enqueued during the pass wait for the next drain. The pass
        stops early if connectivity drops between entries.
        """
        if not self._online or self._draining or not self._entries:
            return DrainReport(skipped=True)

        self._draining = True
        report = DrainReport()
        try:
            for entry in list(self._entries):
                if not self._online:
                    logger.info("Connectivity lost during drain; stopping")
                    break
                if not any(e is entry for e in self._entries):
                    continue
                await self._attempt(entry, report)
        finally:
            self._draining = False

        logger.info(
            f"Drain finished: {len(report.sent)} sent, {len(report.retried)} to retry, "
            f"{len(report.dropped)} dropped, {len(self._entries)} pending"
        )
        return report

    async def _attempt(self, entry: QueuedSend, report: DrainReport) -> None:
        try:
            ok = await self._send(entry.content, entry.content_type, entry.receiver_id)
        except ChatPipelineError as e:
            if not e.retryable:
                logger.warning(f"Queued message {entry.local_id} rejected ({e.code}); dropping")
                self._drop(entry, report)
                return
            logger.warning(f"Queued message {entry.local_id} failed: {e.message}")
            ok = False
        except Exception as e:
            logger.warning(f"Queued message {entry.local_id} raised {e.__class__.__name__}: {e}")
            ok = False

        if ok:
            self.remove(entry.local_id)
            report.sent.append(entry.local_id)
            record_queue_event("sent")
            if self._on_sent:
                self._on_sent(entry)
            return

        entry.retry_count += 1
        if entry.retry_count >= self.max_retries:
            logger.warning(
                f"Queued message {entry.local_id} dropped after {entry.retry_count} failed attempts"
            )
            self._drop(entry, report)
        else:
            report.retried.append(entry.local_id)
            record_queue_event("retry")

    def _drop(self, entry: QueuedSend, report: DrainReport) -> None:
        self.remove(entry.local_id)
        report.dropped.append(entry.local_id)
        record_queue_event("dropped")
        if self._on_dropped:
            self._on_dropped(entry)
