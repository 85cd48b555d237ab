"""Plain data types passed between pipeline components."""

from dataclasses import dataclass, field
from typing import List, Optional

from chatpipe.chunking import ChunkInfo

CONTENT_TYPES = ("text", "image")


@dataclass(frozen=True)
class EditRecord:
    content: str
    edited_at: str


@dataclass(frozen=True)
class LogicalMessage:
    """A user-visible message, possibly rebuilt from several stored rows."""

    id: str
    sender_id: str
    receiver_id: str
    content: str
    content_type: str
    created_at: str
    status: str
    is_edited: bool = False
    edited_at: Optional[str] = None
    edit_history: List[EditRecord] = field(default_factory=list)
    chunk_info: Optional[ChunkInfo] = None

    def to_dict(self) -> dict:
        data = {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "content_type": self.content_type,
            "created_at": self.created_at,
            "status": self.status,
            "is_edited": self.is_edited,
        }
        if self.is_edited:
            data["edited_at"] = self.edited_at
            data["edit_history"] = [
                {"content": record.content, "edited_at": record.edited_at}
                for record in self.edit_history
            ]
        if self.chunk_info is not None:
            data["chunk_info"] = {
                "group_id": self.chunk_info.group_id,
                "index": self.chunk_info.index,
                "total_chunks": self.chunk_info.total_chunks,
            }
        return data
