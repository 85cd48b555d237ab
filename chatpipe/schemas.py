"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses
"""

from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

from chatpipe.status import MessageStatus


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Body of POST /messages.

    Validates:
    - receiver_id: non-empty string
    - content: non-blank (size and sanitization are checked by the pipeline)
    - content_type: text or image
    """
    receiver_id: str = Field(..., min_length=1, description="Recipient user id")
    content: str = Field(..., description="Plaintext message content")
    content_type: Literal["text", "image"] = Field("text", description="Kind of payload")

    @field_validator("content")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("content cannot be empty")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"receiver_id": "bob", "content": "Hello", "content_type": "text"}
            ]
        }
    }


class EditMessageRequest(BaseModel):
    content: str = Field(..., description="Replacement content")


class StatusUpdateRequest(BaseModel):
    status: MessageStatus = Field(..., description="Target status")


class BatchDeliveredRequest(BaseModel):
    message_ids: List[str] = Field(..., max_length=500, description="Messages to mark delivered")


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")
    code: Optional[str] = Field(None, description="Machine-readable error code")


class SendMessageResponse(BaseModel):
    """Outcome of a server-side send."""
    status: MessageStatus = Field(MessageStatus.SENT, description="Delivery status after persistence")
    message_ids: List[str] = Field(..., description="Stored row ids, in fragment order")
    group_id: Optional[str] = Field(None, description="Chunk group id when the message was split")
    fragments: int = Field(..., ge=1, description="Number of rows written")
    created_at: str = Field(..., description="Creation timestamp (ISO-8601 UTC)")


class ChunkInfoResponse(BaseModel):
    group_id: str
    index: int
    total_chunks: int


class EditRecordResponse(BaseModel):
    content: str = Field(..., description="Superseded content")
    edited_at: str = Field(..., description="When this version became current")


class MessageResponse(BaseModel):
    """
    A logical message as seen by a participant.
    chunk_info is present only on fragments of an incomplete group.
    """
    id: str
    sender_id: str
    receiver_id: str
    content: str
    content_type: str
    created_at: str
    status: MessageStatus
    is_edited: bool = False
    edited_at: Optional[str] = None
    edit_history: List[EditRecordResponse] = Field(default_factory=list)
    chunk_info: Optional[ChunkInfoResponse] = None

    model_config = {"from_attributes": True}


class ConversationResponse(BaseModel):
    data: List[MessageResponse] = Field(default_factory=list, description="Messages, oldest first")
    count: int = Field(..., ge=0, description="Number of logical messages returned")
    limit: int = Field(..., ge=1, description="Maximum rows fetched")


class EditHistoryResponse(BaseModel):
    message_id: str
    history: List[EditRecordResponse] = Field(default_factory=list, description="Oldest first")


class StatusResponse(BaseModel):
    message_id: str
    status: MessageStatus


class BatchDeliveredResponse(BaseModel):
    advanced: List[str] = Field(default_factory=list, description="Row ids moved to delivered")


class ReadReceiptResponse(BaseModel):
    message_id: str
    recorded: bool = Field(..., description="False when this reader had already read the message")


class ConversationReadResponse(BaseModel):
    marked: int = Field(..., ge=0)


class UnreadCountResponse(BaseModel):
    user_id: str
    from_user: Optional[str] = None
    unread: int = Field(..., ge=0)


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
