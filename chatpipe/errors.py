"""
Error taxonomy for the delivery pipeline.

- TransientIOError: store/network failure, retryable; drives the offline
  queue's retry counter and is never shown to the user directly.
- ValidationError and its subclasses: bad input, never retried.
- EditWindowExpired / NotAuthorized / NotFound: edit and lookup failures,
  never retried.
- MalformedChunkGroup: raised inside the reassembler only; the read path
  degrades to showing raw fragments instead of failing.
"""

from typing import Optional


class ChatPipelineError(Exception):
    """Base class for every error raised by the pipeline."""

    code = "pipeline_error"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code


class TransientIOError(ChatPipelineError):
    code = "transient_io"
    retryable = True


class ValidationError(ChatPipelineError):
    code = "validation_error"


class EmptyContent(ValidationError):
    code = "empty_content"


class InvalidStatusTransition(ValidationError):
    code = "invalid_status_transition"


class EditWindowExpired(ChatPipelineError):
    code = "edit_window_expired"


class NotAuthorized(ChatPipelineError):
    code = "not_authorized"


class NotFound(ChatPipelineError):
    code = "not_found"


class RateLimitExceeded(ChatPipelineError):
    code = "rate_limited"
    retryable = True

    def __init__(self, message: str, retry_after: float = 0.0):
        super().__init__(message)
        self.retry_after = retry_after


class MalformedChunkGroup(ChatPipelineError):
    code = "malformed_chunk_group"

    def __init__(self, group_id: str, reason: str):
        super().__init__(f"Chunk group {group_id} is malformed: {reason}")
        self.group_id = group_id
        self.reason = reason


class CodecError(ChatPipelineError):
    code = "codec_error"
