"""
Tests for the server-side send path.

Tests cover:
- Single-row and chunked persistence
- Validation and sanitization
- Rate limiting
- Store failures surfacing as retryable errors
- Sender-addressed copies
"""

import pytest

from chatpipe.codec import AesGcmCodec, IdentityCodec
from chatpipe.errors import (
    EmptyContent,
    RateLimitExceeded,
    TransientIOError,
    ValidationError,
)
from chatpipe.models import Message
from chatpipe.pipeline import MessagePipeline
from chatpipe.rate_limit import FixedWindowRateLimiter


@pytest.fixture
def pipeline(store, clock):
    return MessagePipeline(store, IdentityCodec(), chunk_threshold=1000, chunk_size=800, clock=clock)


class FailingStore:
    def insert_rows(self, rows):
        raise TransientIOError("Message store unavailable during insert")


class TestSendSingle:
    """Test messages at or under the threshold."""

    def test_short_message_is_one_row(self, pipeline, db):
        result = pipeline.send_message("alice", "bob", "Hello Bob")

        rows = db.query(Message).all()
        assert len(rows) == 1
        assert result.message_ids == [rows[0].id]
        assert result.fragments == 1
        assert result.group_id is None
        assert rows[0].content == "Hello Bob"
        assert rows[0].status == "sent"
        assert rows[0].chunk_group_id is None

    def test_created_at_comes_from_clock(self, pipeline, db):
        result = pipeline.send_message("alice", "bob", "Hi")

        assert result.created_at == "2025-01-15T10:00:00.000Z"
        assert db.query(Message).one().created_at == result.created_at

    def test_participants_are_trimmed(self, pipeline, db):
        pipeline.send_message("  alice ", " bob", "Hi")

        row = db.query(Message).one()
        assert (row.sender_id, row.receiver_id) == ("alice", "bob")

    def test_image_is_never_chunked(self, pipeline, db):
        payload = "data:image/png;base64," + "A" * 3000

        result = pipeline.send_message("alice", "bob", payload, content_type="image")

        assert result.fragments == 1
        assert db.query(Message).one().content == payload


class TestSendChunked:
    """Test oversized text is persisted as a fragment group."""

    def test_2500_characters_stored_as_four_rows(self, pipeline, db):
        text = "x" * 2500

        result = pipeline.send_message("alice", "bob", text)

        rows = db.query(Message).order_by(Message.chunk_index).all()
        assert result.fragments == 4
        assert result.group_id is not None
        assert [len(r.content) for r in rows] == [800, 800, 800, 100]
        assert {r.chunk_group_id for r in rows} == {result.group_id}
        assert {r.total_chunks for r in rows} == {4}
        assert {r.created_at for r in rows} == {result.created_at}
        assert result.message_ids == [r.id for r in rows]

    def test_fragments_are_encoded_individually(self, store, clock, db):
        codec = AesGcmCodec.from_secret("s3cret")
        pipeline = MessagePipeline(store, codec, chunk_threshold=10, chunk_size=8, clock=clock)

        pipeline.send_message("alice", "bob", "abcdefghijklmnopqrst")

        rows = db.query(Message).order_by(Message.chunk_index).all()
        assert [codec.decode(r.content) for r in rows] == ["abcdefgh", "ijklmnop", "qrst"]


class TestSendValidation:
    """Test non-retryable input problems."""

    def test_send_to_self_rejected(self, pipeline):
        with pytest.raises(ValidationError) as exc:
            pipeline.send_message("alice", "alice", "hi")
        assert exc.value.code == "invalid_participant"
        assert exc.value.retryable is False

    def test_missing_receiver_rejected(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.send_message("alice", "  ", "hi")

    def test_whitespace_only_rejected(self, pipeline, db):
        with pytest.raises(EmptyContent):
            pipeline.send_message("alice", "bob", "   \n\t")
        assert db.query(Message).count() == 0

    def test_script_only_rejected(self, pipeline):
        with pytest.raises(EmptyContent):
            pipeline.send_message("alice", "bob", "<script>alert(1)</script>")

    def test_script_is_stripped(self, pipeline, db):
        pipeline.send_message("alice", "bob", "hi <script>steal()</script>there")

        assert db.query(Message).one().content == "hi there"

    def test_event_handler_stripped(self, pipeline, db):
        pipeline.send_message("alice", "bob", '<img src="x" onerror="boom()">')

        assert "onerror" not in db.query(Message).one().content

    def test_unknown_content_type_rejected(self, pipeline):
        with pytest.raises(ValidationError):
            pipeline.send_message("alice", "bob", "hi", content_type="video")

    def test_oversized_content_rejected(self, store, clock):
        pipeline = MessagePipeline(store, IdentityCodec(), max_content_length=50, clock=clock)

        with pytest.raises(ValidationError) as exc:
            pipeline.send_message("alice", "bob", "x" * 51)
        assert exc.value.code == "content_too_large"


class TestSendRateLimit:
    """Test the per-sender rate limit."""

    def test_over_limit_raises_retryable_error(self, store, clock):
        limiter = FixedWindowRateLimiter(limit=2, window_seconds=60, clock=lambda: 100.0)
        pipeline = MessagePipeline(store, IdentityCodec(), rate_limiter=limiter, clock=clock)

        pipeline.send_message("alice", "bob", "one")
        pipeline.send_message("alice", "bob", "two")
        with pytest.raises(RateLimitExceeded) as exc:
            pipeline.send_message("alice", "bob", "three")

        assert exc.value.retryable is True
        assert exc.value.retry_after == 60.0

    def test_limit_is_per_sender(self, store, clock):
        limiter = FixedWindowRateLimiter(limit=1, window_seconds=60, clock=lambda: 0.0)
        pipeline = MessagePipeline(store, IdentityCodec(), rate_limiter=limiter, clock=clock)

        pipeline.send_message("alice", "bob", "hi")
        pipeline.send_message("bob", "alice", "hi back")


class TestSendStoreFailure:
    """Test store failures are reported as transient."""

    def test_store_failure_is_transient(self, clock):
        pipeline = MessagePipeline(FailingStore(), IdentityCodec(), clock=clock)

        with pytest.raises(TransientIOError) as exc:
            pipeline.send_message("alice", "bob", "hi")
        assert exc.value.retryable is True


class TestSendSelfCopy:
    """Test sender-addressed copies."""

    def test_self_copy_rows_written_with_original(self, store, clock, db):
        pipeline = MessagePipeline(store, AesGcmCodec.from_secret("k"), store_self_copy=True, clock=clock)

        result = pipeline.send_message("alice", "bob", "secret")

        rows = db.query(Message).order_by(Message.seq).all()
        assert len(rows) == 2
        assert len(result.self_copy_ids) == 1
        assert [r.is_self_copy for r in rows] == [False, True]
        assert rows[0].correlation_id == rows[1].correlation_id
        assert rows[0].content != rows[1].content

    def test_chunked_self_copy_uses_its_own_group(self, store, clock, db):
        pipeline = MessagePipeline(store, IdentityCodec(), store_self_copy=True, clock=clock)

        result = pipeline.send_message("alice", "bob", "w" * 1500)

        copies = db.query(Message).filter(Message.is_self_copy.is_(True)).all()
        assert len(copies) == 2
        assert {c.chunk_group_id for c in copies} != {result.group_id}
