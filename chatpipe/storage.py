import logging
from typing import Generator, Iterable, List, Optional

from sqlalchemy import create_engine, func, inspect, or_, and_, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.pool import StaticPool

from chatpipe.config import settings
from chatpipe.errors import TransientIOError

logger = logging.getLogger(__name__)


def _engine_options(url: str) -> dict:
    # check_same_thread=False is required for SQLite to work with FastAPI's threadpool
    if not url.startswith("sqlite"):
        return {}
    options = {"connect_args": {"check_same_thread": False}}
    if url in ("sqlite://", "sqlite:///:memory:"):
        # One shared connection, otherwise every session sees an empty database
        options["poolclass"] = StaticPool
    return options


engine = create_engine(
    settings.DATABASE_URL,
    echo=False,
    **_engine_options(settings.DATABASE_URL),
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatpipe.models import Message, MessageRead  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and both tables exist, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("messages", "message_reads"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Message Store
# =============================================================================

class MessageStore:
    """
    Durable append-only log of message rows backed by a SQLAlchemy session.

    Every failure of the underlying database is rolled back and re-raised as
    TransientIOError so callers can treat it as retryable.
    """

    def __init__(self, db: Session):
        self.db = db

    def _fail(self, action: str, exc: Exception) -> TransientIOError:
        self.db.rollback()
        logger.error(f"Store failure during {action}: {exc}")
        return TransientIOError(f"Message store unavailable during {action}")

    def insert_rows(self, rows: List[dict]) -> list:
        """
        Insert several rows in one transaction (all or nothing).

        Args:
            rows: Column dicts for Message

        Returns:
            The persisted Message objects, in insertion order
        """
        from chatpipe.models import Message

        logger.debug(f"Inserting {len(rows)} message rows")
        try:
            messages = [Message(**row) for row in rows]
            self.db.add_all(messages)
            self.db.commit()
            for message in messages:
                self.db.refresh(message)
        except SQLAlchemyError as e:
            raise self._fail("insert", e) from e
        logger.info(f"Stored {len(messages)} message rows")
        return messages

    def get_message(self, message_id: str):
        from chatpipe.models import Message

        try:
            return self.db.query(Message).filter(Message.id == message_id).first()
        except SQLAlchemyError as e:
            raise self._fail("lookup", e) from e

    def get_group_member_ids(self, group_ids: Iterable[str]) -> List[str]:
        """Ids of every row belonging to the given chunk groups."""
        from chatpipe.models import Message

        group_ids = list(group_ids)
        if not group_ids:
            return []
        try:
            rows = (
                self.db.query(Message.id)
                .filter(Message.chunk_group_id.in_(group_ids))
                .order_by(Message.chunk_index.asc(), Message.seq.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("group lookup", e) from e
        return [row.id for row in rows]

    def get_correlated(self, correlation_id: str) -> list:
        """Every non-fragment row sharing a correlation id (message and its self copy)."""
        from chatpipe.models import Message

        try:
            return (
                self.db.query(Message)
                .filter(
                    Message.correlation_id == correlation_id,
                    Message.chunk_group_id.is_(None),
                )
                .order_by(Message.seq.asc())
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("correlation lookup", e) from e

    def query_conversation(self, user_a: str, user_b: str, limit: int) -> list:
        """
        Most recent rows exchanged between two users.

        The pairing is order-independent. The newest `limit` rows are
        selected and returned in ascending creation order.
        """
        from chatpipe.models import Message

        logger.debug(f"Querying conversation {user_a}<->{user_b}, limit={limit}")
        try:
            rows = (
                self.db.query(Message)
                .filter(
                    or_(
                        and_(Message.sender_id == user_a, Message.receiver_id == user_b),
                        and_(Message.sender_id == user_b, Message.receiver_id == user_a),
                    )
                )
                .order_by(Message.created_at.desc(), Message.seq.desc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            raise self._fail("conversation query", e) from e
        rows.reverse()
        logger.debug(f"Conversation query returned {len(rows)} rows")
        return rows

    def update_status(self, message_ids: List[str], status: str, updated_at: str,
                      only_from: Optional[Iterable[str]] = None) -> List[str]:
        """
        Set status on rows, optionally only where the current status is in only_from.

        Returns:
            Ids of the rows actually updated
        """
        from chatpipe.models import Message

        if not message_ids:
            return []
        try:
            query = self.db.query(Message).filter(Message.id.in_(message_ids))
            if only_from is not None:
                query = query.filter(Message.status.in_(list(only_from)))
            matched = [row.id for row in query.with_entities(Message.id).all()]
            if matched:
                (
                    self.db.query(Message)
                    .filter(Message.id.in_(matched))
                    .update({"status": status, "updated_at": updated_at}, synchronize_session=False)
                )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("status update", e) from e
        logger.info(f"Status set to {status} on {len(matched)} rows")
        return matched

    def update_content(self, message_id: str, fields: dict) -> bool:
        from chatpipe.models import Message

        try:
            updated = (
                self.db.query(Message)
                .filter(Message.id == message_id)
                .update(fields, synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._fail("content update", e) from e
        return updated > 0

    def insert_read_receipt(self, message_id: str, reader_id: str, read_at: str) -> bool:
        """
        Record a read receipt.

        Returns:
            True if a receipt was recorded, False if this reader already had one
        """
        from chatpipe.models import MessageRead

        try:
            self.db.add(MessageRead(message_id=message_id, reader_id=reader_id, read_at=read_at))
            self.db.commit()
        except IntegrityError:
            # (message_id, reader_id) already recorded; receipts are idempotent
            self.db.rollback()
            logger.debug(f"Read receipt already present: {message_id} by {reader_id}")
            return False
        except SQLAlchemyError as e:
            raise self._fail("read receipt", e) from e
        return True

    def unread_ids(self, user_id: str, from_user_id: Optional[str] = None) -> List[str]:
        from chatpipe.models import Message

        try:
            query = self._unread_query(user_id, from_user_id).with_entities(Message.id)
            return [row.id for row in query.all()]
        except SQLAlchemyError as e:
            raise self._fail("unread lookup", e) from e

    def count_unread(self, user_id: str, from_user_id: Optional[str] = None) -> int:
        from chatpipe.models import Message

        try:
            query = self._unread_query(user_id, from_user_id)
            # Fragments and copies of one logical message share a correlation id
            logical_id = func.coalesce(Message.correlation_id, Message.id)
            return query.with_entities(func.count(func.distinct(logical_id))).scalar() or 0
        except SQLAlchemyError as e:
            raise self._fail("unread count", e) from e

    def _unread_query(self, user_id: str, from_user_id: Optional[str]):
        from chatpipe.models import Message

        query = self.db.query(Message).filter(
            Message.receiver_id == user_id,
            Message.status.notin_(["read", "failed"]),
            Message.is_self_copy.is_(False),
        )
        if from_user_id:
            query = query.filter(Message.sender_id == from_user_id)
        return query
