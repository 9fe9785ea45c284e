import logging
import threading
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from sqlalchemy import create_engine, func, inspect, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from whatsapp_bot import models
from whatsapp_bot.schemas import (
    AnalyticsCreate,
    AnalyticsRecord,
    BotConfigCreate,
    BotConfigRecord,
    BotConfigUpdate,
    ConversationCreate,
    ConversationRecord,
    ConversationUpdate,
    MessageCreate,
    MessageRecord,
    MessageStatus,
    TemplateCreate,
    TemplateRecord,
    TemplateUpdate,
    WebhookLogCreate,
    WebhookLogRecord,
)

logger = logging.getLogger(__name__)


# (key, value, description) seeded on init when the key is missing
DEFAULT_BOT_CONFIG = [
    (
        "welcome_message",
        "Hello! Welcome to our WhatsApp bot. Type /help to see available commands.",
        "Welcome message for new users",
    ),
    (
        "help_message",
        "Available commands:\n/help - Show this help message\n/info - Company information\n"
        "/contact - Contact details\n/order - Check order status",
        "Help command response",
    ),
    (
        "info_message",
        "We are a leading company providing excellent services. Visit our website for more information.",
        "Company information",
    ),
    (
        "contact_message",
        "Contact us:\nPhone: +1 (555) 123-4567\nEmail: support@company.com\nWebsite: https://company.com",
        "Contact information",
    ),
    (
        "default_response",
        "I'm sorry, I didn't understand that. Type /help to see available commands.",
        "Default response for unknown messages",
    ),
]


class DuplicateKeyError(Exception):
    """Raised when a create would collide with an existing unique key."""


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _to_db_time(value: datetime) -> datetime:
    # SQLite has no timezone support, rows hold naive UTC
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def _from_db_time(value: datetime) -> datetime:
    return value.replace(tzinfo=timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


def _next_seq(db: Session, model) -> int:
    # callers hold the store lock, so max + 1 cannot race
    return (db.query(func.max(model.seq)).scalar() or 0) + 1


@dataclass(frozen=True)
class StoreSnapshot:
    """Messages and conversations read together in one session."""
    messages: list[MessageRecord]
    conversations: list[ConversationRecord]


# =============================================================================
# Storage Interface
# =============================================================================

class Storage(ABC):
    """
    Repository for every entity the bot keeps.

    Lookups on unknown keys return None instead of raising. Returned records
    are detached copies; mutating them never touches stored state.
    """

    @abstractmethod
    def init(self) -> None:
        """Prepare the store and seed default bot configuration."""

    @abstractmethod
    def check_health(self) -> bool: ...

    # Messages
    @abstractmethod
    def create_message(self, data: MessageCreate) -> MessageRecord: ...

    @abstractmethod
    def get_message_by_external_id(self, whatsapp_message_id: str) -> Optional[MessageRecord]: ...

    @abstractmethod
    def get_messages(self, limit: int = 50, offset: int = 0) -> list[MessageRecord]: ...

    @abstractmethod
    def get_messages_by_conversation(self, phone_number: str) -> list[MessageRecord]: ...

    @abstractmethod
    def update_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        response_time: Optional[int] = None,
        bot_response: Optional[str] = None,
    ) -> Optional[MessageRecord]: ...

    # Conversations
    @abstractmethod
    def get_conversation(self, phone_number: str) -> Optional[ConversationRecord]: ...

    @abstractmethod
    def create_conversation(self, data: ConversationCreate) -> ConversationRecord: ...

    @abstractmethod
    def update_conversation(
        self, phone_number: str, updates: ConversationUpdate
    ) -> Optional[ConversationRecord]: ...

    @abstractmethod
    def get_active_conversations(self) -> list[ConversationRecord]: ...

    # Templates
    @abstractmethod
    def get_templates(self) -> list[TemplateRecord]: ...

    @abstractmethod
    def get_template(self, template_id: str) -> Optional[TemplateRecord]: ...

    @abstractmethod
    def create_template(self, data: TemplateCreate) -> TemplateRecord: ...

    @abstractmethod
    def update_template(self, template_id: str, updates: TemplateUpdate) -> Optional[TemplateRecord]: ...

    @abstractmethod
    def increment_template_usage(self, template_id: str) -> Optional[TemplateRecord]: ...

    # Bot configuration
    @abstractmethod
    def get_bot_config(self) -> list[BotConfigRecord]: ...

    @abstractmethod
    def get_bot_config_by_key(self, key: str) -> Optional[BotConfigRecord]: ...

    @abstractmethod
    def set_bot_config(self, data: BotConfigCreate) -> BotConfigRecord: ...

    @abstractmethod
    def update_bot_config(self, key: str, updates: BotConfigUpdate) -> Optional[BotConfigRecord]: ...

    # Webhook logs
    @abstractmethod
    def create_webhook_log(self, data: WebhookLogCreate) -> WebhookLogRecord: ...

    @abstractmethod
    def get_webhook_logs(self, limit: int = 100) -> list[WebhookLogRecord]: ...

    # Analytics
    @abstractmethod
    def get_analytics(self, date: str) -> Optional[AnalyticsRecord]: ...

    @abstractmethod
    def upsert_analytics(self, data: AnalyticsCreate) -> AnalyticsRecord: ...

    @abstractmethod
    def get_analytics_range(self, start_date: str, end_date: str) -> list[AnalyticsRecord]: ...

    # Aggregation support
    @abstractmethod
    def snapshot(self) -> StoreSnapshot: ...


# =============================================================================
# Row Conversion
# =============================================================================

def _message_record(row: models.Message) -> MessageRecord:
    return MessageRecord(
        id=row.id,
        whatsapp_message_id=row.whatsapp_message_id,
        from_number=row.from_number,
        to_number=row.to_number,
        message_text=row.message_text,
        message_type=row.message_type,
        timestamp=_from_db_time(row.timestamp),
        status=row.status,
        response_time=row.response_time,
        is_command=row.is_command,
        command_name=row.command_name,
        bot_response=row.bot_response,
        message_metadata=dict(row.message_metadata or {}),
    )


def _conversation_record(row: models.Conversation) -> ConversationRecord:
    return ConversationRecord(
        id=row.id,
        phone_number=row.phone_number,
        display_name=row.display_name,
        last_message_at=_from_db_time(row.last_message_at),
        message_count=row.message_count,
        is_active=row.is_active,
        last_command=row.last_command,
        conversation_state=row.conversation_state,
    )


def _template_record(row: models.Template) -> TemplateRecord:
    return TemplateRecord(
        id=row.id,
        name=row.name,
        category=row.category,
        language=row.language,
        status=row.status,
        components=row.components,
        usage_count=row.usage_count,
        created_at=_from_db_time(row.created_at),
        updated_at=_from_db_time(row.updated_at),
    )


def _bot_config_record(row: models.BotConfig) -> BotConfigRecord:
    return BotConfigRecord(
        id=row.id,
        key=row.key,
        value=row.value,
        description=row.description,
        is_active=row.is_active,
        updated_at=_from_db_time(row.updated_at),
    )


def _webhook_log_record(row: models.WebhookLog) -> WebhookLogRecord:
    return WebhookLogRecord(
        id=row.id,
        webhook_url=row.webhook_url,
        method=row.method,
        headers=row.headers,
        body=row.body,
        response_status=row.response_status,
        response_time=row.response_time,
        timestamp=_from_db_time(row.timestamp),
        is_successful=row.is_successful,
        error_message=row.error_message,
    )


def _analytics_record(row: models.Analytics) -> AnalyticsRecord:
    return AnalyticsRecord(
        id=row.id,
        date=row.date,
        messages_received=row.messages_received,
        messages_responded=row.messages_responded,
        active_users=row.active_users,
        avg_response_time=row.avg_response_time,
        command_usage=dict(row.command_usage or {}),
        popular_commands=list(row.popular_commands or []),
    )


# =============================================================================
# SQLAlchemy Implementation
# =============================================================================

def create_db_engine(database_url: str = "sqlite://") -> Engine:
    """
    Create the SQLAlchemy engine for a database URL.

    An in-memory SQLite URL gets a StaticPool so every session sees the
    same single connection (and therefore the same data).
    """
    kwargs = {}
    if database_url.startswith("sqlite"):
        # check_same_thread=False is required for SQLite to work with FastAPI's threads
        kwargs["connect_args"] = {"check_same_thread": False}
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(database_url, echo=False, **kwargs)


class SqlAlchemyStorage(Storage):
    """
    Storage backed by SQLAlchemy ORM tables, in-memory SQLite by default.

    Every operation runs in its own session under a store-wide lock, which
    gives the single-writer discipline the pipeline relies on. Rows are
    converted to pydantic records before the session closes.
    """

    def __init__(self, engine: Optional[Engine] = None, clock: Callable[[], datetime] = utcnow):
        self.engine = engine if engine is not None else create_db_engine()
        self._session_factory = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)
        self._clock = clock
        self._lock = threading.RLock()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        with self._lock:
            db = self._session_factory()
            try:
                yield db
            finally:
                db.close()

    def _now(self) -> datetime:
        return _to_db_time(self._clock())

    def init(self) -> None:
        """
        Create all tables and seed the default bot configuration.
        Existing keys are left untouched, so calling init twice is harmless.
        """
        logger.debug("Initializing storage")
        try:
            models.Base.metadata.create_all(bind=self.engine)
        except Exception as e:
            logger.error(f"Failed to initialize storage: {e}")
            raise

        seeded = 0
        for key, value, description in DEFAULT_BOT_CONFIG:
            if self.get_bot_config_by_key(key) is None:
                self.set_bot_config(BotConfigCreate(key=key, value=value, description=description))
                seeded += 1
        logger.info(f"Storage initialized, seeded {seeded} bot config entries")

    def check_health(self) -> bool:
        """
        Check that the database is reachable and the schema is applied.

        Returns:
            True if healthy, False otherwise.
        """
        try:
            with self._session() as db:
                db.execute(text("SELECT 1"))
            if not inspect(self.engine).has_table(models.Message.__tablename__):
                logger.error("Storage schema not applied: 'messages' table not found")
                return False
            return True
        except Exception as e:
            logger.error(f"Storage health check failed: {e}")
            return False

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def create_message(self, data: MessageCreate) -> MessageRecord:
        """
        Store a new message with a generated id and server receipt time.

        Raises:
            DuplicateKeyError: if the platform message id is already stored
        """
        with self._session() as db:
            row = models.Message(
                id=_new_id(),
                seq=_next_seq(db, models.Message),
                whatsapp_message_id=data.whatsapp_message_id,
                from_number=data.from_number,
                to_number=data.to_number,
                message_text=data.message_text,
                message_type=data.message_type,
                timestamp=self._now(),
                status=data.status,
                response_time=None,
                is_command=data.is_command,
                command_name=data.command_name,
                bot_response=None,
                message_metadata=dict(data.message_metadata),
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateKeyError(f"message {data.whatsapp_message_id} already exists")
            logger.debug(f"Message stored: id={row.id}, whatsapp_id={row.whatsapp_message_id}")
            return _message_record(row)

    def get_message_by_external_id(self, whatsapp_message_id: str) -> Optional[MessageRecord]:
        with self._session() as db:
            row = (
                db.query(models.Message)
                .filter(models.Message.whatsapp_message_id == whatsapp_message_id)
                .first()
            )
            return _message_record(row) if row is not None else None

    def get_messages(self, limit: int = 50, offset: int = 0) -> list[MessageRecord]:
        """Newest first, windowed by offset/limit."""
        with self._session() as db:
            rows = (
                db.query(models.Message)
                .order_by(models.Message.timestamp.desc(), models.Message.seq.desc())
                .offset(offset)
                .limit(limit)
                .all()
            )
            return [_message_record(row) for row in rows]

    def get_messages_by_conversation(self, phone_number: str) -> list[MessageRecord]:
        """All messages from one sender, oldest first."""
        with self._session() as db:
            rows = (
                db.query(models.Message)
                .filter(models.Message.from_number == phone_number)
                .order_by(models.Message.timestamp.asc(), models.Message.seq.asc())
                .all()
            )
            return [_message_record(row) for row in rows]

    def update_message_status(
        self,
        message_id: str,
        status: MessageStatus,
        response_time: Optional[int] = None,
        bot_response: Optional[str] = None,
    ) -> Optional[MessageRecord]:
        """
        Move a message to a new status.

        Latency and response text are only kept for "responded"; any other
        status clears them. Returns None without writing if the id is unknown.
        """
        with self._session() as db:
            row = db.get(models.Message, message_id)
            if row is None:
                logger.warning(f"Status update for unknown message: {message_id}")
                return None
            row.status = status
            if status == "responded":
                row.response_time = response_time
                row.bot_response = bot_response
            else:
                row.response_time = None
                row.bot_response = None
            db.commit()
            return _message_record(row)

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------

    def get_conversation(self, phone_number: str) -> Optional[ConversationRecord]:
        with self._session() as db:
            row = db.get(models.Conversation, phone_number)
            return _conversation_record(row) if row is not None else None

    def create_conversation(self, data: ConversationCreate) -> ConversationRecord:
        with self._session() as db:
            row = models.Conversation(
                id=_new_id(),
                phone_number=data.phone_number,
                display_name=data.display_name,
                last_message_at=self._now(),
                message_count=data.message_count,
                is_active=data.is_active,
                last_command=data.last_command,
                conversation_state=data.conversation_state,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateKeyError(f"conversation {data.phone_number} already exists")
            return _conversation_record(row)

    def update_conversation(
        self, phone_number: str, updates: ConversationUpdate
    ) -> Optional[ConversationRecord]:
        """Apply the non-None fields of updates and refresh last activity."""
        with self._session() as db:
            row = db.get(models.Conversation, phone_number)
            if row is None:
                return None
            for field, value in updates.model_dump(exclude_none=True).items():
                setattr(row, field, value)
            row.last_message_at = self._now()
            db.commit()
            return _conversation_record(row)

    def get_active_conversations(self) -> list[ConversationRecord]:
        with self._session() as db:
            rows = (
                db.query(models.Conversation)
                .filter(models.Conversation.is_active.is_(True))
                .order_by(models.Conversation.last_message_at.desc())
                .all()
            )
            return [_conversation_record(row) for row in rows]

    # -------------------------------------------------------------------------
    # Templates
    # -------------------------------------------------------------------------

    def get_templates(self) -> list[TemplateRecord]:
        with self._session() as db:
            rows = db.query(models.Template).order_by(models.Template.created_at.desc()).all()
            return [_template_record(row) for row in rows]

    def get_template(self, template_id: str) -> Optional[TemplateRecord]:
        with self._session() as db:
            row = db.get(models.Template, template_id)
            return _template_record(row) if row is not None else None

    def create_template(self, data: TemplateCreate) -> TemplateRecord:
        with self._session() as db:
            now = self._now()
            row = models.Template(
                id=_new_id(),
                name=data.name,
                category=data.category,
                language=data.language,
                status=data.status,
                components=data.components,
                usage_count=0,
                created_at=now,
                updated_at=now,
            )
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateKeyError(f"template {data.name!r} already exists")
            return _template_record(row)

    def update_template(self, template_id: str, updates: TemplateUpdate) -> Optional[TemplateRecord]:
        with self._session() as db:
            row = db.get(models.Template, template_id)
            if row is None:
                return None
            for field, value in updates.model_dump(exclude_none=True).items():
                setattr(row, field, value)
            row.updated_at = self._now()
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                raise DuplicateKeyError(f"template {updates.name!r} already exists")
            return _template_record(row)

    def increment_template_usage(self, template_id: str) -> Optional[TemplateRecord]:
        with self._session() as db:
            row = db.get(models.Template, template_id)
            if row is None:
                return None
            row.usage_count = (row.usage_count or 0) + 1
            db.commit()
            return _template_record(row)

    # -------------------------------------------------------------------------
    # Bot configuration
    # -------------------------------------------------------------------------

    def get_bot_config(self) -> list[BotConfigRecord]:
        with self._session() as db:
            return [_bot_config_record(row) for row in db.query(models.BotConfig).all()]

    def get_bot_config_by_key(self, key: str) -> Optional[BotConfigRecord]:
        with self._session() as db:
            row = db.get(models.BotConfig, key)
            return _bot_config_record(row) if row is not None else None

    def set_bot_config(self, data: BotConfigCreate) -> BotConfigRecord:
        """Create the entry, replacing any existing entry with the same key."""
        with self._session() as db:
            row = db.get(models.BotConfig, data.key)
            if row is None:
                row = models.BotConfig(id=_new_id(), key=data.key)
                db.add(row)
            row.value = data.value
            row.description = data.description
            row.is_active = data.is_active
            row.updated_at = self._now()
            db.commit()
            return _bot_config_record(row)

    def update_bot_config(self, key: str, updates: BotConfigUpdate) -> Optional[BotConfigRecord]:
        with self._session() as db:
            row = db.get(models.BotConfig, key)
            if row is None:
                return None
            for field, value in updates.model_dump(exclude_none=True).items():
                setattr(row, field, value)
            row.updated_at = self._now()
            db.commit()
            return _bot_config_record(row)

    # -------------------------------------------------------------------------
    # Webhook logs
    # -------------------------------------------------------------------------

    def create_webhook_log(self, data: WebhookLogCreate) -> WebhookLogRecord:
        with self._session() as db:
            row = models.WebhookLog(
                id=_new_id(),
                seq=_next_seq(db, models.WebhookLog),
                timestamp=self._now(),
                **data.model_dump(),
            )
            db.add(row)
            db.commit()
            return _webhook_log_record(row)

    def get_webhook_logs(self, limit: int = 100) -> list[WebhookLogRecord]:
        with self._session() as db:
            rows = (
                db.query(models.WebhookLog)
                .order_by(models.WebhookLog.timestamp.desc(), models.WebhookLog.seq.desc())
                .limit(limit)
                .all()
            )
            return [_webhook_log_record(row) for row in rows]

    # -------------------------------------------------------------------------
    # Analytics
    # -------------------------------------------------------------------------

    def get_analytics(self, date: str) -> Optional[AnalyticsRecord]:
        with self._session() as db:
            row = db.get(models.Analytics, date)
            return _analytics_record(row) if row is not None else None

    def upsert_analytics(self, data: AnalyticsCreate) -> AnalyticsRecord:
        with self._session() as db:
            row = db.get(models.Analytics, data.date)
            if row is None:
                row = models.Analytics(id=_new_id(), date=data.date)
                db.add(row)
            for field, value in data.model_dump(exclude={"date"}).items():
                setattr(row, field, value)
            db.commit()
            return _analytics_record(row)

    def get_analytics_range(self, start_date: str, end_date: str) -> list[AnalyticsRecord]:
        """Rollups with start_date <= date <= end_date, oldest first."""
        with self._session() as db:
            rows = (
                db.query(models.Analytics)
                .filter(models.Analytics.date >= start_date, models.Analytics.date <= end_date)
                .order_by(models.Analytics.date.asc())
                .all()
            )
            return [_analytics_record(row) for row in rows]

    # -------------------------------------------------------------------------
    # Aggregation support
    # -------------------------------------------------------------------------

    def snapshot(self) -> StoreSnapshot:
        with self._session() as db:
            messages = [
                _message_record(row)
                for row in db.query(models.Message)
                .order_by(models.Message.timestamp.asc(), models.Message.seq.asc())
                .all()
            ]
            conversations = [_conversation_record(row) for row in db.query(models.Conversation).all()]
            return StoreSnapshot(messages=messages, conversations=conversations)


def build_storage(database_url: str) -> Storage:
    """Create the storage for a database URL; init() is left to the caller."""
    logger.debug(f"Building storage for URL: {database_url}")
    return SqlAlchemyStorage(create_db_engine(database_url))
