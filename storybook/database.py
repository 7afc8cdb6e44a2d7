from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    event,
    func,
)
from sqlalchemy.orm import DeclarativeBase, relationship, sessionmaker

from . import config

TRANSACTION_TYPES = ("initial_free_credits", "credit_purchase", "story_creation")
TRANSACTION_STATUSES = ("pending", "completed", "failed", "refunded")


def make_engine(url: str = config.DATABASE_URL):
    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})

        @event.listens_for(engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        return engine
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)


engine = make_engine()
SessionLocal = make_session_factory(engine)


class Base(DeclarativeBase):
    pass


class AccountDB(Base):
    __tablename__ = "users"
    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    story_credits = Column(Integer, nullable=False, default=config.FREE_CREDITS)
    is_premium = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    stories = relationship("StoryDB", back_populates="owner", cascade="all, delete-orphan")
    transactions = relationship("CreditTransactionDB", cascade="all, delete-orphan")


class StoryDB(Base):
    __tablename__ = "stories"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    title = Column(String, nullable=False)
    child_name = Column(String, nullable=False)
    child_age = Column(Integer, nullable=False)
    main_character = Column(String, nullable=False)
    characters = Column(JSON, nullable=False)
    theme = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    image_urls = Column(JSON, nullable=False)
    parent_approved = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    owner = relationship("AccountDB", back_populates="stories")
    segments = relationship(
        "StorySegmentDB",
        back_populates="story",
        cascade="all, delete-orphan",
        passive_deletes=True,
        order_by="StorySegmentDB.sequence",
    )


class StorySegmentDB(Base):
    __tablename__ = "story_segments"
    id = Column(Integer, primary_key=True, index=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="CASCADE"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    image_url = Column(String, nullable=False)
    audio_url = Column(String, nullable=False)
    sequence = Column(Integer, nullable=False)
    created_at = Column(DateTime, nullable=False, server_default=func.now())

    story = relationship("StoryDB", back_populates="segments")


class CreditTransactionDB(Base):
    __tablename__ = "credit_transactions"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Integer, nullable=False, default=0)
    credits = Column(Integer, nullable=False)
    transaction_type = Column(String(50), nullable=False)
    status = Column(String(50), nullable=False, default="completed")
    payment_reference = Column(String(255), nullable=True)
    story_id = Column(Integer, ForeignKey("stories.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime, nullable=False, server_default=func.now())


def init_db(bind=None):
    Base.metadata.create_all(bind=bind or engine)
