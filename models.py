from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.sql import func

from database import Base


class User(Base):
    """Account record: credentials, display name and last-seen time"""
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(32), unique=True, index=True, nullable=False)
    password_hash = Column(String(256), nullable=False)  # pbkdf2_sha256$iters$salt$hex
    display_name = Column(String(64), nullable=False)
    last_seen = Column(DateTime, nullable=True)
    created_at = Column(DateTime, server_default=func.now())


class Friendship(Base):
    """One directed friend-list entry; the pair is unique so adds are atomic"""
    __tablename__ = "friendships"

    id = Column(Integer, primary_key=True, index=True)
    owner_username = Column(String(32), index=True, nullable=False)
    friend_username = Column(String(32), nullable=False)
    created_at = Column(DateTime, server_default=func.now())

    __table_args__ = (
        UniqueConstraint("owner_username", "friend_username", name="uq_friendship_pair"),
    )


class PendingMessage(Base):
    """Queue for messages to offline users, purged after the retention window"""
    __tablename__ = "pending_messages"

    id = Column(Integer, primary_key=True, index=True)
    from_username = Column(String(32), index=True, nullable=False)
    from_display_name = Column(String(64), nullable=False)
    to_username = Column(String(32), nullable=False)
    kind = Column(String(8), nullable=False)
    body = Column(Text, nullable=True)
    image_payload = Column(Text, nullable=True)
    reply_to = Column(JSON, nullable=True)
    sent_at = Column(String(8), nullable=False)  # HH:MM as shown to users
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_pending_to_username", "to_username"),
        Index("idx_pending_created_at", "created_at"),
    )


class ArchivedMessage(Base):
    """Permanent copy of every sent message; never read for delivery"""
    __tablename__ = "archived_messages"

    id = Column(Integer, primary_key=True, index=True)
    from_username = Column(String(32), index=True, nullable=False)
    from_display_name = Column(String(64), nullable=False)
    to_username = Column(String(32), index=True, nullable=False)
    kind = Column(String(8), nullable=False)
    body = Column(Text, nullable=True)
    image_payload = Column(Text, nullable=True)
    reply_to = Column(JSON, nullable=True)
    sent_at = Column(String(8), nullable=False)
    created_at = Column(DateTime, nullable=False)


class PushSubscription(Base):
    """Opaque push endpoint registered by a user's browser"""
    __tablename__ = "push_subscriptions"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(32), unique=True, index=True, nullable=False)
    endpoint = Column(JSON, nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
