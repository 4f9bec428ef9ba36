"""
keygate.database.models — SQLAlchemy 2.0 Data Models
=====================================================

Tables:
- access_grants  — One time-bounded access grant per user
- funnel_states  — Guided key-intake dialogue, one open row per user
- stored_keys    — Submitted API keys, unique per (user, key)
- admin_log      — Append-only audit trail of admin mutations
- known_users    — Display-name cache for admin listings
- notices        — Dedupe ledger for courtesy reminders
"""

from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all KeyGate ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class FunnelStep(enum.StrEnum):
    """Ordered steps of the key-intake funnel."""
    CATEGORY = "category"
    GEOGRAPHY = "geography"
    SOURCE = "source"
    PRICE = "price"
    KEY = "key"


class Category(enum.StrEnum):
    """Advertising verticals offered at the first funnel step."""
    GAMBLING = "Gambling"
    FINANCE = "Finance"
    CRYPTO = "Crypto"
    NUTRA = "Nutra"
    DATING = "Dating"
    ECOMMERCE = "Ecommerce"
    OTHER = "Other"


class SourcePlatform(enum.StrEnum):
    """Ad platforms a key can belong to."""
    META = "Meta"
    TIKTOK = "TikTok"
    GOOGLE = "Google"
    OTHER = "Other"


class AdminActionType(enum.StrEnum):
    """Categories of admin mutations recorded in admin_log."""
    GRANT = "GRANT"
    EXTEND = "EXTEND"
    DEACTIVATE = "DEACTIVATE"


class NoticeKind(enum.StrEnum):
    """Courtesy reminders that must be sent at most once per reference."""
    EXPIRE_3DAYS = "expire_3days"
    EXPIRE_1DAY = "expire_1day"
    STALE_FUNNEL = "stale_funnel"


# ---------------------------------------------------------------------------
# AccessGrant — one row per non-admin user
# ---------------------------------------------------------------------------
class AccessGrant(Base):
    """Time-bounded access.  Valid iff ``is_active and expires_at > now``.

    Re-granting updates this row; rows are never deleted so the audit
    trail in ``admin_log`` always has something to point at.
    """
    __tablename__ = "access_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False, unique=True)
    granted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    granted_by: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, default=None)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_access_grants_active_expires", "is_active", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<AccessGrant user={self.user_id} active={self.is_active} "
            f"expires={self.expires_at}>"
        )


# ---------------------------------------------------------------------------
# FunnelState — guided dialogue progress
# ---------------------------------------------------------------------------
class FunnelState(Base):
    """One row per funnel run.  At most one open (``not is_completed``)
    row per user, enforced by a partial unique index.
    """
    __tablename__ = "funnel_states"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    category: Mapped[str | None] = mapped_column(String(50), default=None)
    geography: Mapped[str | None] = mapped_column(String(100), default=None)
    source_platform: Mapped[str | None] = mapped_column(String(50), default=None)
    conversion_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), default=None)
    submitted_key: Mapped[str | None] = mapped_column(Text, default=None)
    current_step: Mapped[str] = mapped_column(
        String(20), nullable=False, default=FunnelStep.CATEGORY.value
    )
    is_completed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Transport message id of the last applied input (retry idempotence)
    last_input_id: Mapped[str | None] = mapped_column(String(100), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "uq_funnel_states_open_user",
            "user_id",
            unique=True,
            postgresql_where=text("NOT is_completed"),
            sqlite_where=text("NOT is_completed"),
        ),
        Index("ix_funnel_states_user_created", "user_id", "created_at"),
        Index("ix_funnel_states_open_updated", "is_completed", "updated_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<FunnelState id={self.id} user={self.user_id} "
            f"step={self.current_step!r} done={self.is_completed}>"
        )


# ---------------------------------------------------------------------------
# StoredKey — submitted secrets, append-only
# ---------------------------------------------------------------------------
class StoredKey(Base):
    __tablename__ = "stored_keys"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    key_text: Mapped[str] = mapped_column(Text, nullable=False)
    source_platform: Mapped[str] = mapped_column(String(50), nullable=False)
    # JSON snapshot of category / geography / price at submission time
    metadata_: Mapped[str] = mapped_column("metadata", Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_id", "key_text", name="uq_stored_keys_user_key"),
        Index("ix_stored_keys_platform", "source_platform"),
    )

    def __repr__(self) -> str:
        return (
            f"<StoredKey id={self.id} user={self.user_id} "
            f"platform={self.source_platform!r}>"
        )


# ---------------------------------------------------------------------------
# AdminLog — append-only audit trail
# ---------------------------------------------------------------------------
class AdminLog(Base):
    __tablename__ = "admin_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    actor_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)
    target_user_id: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    before_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    after_snapshot: Mapped[dict | None] = mapped_column(JSONB, nullable=True)
    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_admin_log_actor_time", "actor_id", "timestamp"),
        Index("ix_admin_log_target_time", "target_user_id", "timestamp"),
    )

    def __repr__(self) -> str:
        return f"<AdminLog id={self.id} actor={self.actor_id} action={self.action_type}>"


# ---------------------------------------------------------------------------
# KnownUser — display-name cache (never used for access decisions)
# ---------------------------------------------------------------------------
class KnownUser(Base):
    __tablename__ = "known_users"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    first_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    last_seen_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    def __repr__(self) -> str:
        return f"<KnownUser id={self.id} name={self.display_name!r}>"


# ---------------------------------------------------------------------------
# Notice — one courtesy reminder per (user, kind, reference)
# ---------------------------------------------------------------------------
class Notice(Base):
    __tablename__ = "notices"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    reference: Mapped[str] = mapped_column(String(100), nullable=False)
    sent_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("user_id", "kind", "reference", name="uq_notices_user_kind_ref"),
    )

    def __repr__(self) -> str:
        return f"<Notice user={self.user_id} kind={self.kind!r} ref={self.reference!r}>"
