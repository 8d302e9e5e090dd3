"""
Connection model for linked advertising accounts.

Stores OAuth tokens (encrypted) for:
- Meta (Facebook/Instagram) Ads
- Google Ads
- TikTok Ads
"""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from adconnect.core.clock import utcnow
from adconnect.core.database import Base
from adconnect.core.enums import Platform


class Connection(Base):
    """
    Linked ad platform account.

    A user may connect several accounts per platform, up to the plan quota.
    OAuth tokens are encrypted at rest; rows are soft deleted.
    """

    __tablename__ = "connections"

    # Primary key
    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid4()),
    )

    user_id: Mapped[str] = mapped_column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Platform and account identification
    platform: Mapped[Platform] = mapped_column(
        Enum(
            Platform,
            name="ad_platform",
            values_callable=lambda e: [member.value for member in e],
        ),
        nullable=False,
    )
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    account_name: Mapped[str] = mapped_column(String(255), default="")

    # OAuth tokens (ciphertext)
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
    )

    # Indexes and constraints
    __table_args__ = (
        UniqueConstraint(
            "user_id", "platform", "account_id",
            name="uq_connection_user_platform_account",
        ),
        Index("ix_connections_user_platform_active", "user_id", "platform", "is_active"),
        Index("ix_connections_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Connection {self.platform.value}:{self.account_id} ({self.id})>"
