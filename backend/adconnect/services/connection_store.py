"""
Connection Store

Persistence of linked ad accounts with encrypted credentials.

Features:
- Per-plan, per-platform quota on active connections
- Idempotent reconnection of an already linked account
- Soft delete only; lookups see active rows
- Tokens encrypted on write and decrypted on read
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional, Tuple

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from adconnect.config import settings
from adconnect.core.clock import as_utc, utcnow
from adconnect.core.database import session_scope
from adconnect.core.enums import PlanTier, Platform
from adconnect.core.errors import QuotaExceededError, UserNotFoundError
from adconnect.core.security import TokenCipher, get_cipher
from adconnect.models import Connection, User
from adconnect.schemas import (
    ConnectionCreate,
    ConnectionLimits,
    ConnectionRecord,
    ConnectionUpdate,
)

logger = structlog.get_logger()

TOKEN_FIELDS = ("access_token", "refresh_token")
REQUIRED_FIELDS = ("access_token", "account_name", "is_active")


class ConnectionStore:
    """Connection persistence scoped to the owning user."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: Optional[TokenCipher] = None,
        plan_limits: Optional[Dict[str, int]] = None,
    ):
        self.session_factory = session_factory
        self.cipher = cipher or get_cipher()
        self.plan_limits = plan_limits or settings.plan_connection_limits
        # Serializes quota check and insert per (user, platform) in this process.
        # Each entry is [lock, holders] and is dropped when the last holder leaves.
        self._create_locks: Dict[Tuple[str, Platform], list] = {}

    # =========================================================================
    # Helpers
    # =========================================================================

    @asynccontextmanager
    async def _create_lock(self, key: Tuple[str, Platform]) -> AsyncIterator[None]:
        entry = self._create_locks.setdefault(key, [asyncio.Lock(), 0])
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._create_locks[key]

    def limit_for(self, plan: PlanTier) -> int:
        return self.plan_limits.get(plan.value, self.plan_limits.get(PlanTier.FREE.value, 1))

    def _to_record(self, row: Connection) -> ConnectionRecord:
        return ConnectionRecord(
            id=row.id,
            user_id=row.user_id,
            platform=row.platform,
            account_id=row.account_id,
            account_name=row.account_name or "",
            access_token=self.cipher.decrypt(row.access_token),
            refresh_token=self.cipher.decrypt(row.refresh_token),
            expires_at=as_utc(row.expires_at),
            is_active=row.is_active,
            created_at=as_utc(row.created_at),
            updated_at=as_utc(row.updated_at),
        )

    def _encrypt_optional(self, value: Optional[str]) -> Optional[str]:
        return self.cipher.encrypt(value) if value else None

    async def _count(
        self, db: AsyncSession, user_id: str, platform: Optional[Platform] = None
    ) -> int:
        query = select(func.count(Connection.id)).where(
            Connection.user_id == user_id,
            Connection.is_active.is_(True),
        )
        if platform is not None:
            query = query.where(Connection.platform == Platform(platform))
        result = await db.execute(query)
        return result.scalar() or 0

    async def _check_quota(self, db: AsyncSession, user: User, platform: Platform) -> None:
        limit = self.limit_for(user.plan)
        current = await self._count(db, user.id, platform)
        if current >= limit:
            logger.warning(
                "connection_quota_exceeded",
                user_id=user.id,
                platform=platform.value,
                plan=user.plan.value,
                limit=limit,
                current=current,
            )
            raise QuotaExceededError(profile=user.plan.value, limit=limit, current=current)

    # =========================================================================
    # Quota
    # =========================================================================

    async def count_active(self, user_id: str, platform: Optional[Platform] = None) -> int:
        """Number of active connections, optionally for one platform."""
        async with self.session_factory() as db:
            return await self._count(db, user_id, platform)

    async def can_add(self, user_id: str, platform: Platform) -> bool:
        """Whether the user's plan allows one more connection on ``platform``."""
        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                return False
            return await self._count(db, user_id, platform) < self.limit_for(user.plan)

    async def limits(
        self, user_id: str, platform: Optional[Platform] = None
    ) -> Optional[ConnectionLimits]:
        """
        Quota usage for a user.

        Without a platform, ``current`` counts every platform and ``max`` is
        the per-platform quota times the number of platforms.
        """
        async with self.session_factory() as db:
            user = await db.get(User, user_id)
            if user is None:
                return None

            per_platform = self.limit_for(user.plan)
            current = await self._count(db, user_id, platform)

        maximum = per_platform if platform is not None else per_platform * len(Platform)
        return ConnectionLimits(
            current=current,
            max=maximum,
            profile=user.plan,
            remaining=max(0, maximum - current),
        )

    async def stats(self, user_id: str) -> Dict[Platform, int]:
        """Active connection count per platform (every platform present)."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Connection.platform, func.count(Connection.id))
                .where(
                    Connection.user_id == user_id,
                    Connection.is_active.is_(True),
                )
                .group_by(Connection.platform)
            )
            counts = {Platform(row[0]): row[1] for row in result.all()}

        return {platform: counts.get(platform, 0) for platform in Platform}

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, data: ConnectionCreate) -> ConnectionRecord:
        """
        Link an account, or refresh the credentials of an existing link.

        An active row for the same (user, platform, account) is updated in
        place without a quota check. An inactive one is reactivated, and a new
        row inserted, only while the plan quota allows.

        Raises:
            UserNotFoundError: If the user does not exist
            QuotaExceededError: If the plan limit is reached
        """
        record, _ = await self.upsert(data)
        return record

    async def upsert(self, data: ConnectionCreate) -> Tuple[ConnectionRecord, bool]:
        """
        Same as ``create``, also reporting whether an existing row was reused.

        Returns:
            Tuple of (connection, replaced). ``replaced`` is True when the
            credentials of an active or previously deactivated row were
            overwritten.
        """
        platform = Platform(data.platform)

        async with self._create_lock((data.user_id, platform)):
            record, event = await self._create(data, platform)

        logger.info(
            event,
            connection_id=record.id,
            user_id=record.user_id,
            platform=platform.value,
            account_id=record.account_id,
        )
        return record, event != "connection_created"

    async def _create(
        self, data: ConnectionCreate, platform: Platform
    ) -> Tuple[ConnectionRecord, str]:
        async with session_scope(self.session_factory) as db:
            # Row lock on the user serializes creates across processes (PostgreSQL)
            result = await db.execute(
                select(User).where(User.id == data.user_id).with_for_update()
            )
            user = result.scalar_one_or_none()
            if user is None:
                raise UserNotFoundError(data.user_id)

            result = await db.execute(
                select(Connection).where(
                    Connection.user_id == data.user_id,
                    Connection.platform == platform,
                    Connection.account_id == data.account_id,
                )
            )
            row = result.scalar_one_or_none()

            if row is not None and row.is_active:
                row.access_token = self.cipher.encrypt(data.access_token)
                # Providers often omit the refresh token on re-consent
                if data.refresh_token:
                    row.refresh_token = self.cipher.encrypt(data.refresh_token)
                row.expires_at = data.expires_at
                if data.account_name:
                    row.account_name = data.account_name
                row.updated_at = utcnow()
                event = "connection_updated"

            else:
                await self._check_quota(db, user, platform)

                if row is not None:
                    row.access_token = self.cipher.encrypt(data.access_token)
                    row.refresh_token = self._encrypt_optional(data.refresh_token)
                    row.expires_at = data.expires_at
                    row.account_name = data.account_name or row.account_name
                    row.is_active = True
                    row.updated_at = utcnow()
                    event = "connection_reactivated"
                else:
                    row = Connection(
                        user_id=data.user_id,
                        platform=platform,
                        account_id=data.account_id,
                        account_name=data.account_name,
                        access_token=self.cipher.encrypt(data.access_token),
                        refresh_token=self._encrypt_optional(data.refresh_token),
                        expires_at=data.expires_at,
                        is_active=True,
                    )
                    db.add(row)
                    event = "connection_created"

            await db.flush()
            record = self._to_record(row)

        return record, event

    async def update(
        self, connection_id: str, partial: ConnectionUpdate
    ) -> Optional[ConnectionRecord]:
        """
        Write the fields explicitly set on ``partial``.

        Token fields are re-encrypted; an explicit ``refresh_token=None``
        clears the stored refresh token.

        Returns:
            Updated connection, or None if it does not exist
        """
        changes = partial.model_dump(exclude_unset=True)

        async with session_scope(self.session_factory) as db:
            row = await db.get(Connection, connection_id)
            if row is None:
                return None

            for name, value in changes.items():
                if name in TOKEN_FIELDS:
                    value = self._encrypt_optional(value)
                if value is None and name in REQUIRED_FIELDS:
                    continue
                setattr(row, name, value)
            row.updated_at = utcnow()

            await db.flush()
            record = self._to_record(row)

        logger.info(
            "connection_fields_updated",
            connection_id=connection_id,
            fields=sorted(changes),
        )
        return record

    async def delete(self, user_id: str, connection_id: str) -> bool:
        """
        Soft delete a connection owned by ``user_id``.

        Returns:
            True if an active connection was deactivated
        """
        async with session_scope(self.session_factory) as db:
            result = await db.execute(
                update(Connection)
                .where(
                    Connection.id == connection_id,
                    Connection.user_id == user_id,
                    Connection.is_active.is_(True),
                )
                .values(is_active=False, updated_at=utcnow())
            )
            deleted = result.rowcount > 0

        if deleted:
            logger.info("connection_deactivated", connection_id=connection_id, user_id=user_id)
        return deleted

    # =========================================================================
    # Reads
    # =========================================================================

    async def get(self, user_id: str, connection_id: str) -> Optional[ConnectionRecord]:
        """Active connection by id, scoped to its owner."""
        async with self.session_factory() as db:
            result = await db.execute(
                select(Connection).where(
                    Connection.id == connection_id,
                    Connection.user_id == user_id,
                    Connection.is_active.is_(True),
                )
            )
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def get_by_account(
        self, user_id: str, platform: Platform, account_id: str
    ) -> Optional[ConnectionRecord]:
        async with self.session_factory() as db:
            result = await db.execute(
                select(Connection).where(
                    Connection.user_id == user_id,
                    Connection.platform == Platform(platform),
                    Connection.account_id == account_id,
                    Connection.is_active.is_(True),
                )
            )
            row = result.scalar_one_or_none()
            return self._to_record(row) if row else None

    async def list(
        self, user_id: str, platform: Optional[Platform] = None
    ) -> List[ConnectionRecord]:
        """Active connections, newest first."""
        query = select(Connection).where(
            Connection.user_id == user_id,
            Connection.is_active.is_(True),
        )
        if platform is not None:
            query = query.where(Connection.platform == Platform(platform))
        query = query.order_by(Connection.created_at.desc())

        async with self.session_factory() as db:
            result = await db.execute(query)
            return [self._to_record(row) for row in result.scalars().all()]
