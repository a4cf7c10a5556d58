"""
Credential store — per (user, platform) OAuth token rows.

Pure state holder: no refresh or import logic lives here.  Every write is a
single SQL statement, so each one is atomic per row without a lock:

* ``upsert``          INSERT … ON CONFLICT (user_id, platform) DO UPDATE
* ``replace_tokens``  UPDATE … WHERE connection_id = ? AND token_version = ?
* ``mark_status``     same compare-and-set guard
* ``delete``          DELETE … RETURNING

The compare-and-set writes return nothing when the row was deleted or
rewritten in the meantime, so a refresh that finishes after a disconnect
cannot bring the connection back.

Each call opens its own short session; no session outlives a call, so
nothing is held open while the caller talks to a platform.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from connectors.encryption import decrypt_token, encrypt_token
from connectors.schemas import (
    ConnectionStatus,
    Platform,
    SocialConnection,
    TokenSet,
    as_utc,
    utcnow,
)
from database.helpers import dialect_insert
from database.models import SocialConnectionRow
from database.session import async_session_factory

logger = logging.getLogger(__name__)

_table = SocialConnectionRow.__table__
_columns = tuple(_table.c)


def _to_connection(row: Any) -> SocialConnection:
    return SocialConnection(
        connection_id=row.connection_id,
        user_id=row.user_id,
        platform=Platform(row.platform),
        access_token=decrypt_token(row.access_token),
        refresh_token=decrypt_token(row.refresh_token) if row.refresh_token else None,
        expires_at=as_utc(row.expires_at),
        platform_user_id=row.platform_user_id or "",
        display_name=row.display_name,
        scopes=list(row.scopes or []),
        token_version=row.token_version,
        status=ConnectionStatus(row.status),
        connected_at=as_utc(row.connected_at),
        last_refreshed_at=as_utc(row.last_refreshed_at),
        last_synced_at=as_utc(row.last_synced_at),
        error_message=row.error_message,
    )


class CredentialStore:
    """Async access to ``social_connections``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] = async_session_factory):
        self._session_factory = session_factory

    # ── Reads ───────────────────────────────────────────────────────────

    async def get(self, user_id: str, platform: Platform) -> Optional[SocialConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(*_columns).where(
                    _table.c.user_id == user_id,
                    _table.c.platform == Platform(platform).value,
                )
            )
            row = result.one_or_none()
        return _to_connection(row) if row else None

    async def list_by_user(self, user_id: str) -> List[SocialConnection]:
        async with self._session_factory() as session:
            result = await session.execute(
                select(*_columns)
                .where(_table.c.user_id == user_id)
                .order_by(_table.c.platform)
            )
            rows = result.all()
        return [_to_connection(r) for r in rows]

    # ── Writes ──────────────────────────────────────────────────────────

    async def upsert(self, connection: SocialConnection) -> SocialConnection:
        """
        Insert or wholly replace the row for (user_id, platform).

        An existing row keeps its ``connection_id`` and ``last_synced_at``;
        its ``token_version`` is bumped so in-flight refreshes lose their CAS.
        """
        values = {
            "connection_id": connection.connection_id,
            "user_id": connection.user_id,
            "platform": connection.platform.value,
            "platform_user_id": connection.platform_user_id,
            "display_name": connection.display_name,
            "access_token": encrypt_token(connection.access_token),
            "refresh_token": encrypt_token(connection.refresh_token),
            "expires_at": connection.expires_at,
            "scopes": list(connection.scopes),
            "token_version": connection.token_version,
            "status": connection.status.value,
            "connected_at": connection.connected_at,
            "last_refreshed_at": connection.last_refreshed_at,
            "error_message": connection.error_message,
        }
        async with self._session_factory() as session:
            try:
                stmt = dialect_insert(session, _table).values(**values)
                replace = {
                    key: stmt.excluded[key]
                    for key in values
                    if key not in ("connection_id", "user_id", "platform", "token_version")
                }
                replace["token_version"] = _table.c.token_version + 1
                stmt = stmt.on_conflict_do_update(
                    index_elements=["user_id", "platform"],
                    set_=replace,
                ).returning(*_columns)
                row = (await session.execute(stmt)).one()
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info("Stored %s connection for user %s", connection.platform.value, connection.user_id)
        return _to_connection(row)

    async def replace_tokens(
        self,
        expected: SocialConnection,
        token_set: TokenSet,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[SocialConnection]:
        """
        Swap in refreshed tokens if the row is still the one ``expected``
        was read from.  Returns the new snapshot or ``None`` on a lost race.

        A missing refresh token in ``token_set`` keeps the stored one;
        platforms that rotate refresh tokens send a new one.
        """
        now = now or utcnow()
        refresh = token_set.refresh_token or expected.refresh_token
        stmt = (
            update(_table)
            .where(
                _table.c.connection_id == expected.connection_id,
                _table.c.token_version == expected.token_version,
            )
            .values(
                access_token=encrypt_token(token_set.access_token),
                refresh_token=encrypt_token(refresh),
                expires_at=token_set.expires_at(now),
                status=ConnectionStatus.ACTIVE.value,
                last_refreshed_at=now,
                error_message=None,
                token_version=_table.c.token_version + 1,
            )
            .returning(*_columns)
        )
        if token_set.scopes:
            stmt = stmt.values(scopes=list(token_set.scopes))
        return await self._conditional_write(stmt)

    async def mark_status(
        self,
        expected: SocialConnection,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
    ) -> Optional[SocialConnection]:
        """
        Set ``status`` under the same compare-and-set guard.

        Bumps ``token_version`` too, so a refresh that read the row before
        the demotion cannot flip it back to active.
        """
        stmt = (
            update(_table)
            .where(
                _table.c.connection_id == expected.connection_id,
                _table.c.token_version == expected.token_version,
            )
            .values(
                status=status.value,
                error_message=error_message,
                token_version=_table.c.token_version + 1,
            )
            .returning(*_columns)
        )
        updated = await self._conditional_write(stmt)
        if updated:
            logger.info(
                "%s connection for user %s marked %s",
                expected.platform.value,
                expected.user_id,
                status.value,
            )
        return updated

    async def touch_last_synced(self, user_id: str, platform: Platform) -> None:
        async with self._session_factory() as session:
            await session.execute(
                update(_table)
                .where(
                    _table.c.user_id == user_id,
                    _table.c.platform == Platform(platform).value,
                )
                .values(last_synced_at=utcnow())
            )
            await session.commit()

    async def delete(self, user_id: str, platform: Platform) -> Optional[SocialConnection]:
        """Delete the row; returns what was deleted, or ``None``."""
        stmt = (
            delete(_table)
            .where(
                _table.c.user_id == user_id,
                _table.c.platform == Platform(platform).value,
            )
            .returning(*_columns)
        )
        return await self._conditional_write(stmt)

    async def _conditional_write(self, stmt) -> Optional[SocialConnection]:
        async with self._session_factory() as session:
            try:
                row = (await session.execute(stmt)).one_or_none()
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return _to_connection(row) if row else None
