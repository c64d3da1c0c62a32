"""Database repository for identity/account data."""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Iterator

import psycopg
from psycopg import Connection, errors, sql
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool

from .domain.account import Account, AccountRecord, Avatar, ResetState, Role
from .domain.contracts import NewAccount
from .domain.errors import DuplicateEmailError, StoreError

logger = logging.getLogger(__name__)

_COLUMNS = sql.SQL(
    """
    account_id, email, full_name, role, subscription, password_hash,
    avatar_storage_id, avatar_url, reset_token_hash, reset_expires_at,
    created_at, updated_at
    """
)

# Columns a partial update may touch.
_MUTABLE_COLUMNS = frozenset(
    {
        "full_name",
        "subscription",
        "password_hash",
        "avatar_storage_id",
        "avatar_url",
        "reset_token_hash",
        "reset_expires_at",
    }
)


def _parse_account_id(account_id: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(account_id))
    except ValueError:
        return None


class AccountRepository:
    """Postgres-backed account persistence.

    Email uniqueness is enforced by ``accounts_email_key``; every write other
    than :meth:`create_account` is a partial update naming its columns.
    Driver failures surface as ``StoreError``, and an identifier that is not
    a UUID matches no account.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _connection(self) -> Iterator[Connection]:
        try:
            with self._pool.connection() as conn:
                yield conn
        except errors.UniqueViolation:
            raise
        except psycopg.Error as exc:
            logger.error("account store query failed: %s", exc)
            raise StoreError(str(exc)) from exc

    def create_account(self, payload: NewAccount) -> AccountRecord:
        """Insert a new account, raising ``DuplicateEmailError`` on a taken email."""
        account_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc)
        query = sql.SQL(
            """
            INSERT INTO accounts (
                account_id, email, full_name, role, subscription, password_hash,
                avatar_storage_id, avatar_url, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {columns}
            """
        ).format(columns=_COLUMNS)
        try:
            with self._connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        query,
                        (
                            account_id,
                            payload.email,
                            payload.full_name,
                            payload.role.value,
                            Json({}),
                            payload.password_hash,
                            payload.avatar.storage_id,
                            payload.avatar.url,
                            now,
                            now,
                        ),
                    )
                    row = cur.fetchone()
                    conn.commit()
        except errors.UniqueViolation as exc:
            raise DuplicateEmailError(payload.email) from exc
        return self._map_record(row)

    def find_by_email(self, email: str) -> AccountRecord | None:
        """Look an account up by its normalised email."""
        return self._fetch_one(sql.SQL("email = %s"), (email,))

    def get_account(self, account_id: str) -> AccountRecord | None:
        """Fetch an account by identifier or return ``None``."""
        key = _parse_account_id(account_id)
        if key is None:
            return None
        return self._fetch_one(sql.SQL("account_id = %s"), (key,))

    def find_by_reset_token(self, token_hash: str, now: datetime) -> AccountRecord | None:
        """Return the account holding a live reset token with this digest."""
        return self._fetch_one(
            sql.SQL("reset_token_hash = %s AND reset_expires_at > %s"),
            (token_hash, now),
        )

    def consume_reset_token(
        self, token_hash: str, now: datetime, password_hash: str
    ) -> AccountRecord | None:
        """Swap in a new credential and clear reset state in one statement.

        Returns ``None`` when no live token matched, including when a
        concurrent request consumed it first.
        """
        query = sql.SQL(
            """
            UPDATE accounts
            SET password_hash = %s,
                reset_token_hash = NULL,
                reset_expires_at = NULL,
                updated_at = %s
            WHERE reset_token_hash = %s AND reset_expires_at > %s
            RETURNING {columns}
            """
        ).format(columns=_COLUMNS)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, (password_hash, now, token_hash, now))
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def update_reset_state(self, account_id: str, state: ResetState | None) -> None:
        """Set or clear both reset columns together."""
        self.update_fields(
            account_id,
            {
                "reset_token_hash": state.token_hash if state else None,
                "reset_expires_at": state.expires_at if state else None,
            },
        )

    def update_password(self, account_id: str, password_hash: str) -> None:
        self.update_fields(account_id, {"password_hash": password_hash})

    def update_avatar(self, account_id: str, avatar: Avatar) -> bool:
        """Patch only the avatar columns; returns ``False`` if the account is gone."""
        record = self.update_fields(
            account_id,
            {"avatar_storage_id": avatar.storage_id, "avatar_url": avatar.url},
        )
        return record is not None

    def update_fields(self, account_id: str, fields: dict[str, Any]) -> AccountRecord | None:
        """Write only the named columns and bump ``updated_at``."""
        unknown = set(fields) - _MUTABLE_COLUMNS
        if unknown:
            raise ValueError(f"cannot update columns: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        key = _parse_account_id(account_id)
        if key is None:
            return None

        values = [Json(v) if name == "subscription" else v for name, v in fields.items()]
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in fields
        )
        query = sql.SQL(
            """
            UPDATE accounts
            SET {assignments}, updated_at = %s
            WHERE account_id = %s
            RETURNING {columns}
            """
        ).format(assignments=assignments, columns=_COLUMNS)
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, (*values, datetime.now(timezone.utc), key))
                row = cur.fetchone()
                conn.commit()
        return self._map_record(row) if row else None

    def _fetch_one(self, where: sql.Composable, params: tuple) -> AccountRecord | None:
        query = sql.SQL("SELECT {columns} FROM accounts WHERE {where}").format(
            columns=_COLUMNS, where=where
        )
        with self._connection() as conn:
            with conn.cursor(row_factory=tuple_row) as cur:
                cur.execute(query, params)
                row = cur.fetchone()
                if not row:
                    return None
        return self._map_record(row)

    def _map_record(self, row: tuple) -> AccountRecord:
        """Convert a raw database tuple into an ``AccountRecord``."""
        reset_state = None
        if row[8] is not None and row[9] is not None:
            reset_state = ResetState(token_hash=row[8], expires_at=row[9])
        account = Account(
            account_id=str(row[0]),
            email=row[1],
            full_name=row[2],
            role=Role(row[3]),
            subscription=row[4] or {},
            avatar=Avatar(storage_id=row[6], url=row[7]),
            created_at=row[10],
            updated_at=row[11],
        )
        return AccountRecord(account=account, password_hash=row[5], reset_state=reset_state)
