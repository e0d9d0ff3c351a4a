"""User persistence with a child span and query metrics per operation."""

import time
from collections.abc import AsyncIterator
from contextlib import AbstractContextManager, asynccontextmanager
from datetime import datetime, timezone

import aiosqlite

from otelapi.adapters.storage.database import Database
from otelapi.core.errors import EmailAlreadyExistsError, UserNotFoundError
from otelapi.core.models import NewUser, User, UserChanges
from otelapi.telemetry.tracing import SpanEmitter, SpanHandle

TABLE = "users"

_COLUMNS = "id, name, email, bio, created_at, updated_at"
_SELECT_PAGE = f"SELECT {_COLUMNS} FROM users ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
_SELECT_BY_ID = f"SELECT {_COLUMNS} FROM users WHERE id = ?"
_SELECT_BY_EMAIL = f"SELECT {_COLUMNS} FROM users WHERE email = ?"
_INSERT = "INSERT INTO users (name, email, bio, created_at, updated_at) VALUES (?, ?, ?, ?, ?)"
_DELETE = "DELETE FROM users WHERE id = ?"
_COUNT = "SELECT COUNT(*) FROM users"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _parse_timestamp(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _row_to_user(row: aiosqlite.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        bio=row["bio"] or "",
        created_at=_parse_timestamp(row["created_at"]),
        updated_at=_parse_timestamp(row["updated_at"]),
    )


class UserRepository:
    """CRUD access to the ``users`` table.

    Every public method opens a ``UserRepository.<Op>`` span tagged with
    ``db.operation``/``db.table`` and records each statement through
    ``Database.record_query_metrics``.
    """

    def __init__(self, database: Database, spans: SpanEmitter | None = None) -> None:
        self._db = database
        self._spans = spans if spans is not None else SpanEmitter()

    @asynccontextmanager
    async def _query(self, operation: str) -> AsyncIterator[aiosqlite.Connection]:
        start = time.perf_counter()
        error: BaseException | None = None
        try:
            async with self._db.connection() as conn:
                yield conn
        except Exception as exc:
            error = exc
            raise
        finally:
            self._db.record_query_metrics(operation, TABLE, time.perf_counter() - start, error)

    def _span(
        self, name: str, operation: str, **attributes: object
    ) -> AbstractContextManager[SpanHandle]:
        return self._spans.start_span(
            f"UserRepository.{name}",
            attributes={"db.operation": operation, "db.table": TABLE, **attributes},
        )

    async def get_all(self, limit: int, offset: int) -> list[User]:
        with self._span(
            "GetAll", "SELECT", **{"pagination.limit": limit, "pagination.offset": offset}
        ) as span:
            rows = await self._fetch_all(span, "SELECT", _SELECT_PAGE, (limit, offset))
            users = [_row_to_user(row) for row in rows]
            span.set_attributes({"result.count": len(users), "db.query.success": True})
            return users

    async def get_by_id(self, user_id: int) -> User:
        """Fetch one user.

        Raises:
            UserNotFoundError: No row has this id.
        """
        with self._span("GetByID", "SELECT", **{"user.id": user_id}) as span:
            user = await self._fetch_one_user(span, _SELECT_BY_ID, (user_id,))
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def get_by_email(self, email: str) -> User | None:
        with self._span("GetByEmail", "SELECT", **{"user.email": email}) as span:
            return await self._fetch_one_user(span, _SELECT_BY_EMAIL, (email,))

    async def create(self, new_user: NewUser) -> User:
        """Insert a user and return the stored row.

        Raises:
            EmailAlreadyExistsError: The e-mail address is already taken.
        """
        with self._span(
            "Create", "INSERT", **{"user.name": new_user.name, "user.email": new_user.email}
        ) as span:
            now = _now()
            params = (new_user.name, new_user.email, new_user.bio, now, now)
            user_id = await self._execute(span, "INSERT", _INSERT, params, email=new_user.email)
            span.set_attributes({"user.id": user_id, "db.query.success": True})
            return await self.get_by_id(user_id)

    async def update(self, user_id: int, changes: UserChanges) -> User:
        """Apply a partial update; an empty change set returns the row as is.

        Raises:
            UserNotFoundError: No row has this id.
            EmailAlreadyExistsError: The new e-mail address is already taken.
        """
        with self._span("Update", "UPDATE", **{"user.id": user_id}) as span:
            existing = await self.get_by_id(user_id)
            columns = changes.as_columns()
            if not columns:
                span.set_attribute("user.no_changes", True)
                return existing
            span.set_attributes({f"user.{name}": value for name, value in columns.items()})

            assignments = ", ".join(f"{name} = ?" for name in columns)
            statement = f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?"
            params = (*columns.values(), _now(), user_id)
            await self._execute(span, "UPDATE", statement, params, email=changes.email)
            span.set_attribute("db.query.success", True)
            return await self.get_by_id(user_id)

    async def delete(self, user_id: int) -> None:
        """Delete a user.

        Raises:
            UserNotFoundError: No row has this id.
        """
        with self._span("Delete", "DELETE", **{"user.id": user_id}) as span:
            await self.get_by_id(user_id)
            await self._execute(span, "DELETE", _DELETE, (user_id,))
            span.set_attributes({"user.deleted": True, "db.query.success": True})

    async def count(self) -> int:
        with self._span("Count", "SELECT") as span:
            rows = await self._fetch_all(span, "SELECT", _COUNT, ())
            total = int(rows[0][0]) if rows else 0
            span.set_attributes({"result.count": total, "db.query.success": True})
            return total

    async def _fetch_all(
        self, span: SpanHandle, operation: str, statement: str, params: tuple[object, ...]
    ) -> list[aiosqlite.Row]:
        try:
            async with self._query(operation) as conn:
                async with conn.execute(statement, params) as cursor:
                    return list(await cursor.fetchall())
        except Exception:
            span.set_attribute("db.query.success", False)
            raise

    async def _fetch_one_user(
        self, span: SpanHandle, statement: str, params: tuple[object, ...]
    ) -> User | None:
        rows = await self._fetch_all(span, "SELECT", statement, params)
        found = bool(rows)
        span.set_attributes({"user.found": found, "db.query.success": True})
        return _row_to_user(rows[0]) if found else None

    async def _execute(
        self,
        span: SpanHandle,
        operation: str,
        statement: str,
        params: tuple[object, ...],
        email: str | None = None,
    ) -> int:
        """Run a write statement and commit; returns the last inserted row id."""
        try:
            async with self._query(operation) as conn:
                async with conn.execute(statement, params) as cursor:
                    row_id = cursor.lastrowid
                await conn.commit()
                return row_id or 0
        except aiosqlite.IntegrityError as exc:
            span.set_attribute("db.query.success", False)
            if email is not None and "users.email" in str(exc):
                raise EmailAlreadyExistsError(f"email already exists: {email}") from exc
            raise
        except Exception:
            span.set_attribute("db.query.success", False)
            raise
