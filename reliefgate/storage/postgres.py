from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional, Sequence, Set, Tuple

from psycopg import Connection, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from reliefgate.logging import get_logger
from reliefgate.storage.errors import ConstraintViolation, StoreUnavailable
from reliefgate.storage.models import (
    BackupCode,
    OtpAttempt,
    OtpCode,
    PasswordResetToken,
    RefreshToken,
    User,
)

_USER_COLUMNS = {
    "name",
    "auth_provider",
    "auth_provider_id",
    "password_hash",
    "photo_url",
    "is_blacklisted",
    "two_factor_enabled",
    "backup_codes_remaining",
    "two_factor_last_used",
}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL DEFAULT '',
        auth_provider TEXT NOT NULL DEFAULT 'email',
        auth_provider_id TEXT,
        password_hash TEXT,
        photo_url TEXT,
        is_blacklisted BOOLEAN NOT NULL DEFAULT false,
        two_factor_enabled BOOLEAN NOT NULL DEFAULT false,
        backup_codes_remaining INTEGER NOT NULL DEFAULT 0,
        two_factor_last_used TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (auth_provider, auth_provider_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_role (
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        role TEXT NOT NULL,
        PRIMARY KEY (user_id, role)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS otp_code (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code TEXT NOT NULL,
        code_type TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used_at TIMESTAMPTZ,
        attempt_count INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_code_user_type_idx ON otp_code (user_id, code_type)",
    """
    CREATE TABLE IF NOT EXISTS otp_attempt (
        id UUID PRIMARY KEY,
        user_id UUID,
        ip_address TEXT NOT NULL,
        email TEXT,
        attempt_type TEXT NOT NULL,
        attempted_at TIMESTAMPTZ NOT NULL,
        success BOOLEAN NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS otp_attempt_time_idx ON otp_attempt (attempted_at)",
    """
    CREATE TABLE IF NOT EXISTS backup_code (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        code_hash TEXT NOT NULL,
        used_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS password_reset_token (
        id UUID PRIMARY KEY,
        token TEXT NOT NULL UNIQUE,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        is_used BOOLEAN NOT NULL DEFAULT false,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
]

_REQUIRED_TABLES = [
    "app_user",
    "user_role",
    "otp_code",
    "otp_attempt",
    "backup_code",
    "refresh_token",
    "password_reset_token",
]


def _user_unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    if "auth_provider" in constraint:
        return ConstraintViolation(
            "provider identity already linked", {"field": "auth_provider_id"}
        )
    return ConstraintViolation("email already exists", {"field": "email"})


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name") or "",
        auth_provider=row.get("auth_provider") or "email",
        auth_provider_id=row.get("auth_provider_id"),
        password_hash=row.get("password_hash"),
        photo_url=row.get("photo_url"),
        is_blacklisted=bool(row.get("is_blacklisted")),
        two_factor_enabled=bool(row.get("two_factor_enabled")),
        backup_codes_remaining=row.get("backup_codes_remaining") or 0,
        two_factor_last_used=row.get("two_factor_last_used"),
        created_at=row["created_at"],
    )


def _otp_from_row(row: dict) -> OtpCode:
    return OtpCode(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        code=row["code"],
        code_type=row["code_type"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
        used_at=row.get("used_at"),
        attempt_count=row.get("attempt_count") or 0,
    )


def _refresh_from_row(row: dict) -> RefreshToken:
    return RefreshToken(
        id=str(row["id"]),
        token=row["token"],
        user_id=str(row["user_id"]),
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed credential store.

    Each public method runs in its own pooled connection; leaving the
    ``with`` block commits, an exception rolls back. Terminal-state changes
    are single conditional statements so concurrent workers cannot both win.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()
        self._verify_required_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            raise StoreUnavailable("postgres pool exhausted") from exc
        except errors.OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StoreUnavailable("postgres unavailable") from exc

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def _ensure_schema(self) -> None:
        """Create the credential tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)
        if missing_tables:
            raise RuntimeError(
                "Missing required Postgres tables: {}".format(", ".join(sorted(missing_tables)))
            )

    # users
    def create_user(
        self,
        email: str,
        name: str = "",
        *,
        auth_provider: str = "email",
        auth_provider_id: Optional[str] = None,
        password_hash: Optional[str] = None,
        photo_url: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, auth_provider, auth_provider_id, password_hash, photo_url, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, COALESCE(%s, now()))
                    RETURNING *
                    """,
                    (
                        user_id,
                        email.strip().lower(),
                        name,
                        auth_provider,
                        auth_provider_id,
                        password_hash,
                        photo_url,
                        now,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _user_unique_violation(exc) from exc
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE email = %s", (email.strip().lower(),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_provider(self, provider: str, provider_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE auth_provider = %s AND auth_provider_id = %s",
                (provider, provider_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def update_user(self, user_id: str, **fields) -> Optional[User]:
        unknown = set(fields) - _USER_COLUMNS
        if unknown:
            raise ValueError(f"unsupported user fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        assignments = ", ".join(f"{column} = %s" for column in fields)
        params: List[Any] = list(fields.values())
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE app_user SET {assignments} WHERE id = %s RETURNING *",
                    params,
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _user_unique_violation(exc) from exc
        return _user_from_row(row) if row else None

    def set_password_hash(self, user_id: str, password_hash: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s RETURNING id",
                (password_hash, user_id),
            ).fetchone()
        return row is not None

    # roles
    def assign_role(self, user_id: str, role: str) -> None:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO user_role (user_id, role) VALUES (%s, %s)
                    ON CONFLICT (user_id, role) DO NOTHING
                    """,
                    (user_id, role),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc

    def list_roles(self, user_id: str) -> Set[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT role FROM user_role WHERE user_id = %s", (user_id,)
            ).fetchall()
        return {row["role"] for row in rows}

    # attempt ledger
    def add_otp_attempt(self, attempt: OtpAttempt) -> OtpAttempt:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO otp_attempt (id, user_id, ip_address, email, attempt_type, attempted_at, success)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    attempt.id,
                    attempt.user_id,
                    attempt.ip_address,
                    attempt.email,
                    attempt.attempt_type,
                    attempt.attempted_at,
                    attempt.success,
                ),
            )
        return attempt

    @staticmethod
    def _attempt_filter(
        *,
        since: datetime,
        user_id: Optional[str],
        ip_address: Optional[str],
        email: Optional[str],
        attempt_type: Optional[str],
        success: Optional[bool],
    ) -> Tuple[str, List[Any]]:
        clauses = ["attempted_at >= %s"]
        params: List[Any] = [since]
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if ip_address is not None:
            clauses.append("ip_address = %s")
            params.append(ip_address)
        if email is not None:
            clauses.append("email = %s")
            params.append(email.lower())
        if attempt_type is not None:
            clauses.append("attempt_type = %s")
            params.append(attempt_type)
        if success is not None:
            clauses.append("success = %s")
            params.append(success)
        return " AND ".join(clauses), params

    def count_otp_attempts(
        self,
        *,
        since: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
        attempt_type: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> int:
        where, params = self._attempt_filter(
            since=since,
            user_id=user_id,
            ip_address=ip_address,
            email=email,
            attempt_type=attempt_type,
            success=success,
        )
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT COUNT(*) AS total FROM otp_attempt WHERE {where}", params
            ).fetchone()
        return int(row["total"]) if row else 0

    def otp_attempt_bounds(
        self,
        *,
        since: datetime,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        email: Optional[str] = None,
        attempt_type: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> Tuple[Optional[datetime], Optional[datetime]]:
        where, params = self._attempt_filter(
            since=since,
            user_id=user_id,
            ip_address=ip_address,
            email=email,
            attempt_type=attempt_type,
            success=success,
        )
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT MIN(attempted_at) AS oldest, MAX(attempted_at) AS newest FROM otp_attempt WHERE {where}",
                params,
            ).fetchone()
        if not row:
            return None, None
        return row.get("oldest"), row.get("newest")

    def purge_otp_attempts(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM otp_attempt WHERE attempted_at < %s", (cutoff,))
            return cur.rowcount

    # otp codes
    def add_otp_code(self, code: OtpCode) -> OtpCode:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO otp_code (id, user_id, code, code_type, expires_at, used_at, attempt_count, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        code.id,
                        code.user_id,
                        code.code,
                        code.code_type,
                        code.expires_at,
                        code.used_at,
                        code.attempt_count,
                        code.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": code.user_id}) from exc
        return code

    def delete_otp_codes(self, user_id: str, code_type: Optional[str] = None) -> int:
        with self._connect() as conn:
            if code_type is None:
                cur = conn.execute("DELETE FROM otp_code WHERE user_id = %s", (user_id,))
            else:
                cur = conn.execute(
                    "DELETE FROM otp_code WHERE user_id = %s AND code_type = %s",
                    (user_id, code_type),
                )
            return cur.rowcount

    def get_otp_code(self, code_id: str) -> Optional[OtpCode]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM otp_code WHERE id = %s", (code_id,)).fetchone()
        return _otp_from_row(row) if row else None

    def get_active_otp_code(self, user_id: str, code_type: str) -> Optional[OtpCode]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_code
                WHERE user_id = %s AND code_type = %s AND used_at IS NULL
                ORDER BY created_at DESC
                LIMIT 1
                """,
                (user_id, code_type),
            ).fetchone()
        return _otp_from_row(row) if row else None

    def mark_otp_code_used(self, code_id: str, now: datetime, max_attempts: int) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_code SET used_at = %s
                WHERE id = %s AND used_at IS NULL AND expires_at > %s AND attempt_count < %s
                RETURNING id
                """,
                (now, code_id, now, max_attempts),
            ).fetchone()
        return row is not None

    def increment_otp_attempts(self, code_id: str, max_attempts: int) -> Optional[int]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE otp_code SET attempt_count = attempt_count + 1
                WHERE id = %s AND used_at IS NULL AND attempt_count < %s
                RETURNING attempt_count
                """,
                (code_id, max_attempts),
            ).fetchone()
        return int(row["attempt_count"]) if row else None

    def purge_otp_codes(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM otp_code WHERE used_at IS NOT NULL OR expires_at <= %s", (now,)
            )
            return cur.rowcount

    # backup codes
    def replace_backup_codes(self, user_id: str, codes: Sequence[BackupCode]) -> None:
        try:
            with self._connect() as conn:
                conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
                for code in codes:
                    conn.execute(
                        """
                        INSERT INTO backup_code (id, user_id, code_hash, used_at, created_at)
                        VALUES (%s, %s, %s, %s, %s)
                        """,
                        (code.id, code.user_id, code.code_hash, code.used_at, code.created_at),
                    )
                row = conn.execute(
                    "UPDATE app_user SET backup_codes_remaining = %s WHERE id = %s RETURNING id",
                    (len(codes), user_id),
                ).fetchone()
                if not row:
                    raise ConstraintViolation("user does not exist", {"user_id": user_id})
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": user_id}) from exc

    def list_unused_backup_codes(self, user_id: str) -> List[BackupCode]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM backup_code
                WHERE user_id = %s AND used_at IS NULL
                ORDER BY created_at
                """,
                (user_id,),
            ).fetchall()
        return [
            BackupCode(
                id=str(row["id"]),
                user_id=str(row["user_id"]),
                code_hash=row["code_hash"],
                created_at=row["created_at"],
                used_at=row.get("used_at"),
            )
            for row in rows
        ]

    def count_unused_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM backup_code WHERE user_id = %s AND used_at IS NULL",
                (user_id,),
            ).fetchone()
        return int(row["total"]) if row else 0

    def mark_backup_code_used(self, code_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE backup_code SET used_at = %s
                WHERE id = %s AND used_at IS NULL
                RETURNING user_id
                """,
                (now, code_id),
            ).fetchone()
            if not row:
                return False
            conn.execute(
                """
                UPDATE app_user SET backup_codes_remaining = GREATEST(backup_codes_remaining - 1, 0)
                WHERE id = %s
                """,
                (row["user_id"],),
            )
        return True

    def delete_backup_codes(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM backup_code WHERE user_id = %s", (user_id,))
            conn.execute(
                "UPDATE app_user SET backup_codes_remaining = 0 WHERE id = %s", (user_id,)
            )
            return cur.rowcount

    # refresh tokens
    def add_refresh_token(self, token: RefreshToken) -> RefreshToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO refresh_token (id, token, user_id, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (token.id, token.token, token.user_id, token.expires_at, token.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("refresh token collision", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id}) from exc
        return token

    def get_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token = %s", (value,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def take_refresh_token(self, value: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "DELETE FROM refresh_token WHERE token = %s RETURNING *", (value,)
            ).fetchone()
        return _refresh_from_row(row) if row else None

    def delete_refresh_token(self, value: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE token = %s", (value,))
            return cur.rowcount > 0

    def delete_user_refresh_tokens(self, user_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE user_id = %s", (user_id,))
            return cur.rowcount

    def purge_refresh_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at <= %s", (now,))
            return cur.rowcount

    # password reset tokens
    def add_password_reset_token(self, token: PasswordResetToken) -> PasswordResetToken:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO password_reset_token (id, token, user_id, expires_at, is_used, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        token.id,
                        token.token,
                        token.user_id,
                        token.expires_at,
                        token.is_used,
                        token.created_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("reset token collision", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"user_id": token.user_id}) from exc
        return token

    def get_password_reset_token(self, value: str) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM password_reset_token WHERE token = %s", (value,)
            ).fetchone()
        if not row:
            return None
        return PasswordResetToken(
            id=str(row["id"]),
            token=row["token"],
            user_id=str(row["user_id"]),
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            is_used=bool(row["is_used"]),
        )

    def consume_password_reset_token(
        self, value: str, password_hash: str, now: datetime
    ) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE password_reset_token SET is_used = true
                WHERE token = %s AND is_used = false AND expires_at > %s
                RETURNING user_id
                """,
                (value, now),
            ).fetchone()
            if not row:
                return None
            conn.execute(
                "UPDATE app_user SET password_hash = %s WHERE id = %s",
                (password_hash, row["user_id"]),
            )
        return str(row["user_id"])

    def purge_password_reset_tokens(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM password_reset_token WHERE is_used OR expires_at <= %s", (now,)
            )
            return cur.rowcount
