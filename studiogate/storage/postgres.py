from __future__ import annotations

import uuid
from typing import Any, Dict, Iterable, List, Mapping, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from studiogate.logging import get_logger
from studiogate.storage.common import normalize_email, validate_update
from studiogate.storage.errors import ConstraintViolation
from studiogate.storage.models import Account

_ACCOUNT_COLUMNS = (
    "id",
    "email",
    "first_name",
    "last_name",
    "bio",
    "avatar",
    "otp",
    "otp_expires",
    "session_token",
    "session_expires",
    "last_login",
    "login_ip",
    "created_at",
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS account (
    id UUID PRIMARY KEY,
    email TEXT NOT NULL,
    first_name TEXT,
    last_name TEXT,
    bio TEXT,
    avatar TEXT,
    otp TEXT,
    otp_expires TIMESTAMPTZ,
    session_token TEXT,
    session_expires TIMESTAMPTZ,
    last_login TIMESTAMPTZ,
    login_ip TEXT,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    CONSTRAINT account_otp_pair CHECK ((otp IS NULL) = (otp_expires IS NULL)),
    CONSTRAINT account_session_pair CHECK ((session_token IS NULL) = (session_expires IS NULL))
);
CREATE UNIQUE INDEX IF NOT EXISTS account_email_lower_idx ON account (lower(email));
CREATE INDEX IF NOT EXISTS account_otp_idx ON account (otp) WHERE otp IS NOT NULL;
CREATE UNIQUE INDEX IF NOT EXISTS account_session_token_idx
    ON account (session_token) WHERE session_token IS NOT NULL;
"""


def _match_clause(match: Mapping[str, Any]) -> tuple[str, List[Any]]:
    clauses = []
    params: List[Any] = []
    for key, value in match.items():
        if key == "email":
            clauses.append("lower(email) = %s")
        elif key == "id":
            clauses.append("id = %s::uuid")
        else:
            clauses.append(f"{key} = %s")
        params.append(value)
    return " AND ".join(clauses), params


class PostgresStore:
    """Postgres-backed account store.

    ``update_account`` locks the matched row and applies ``$set``/``$unset``
    in a single statement, so a match on ``otp`` acts as a compare-and-set.
    """

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 5) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(_SCHEMA)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_account(row: Optional[Dict[str, Any]]) -> Optional[Account]:
        if not row:
            return None
        return Account(
            id=str(row["id"]),
            email=row["email"],
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            bio=row.get("bio"),
            avatar=row.get("avatar"),
            otp=row.get("otp"),
            otp_expires=row.get("otp_expires"),
            session_token=row.get("session_token"),
            session_expires=row.get("session_expires"),
            last_login=row.get("last_login"),
            login_ip=row.get("login_ip"),
            created_at=row["created_at"],
        )

    def _select_one(self, match: Mapping[str, Any]) -> Optional[Account]:
        where, params = _match_clause(match)
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT * FROM account WHERE {where} ORDER BY created_at LIMIT 1",
                params,
            ).fetchone()
        return self._row_to_account(row)

    def create_account(
        self,
        email: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        bio: Optional[str] = None,
        avatar: Optional[str] = None,
    ) -> Account:
        account_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO account (id, email, first_name, last_name, bio, avatar)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (account_id, email.strip(), first_name, last_name, bio, avatar),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_account(row)

    def get_account(self) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM account ORDER BY created_at LIMIT 1"
            ).fetchone()
        return self._row_to_account(row)

    def list_accounts(self) -> List[Account]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM account ORDER BY created_at").fetchall()
        return [self._row_to_account(row) for row in rows]

    def get_account_by_id(self, account_id: str) -> Optional[Account]:
        try:
            uuid.UUID(str(account_id))
        except ValueError:
            return None
        return self._select_one({"id": account_id})

    def get_account_by_email(self, email: str) -> Optional[Account]:
        return self._select_one({"email": normalize_email(email)})

    def get_account_by_otp(self, otp: str) -> Optional[Account]:
        if not otp:
            return None
        return self._select_one({"otp": otp})

    def get_account_by_session_token(self, token: str) -> Optional[Account]:
        if not token:
            return None
        return self._select_one({"session_token": token})

    def update_account(
        self,
        match: Mapping[str, Any],
        *,
        set_fields: Optional[Mapping[str, Any]] = None,
        unset_fields: Iterable[str] = (),
    ) -> Optional[Account]:
        """Apply ``$set``/``$unset`` to the first matching row; return its prior state."""
        match, to_set, to_unset = validate_update(match, set_fields, unset_fields)
        if not to_set and not to_unset:
            return self._select_one(match)

        where, match_params = _match_clause(match)
        assignments = [f"{key} = %s" for key in to_set] + [f"{key} = NULL" for key in to_unset]
        returning = ", ".join(f"prev.{col}" for col in _ACCOUNT_COLUMNS)
        query = f"""
            WITH prev AS (
                SELECT * FROM account WHERE {where}
                ORDER BY created_at LIMIT 1
                FOR UPDATE
            )
            UPDATE account SET {", ".join(assignments)}
            FROM prev
            WHERE account.id = prev.id
            RETURNING {returning}
        """
        with self._connect() as conn:
            row = conn.execute(query, [*match_params, *to_set.values()]).fetchone()
        return self._row_to_account(row)
