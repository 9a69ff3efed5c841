from __future__ import annotations

import contextlib
from typing import Iterator, List, Optional

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from tenantgate.logging import get_logger
from tenantgate.storage.common import normalize_email
from tenantgate.storage.errors import ConstraintViolation, StoreUnavailable
from tenantgate.storage.models import (
    Invite,
    Membership,
    Organization,
    OrgStatus,
    Role,
    User,
    new_id,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT,
        password_hash TEXT,
        password_algo TEXT,
        is_super_admin BOOLEAN NOT NULL DEFAULT FALSE,
        disabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS organization (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        slug TEXT NOT NULL UNIQUE,
        status TEXT NOT NULL DEFAULT 'ACTIVE',
        auth_epoch BIGINT NOT NULL DEFAULT 1,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS membership (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        org_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        role TEXT NOT NULL DEFAULT 'USER',
        disabled BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (user_id, org_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS invite (
        token TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        org_id TEXT NOT NULL REFERENCES organization(id) ON DELETE CASCADE,
        role TEXT NOT NULL DEFAULT 'USER',
        expires_at TIMESTAMPTZ NOT NULL,
        created_by TEXT,
        accepted BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS invite_email_org_idx ON invite (email, org_id)",
)


def _user_from_row(row) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        name=row.get("name"),
        password_hash=row.get("password_hash"),
        password_algo=row.get("password_algo"),
        is_super_admin=bool(row.get("is_super_admin", False)),
        disabled=bool(row.get("disabled", False)),
        created_at=row["created_at"],
    )


def _org_from_row(row) -> Organization:
    return Organization(
        id=str(row["id"]),
        name=row["name"],
        slug=row["slug"],
        status=OrgStatus(row["status"]),
        auth_epoch=int(row["auth_epoch"]),
        created_at=row["created_at"],
    )


def _membership_from_row(row) -> Membership:
    return Membership(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        org_id=str(row["org_id"]),
        role=Role(row["role"]),
        disabled=bool(row.get("disabled", False)),
        created_at=row["created_at"],
    )


def _invite_from_row(row) -> Invite:
    return Invite(
        token=row["token"],
        email=row["email"],
        org_id=str(row["org_id"]),
        role=Role(row["role"]),
        expires_at=row["expires_at"],
        created_by=row.get("created_by"),
        accepted=bool(row.get("accepted", False)),
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed document store for identities, orgs and invites."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (OperationalError, PoolTimeout) as exc:
            self.logger.error("document_store_error", error=str(exc))
            raise StoreUnavailable("document store unavailable") from exc

    def _ensure_schema(self) -> None:
        """Create the identity tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # users
    def create_user(
        self,
        email: str,
        *,
        name: Optional[str] = None,
        password_hash: Optional[str] = None,
        password_algo: Optional[str] = None,
        is_super_admin: bool = False,
    ) -> User:
        user_id = new_id()
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, name, password_hash, password_algo, is_super_admin)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        user_id,
                        normalize_email(email),
                        name,
                        password_hash,
                        password_algo,
                        is_super_admin,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
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
                "SELECT * FROM app_user WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET password_hash = %s, password_algo = %s WHERE id = %s RETURNING *",
                (password_hash, password_algo, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    def set_user_disabled(self, user_id: str, disabled: bool) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE app_user SET disabled = %s WHERE id = %s RETURNING *",
                (disabled, user_id),
            ).fetchone()
        return _user_from_row(row) if row else None

    # organizations
    def create_org(self, name: str, slug: str) -> Organization:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    "INSERT INTO organization (id, name, slug) VALUES (%s, %s, %s) RETURNING *",
                    (new_id(), name, slug),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("organization slug already exists", {"field": "slug"})
        return _org_from_row(row)

    def get_org(self, org_id: str) -> Optional[Organization]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM organization WHERE id = %s", (org_id,)
            ).fetchone()
        return _org_from_row(row) if row else None

    def list_orgs(self) -> List[Organization]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM organization ORDER BY created_at DESC"
            ).fetchall()
        return [_org_from_row(row) for row in rows]

    def transition_org(
        self, org_id: str, status: OrgStatus, *, epoch: Optional[int] = None
    ) -> Optional[Organization]:
        # Single statement so status and epoch move together
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE organization
                SET status = %s,
                    auth_epoch = GREATEST(COALESCE(%s, 0), auth_epoch + 1)
                WHERE id = %s
                RETURNING *
                """,
                (OrgStatus(status).value, epoch, org_id),
            ).fetchone()
        return _org_from_row(row) if row else None

    # memberships
    def create_membership(self, user_id: str, org_id: str, role: Role) -> Membership:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO membership (id, user_id, org_id, role)
                    VALUES (%s, %s, %s, %s)
                    RETURNING *
                    """,
                    (new_id(), user_id, org_id, Role(role).value),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "membership already exists", {"user_id": user_id, "org_id": org_id}
            )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or organization does not exist",
                {"user_id": user_id, "org_id": org_id},
            )
        return _membership_from_row(row)

    def get_membership(self, user_id: str, org_id: str) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM membership WHERE user_id = %s AND org_id = %s",
                (user_id, org_id),
            ).fetchone()
        return _membership_from_row(row) if row else None

    def upsert_membership(self, user_id: str, org_id: str, role: Role) -> Membership:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO membership (id, user_id, org_id, role)
                    VALUES (%s, %s, %s, %s)
                    ON CONFLICT (user_id, org_id) DO UPDATE SET role = EXCLUDED.role
                    RETURNING *
                    """,
                    (new_id(), user_id, org_id, Role(role).value),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation(
                "user or organization does not exist",
                {"user_id": user_id, "org_id": org_id},
            )
        return _membership_from_row(row)

    def update_membership(
        self,
        user_id: str,
        org_id: str,
        *,
        role: Optional[Role] = None,
        disabled: Optional[bool] = None,
    ) -> Optional[Membership]:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE membership
                SET role = COALESCE(%s, role),
                    disabled = COALESCE(%s, disabled)
                WHERE user_id = %s AND org_id = %s
                RETURNING *
                """,
                (Role(role).value if role is not None else None, disabled, user_id, org_id),
            ).fetchone()
        return _membership_from_row(row) if row else None

    def list_user_memberships(self, user_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM membership WHERE user_id = %s ORDER BY created_at",
                (user_id,),
            ).fetchall()
        return [_membership_from_row(row) for row in rows]

    def list_org_memberships(self, org_id: str) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM membership WHERE org_id = %s ORDER BY created_at DESC",
                (org_id,),
            ).fetchall()
        return [_membership_from_row(row) for row in rows]

    def list_memberships_by_role(self, role: Role) -> List[Membership]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM membership WHERE role = %s ORDER BY created_at DESC",
                (Role(role).value,),
            ).fetchall()
        return [_membership_from_row(row) for row in rows]

    def delete_org_memberships(self, org_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM membership WHERE org_id = %s", (org_id,))
            return cur.rowcount or 0

    # invites
    def create_invite(self, invite: Invite) -> Invite:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO invite (token, email, org_id, role, expires_at, created_by, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        invite.token,
                        normalize_email(invite.email),
                        invite.org_id,
                        Role(invite.role).value,
                        invite.expires_at,
                        invite.created_by,
                        invite.created_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("invite token already exists", {"field": "token"})
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("organization does not exist", {"org_id": invite.org_id})
        return _invite_from_row(row)

    def get_invite(self, token: str) -> Optional[Invite]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM invite WHERE token = %s", (token,)
            ).fetchone()
        return _invite_from_row(row) if row else None

    def delete_pending_invites(self, email: str, org_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM invite WHERE email = %s AND org_id = %s AND accepted = FALSE",
                (normalize_email(email), org_id),
            )
            return cur.rowcount or 0

    def list_pending_invites(self, org_id: str) -> List[Invite]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM invite WHERE org_id = %s AND accepted = FALSE ORDER BY created_at DESC",
                (org_id,),
            ).fetchall()
        return [_invite_from_row(row) for row in rows]

    def mark_invite_accepted(self, token: str) -> bool:
        # Conditional update so two concurrent accepts cannot both win
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE invite SET accepted = TRUE WHERE token = %s AND accepted = FALSE",
                (token,),
            )
            return bool(cur.rowcount)
