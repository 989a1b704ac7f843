"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper.
UserStore is the repository; _row_to_user / _row_to_role / _row_to_linked are
the mappers. Route and sign-in code never touches SQL directly.

Tables:
  users            -- identities; soft-deleted via deleted_at, never removed
  roles            -- named permission groups; "user" and "admin" seeded here
  user_roles       -- many-to-many join, soft-deleted; UNIQUE(user_id, role_id)
  linked_accounts  -- OAuth identities; UNIQUE(provider, provider_account_id)
  used_tokens      -- redeemed single-use token ids (magic link, password reset)

Role reads (roles_for / has_role) are the only authorization source the route
guard trusts. They never swallow store errors -- an unreachable database
propagates as SQLAlchemyError and the request fails closed.

The UNIQUE(user_id, role_id) constraint is what keeps two concurrent
first-sign-ins for the same user from creating duplicate "user" rows:
assign_role() treats the IntegrityError from the losing insert as
"already assigned".

Layer rule: no imports from api/, web/, or core/.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column,
    ForeignKey,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
    create_engine,
    event,
    func,
    select,
    text,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth.models import ADMIN_ROLE, DEFAULT_ROLE, LinkedAccount, Role, User

logger = logging.getLogger("launchkit.auth.store")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("email", String(255), nullable=False, unique=True),  # always lowercase
    Column("name", String(255)),
    Column("image", Text),  # avatar URL
    Column("hashed_password", Text),  # NULL for OAuth / magic-link-only users
    Column("created_at", String(32), nullable=False),
    Column("last_signed_in", String(32)),
    Column("deleted_at", String(32)),
)

_roles = Table(
    "roles",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("name", String(50), nullable=False, unique=True),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
)

_user_roles = Table(
    "user_roles",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False),
    Column("role_id", String(32), ForeignKey("roles.id"), nullable=False),
    Column("created_at", String(32), nullable=False),
    Column("deleted_at", String(32)),
    UniqueConstraint("user_id", "role_id", name="uq_user_roles_user_role"),
)

_linked_accounts = Table(
    "linked_accounts",
    _metadata,
    Column("id", String(32), primary_key=True),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False),
    Column("provider", String(30), nullable=False),
    Column("provider_account_id", Text, nullable=False),
    Column("created_at", String(32), nullable=False),
    UniqueConstraint("provider", "provider_account_id", name="uq_linked_accounts_provider_subject"),
)

# One row per redeemed magic-link or password-reset token. The primary key on
# jti is what makes redemption single-use, even for concurrent requests.
_used_tokens = Table(
    "used_tokens",
    _metadata,
    Column("jti", String(32), primary_key=True),
    Column("purpose", String(30), nullable=False),
    Column("user_id", String(32), ForeignKey("users.id"), nullable=False),
    Column("used_at", String(32), nullable=False),
)


# ---------------------------------------------------------------------------
# WAL mode
# ---------------------------------------------------------------------------


def _set_wal_mode(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode for concurrent read safety.

    Set per-connection because SQLite PRAGMAs are not inherited by new
    connections from the pool.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


def normalize_email(email: str) -> str:
    return email.strip().lower()


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class UserStore:
    """Repository for users, roles, role assignments, and linked accounts.

    Usage:
        store = UserStore("sqlite:///:memory:")
        uid = store.create_user(User(email="a@example.com", hashed_password=hash_password("secret")))
        store.assign_role(uid, "admin")
        store.roles_for(uid)   # ["admin"]
        store.close()
    """

    # Fields update_user() accepts -- anything else is a programming error.
    _MUTABLE_USER_FIELDS: frozenset = frozenset({"name", "image", "hashed_password"})

    def __init__(self, db_url: str) -> None:
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
        self.engine: Engine = create_engine(db_url, connect_args=connect_args)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _set_wal_mode)
        _metadata.create_all(self.engine)
        self._seed_system_roles()

    def _seed_system_roles(self) -> None:
        """Make sure the protected "user" and "admin" roles exist.

        Idempotent -- safe to call on every startup.
        """
        with self.engine.connect() as conn:
            for name in (DEFAULT_ROLE, ADMIN_ROLE):
                row = conn.execute(select(_roles.c.id, _roles.c.deleted_at).where(_roles.c.name == name)).first()
                if row is None:
                    conn.execute(_roles.insert().values(id=_new_id(), name=name, created_at=_now_iso()))
                elif row.deleted_at is not None:
                    conn.execute(_roles.update().where(_roles.c.id == row.id).values(deleted_at=None))
            conn.commit()

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError:
            logger.warning("Database ping failed", exc_info=True)
            return False
        return True

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def has_users(self) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(select(func.count()).select_from(_users)).scalar()
        return (result or 0) > 0

    def create_user(self, user: User) -> str:
        """Insert a new user and return its id.

        The email is normalized to lowercase before insert. Raises
        sqlalchemy.exc.IntegrityError if the email is already taken.
        """
        user_id = user.id or _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _users.insert().values(
                    id=user_id,
                    email=normalize_email(user.email),
                    name=user.name,
                    image=user.image,
                    hashed_password=user.hashed_password,
                    created_at=_now_iso(),
                    last_signed_in=user.last_signed_in,
                )
            )
            conn.commit()
        return user_id

    def get_by_id(self, user_id: str) -> User | None:
        """Look up a non-deleted user by id."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_by_email(self, email: str) -> User | None:
        """Look up a non-deleted user by email (case-insensitive)."""
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where((_users.c.email == normalize_email(email)) & _users.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def list_users(self) -> list[User]:
        """Return all non-deleted users ordered by email."""
        with self.engine.connect() as conn:
            rows = conn.execute(_users.select().where(_users.c.deleted_at.is_(None)).order_by(_users.c.email)).fetchall()
        return [_row_to_user(r) for r in rows]

    def update_user(self, user_id: str, **fields) -> bool:
        """Update mutable profile fields (name, image, hashed_password).

        Returns True if a row was updated. Unknown field names raise
        ValueError rather than being silently ignored.
        """
        unknown = set(fields) - self._MUTABLE_USER_FIELDS
        if unknown:
            raise ValueError(f"Unknown user fields: {unknown!r}")
        if not fields:
            return False
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**fields))
            conn.commit()
        return result.rowcount > 0

    def soft_delete_user(self, user_id: str) -> bool:
        """Mark a user deleted. Their role rows stay but stop counting anywhere."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & _users.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    def update_last_signed_in(self, user_id: str) -> None:
        with self.engine.connect() as conn:
            conn.execute(_users.update().where(_users.c.id == user_id).values(last_signed_in=_now_iso()))
            conn.commit()

    # ------------------------------------------------------------------
    # Role reads -- the authorization source of truth
    # ------------------------------------------------------------------

    def roles_for(self, user_id: str) -> list[str]:
        """Return the names of every live role assigned to the user, sorted.

        An empty list is a valid answer (user with no roles).
        """
        stmt = (
            select(_roles.c.name)
            .select_from(_user_roles.join(_roles, _roles.c.id == _user_roles.c.role_id))
            .where(
                (_user_roles.c.user_id == user_id)
                & _user_roles.c.deleted_at.is_(None)
                & _roles.c.deleted_at.is_(None)
            )
            .order_by(_roles.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [r.name for r in rows]

    def has_role(self, user_id: str, role_name: str) -> bool:
        """True iff a live user holds a live assignment of a live role named role_name."""
        stmt = (
            select(_user_roles.c.id)
            .select_from(
                _user_roles.join(_roles, _roles.c.id == _user_roles.c.role_id).join(
                    _users, _users.c.id == _user_roles.c.user_id
                )
            )
            .where(
                (_user_roles.c.user_id == user_id)
                & (_roles.c.name == role_name)
                & _user_roles.c.deleted_at.is_(None)
                & _roles.c.deleted_at.is_(None)
                & _users.c.deleted_at.is_(None)
            )
            .limit(1)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).first()
        return row is not None

    def count_role_holders(self, role_name: str) -> int:
        """Count live assignments of role_name held by non-deleted users.

        Used by the last-admin guard on role removal and by first-run setup.
        """
        stmt = (
            select(func.count())
            .select_from(
                _user_roles.join(_roles, _roles.c.id == _user_roles.c.role_id).join(
                    _users, _users.c.id == _user_roles.c.user_id
                )
            )
            .where(
                (_roles.c.name == role_name)
                & _roles.c.deleted_at.is_(None)
                & _user_roles.c.deleted_at.is_(None)
                & _users.c.deleted_at.is_(None)
            )
        )
        with self.engine.connect() as conn:
            result = conn.execute(stmt).scalar()
        return result or 0

    # ------------------------------------------------------------------
    # Role assignment writes
    # ------------------------------------------------------------------

    def assign_role(self, user_id: str, role_name: str) -> bool:
        """Give the user role_name. Returns True only if an assignment was made.

        Idempotent upsert:
          - live assignment already present -> False, nothing written
          - soft-deleted assignment present -> revived, True
          - no row -> inserted, True
          - concurrent insert won the race (IntegrityError) -> False
        A role name that does not exist also returns False.
        """
        with self.engine.connect() as conn:
            role_id = conn.execute(
                select(_roles.c.id).where((_roles.c.name == role_name) & _roles.c.deleted_at.is_(None))
            ).scalar()
            if role_id is None:
                logger.warning("Cannot assign unknown role %r to user %s", role_name, user_id)
                return False

            existing = conn.execute(
                select(_user_roles.c.id, _user_roles.c.deleted_at).where(
                    (_user_roles.c.user_id == user_id) & (_user_roles.c.role_id == role_id)
                )
            ).first()
            if existing is not None:
                if existing.deleted_at is None:
                    return False
                conn.execute(_user_roles.update().where(_user_roles.c.id == existing.id).values(deleted_at=None))
                conn.commit()
                return True

            try:
                conn.execute(
                    _user_roles.insert().values(
                        id=_new_id(),
                        user_id=user_id,
                        role_id=role_id,
                        created_at=_now_iso(),
                    )
                )
                conn.commit()
            except IntegrityError:
                conn.rollback()
                return False
        return True

    def remove_role(self, user_id: str, role_name: str) -> bool:
        """Soft-delete the user's assignment of role_name. True if one was removed.

        Callers must check the self-removal and last-admin rules first
        (auth.permissions.check_role_removal) -- the store does not.
        """
        role_ids = select(_roles.c.id).where(_roles.c.name == role_name)
        with self.engine.connect() as conn:
            result = conn.execute(
                _user_roles.update()
                .where(
                    (_user_roles.c.user_id == user_id)
                    & _user_roles.c.role_id.in_(role_ids)
                    & _user_roles.c.deleted_at.is_(None)
                )
                .values(deleted_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Role definitions
    # ------------------------------------------------------------------

    def get_role(self, role_id: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.id == role_id) & _roles.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def get_role_by_name(self, name: str) -> Role | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _roles.select().where((_roles.c.name == name) & _roles.c.deleted_at.is_(None))
            ).fetchone()
        return _row_to_role(row) if row is not None else None

    def create_role(self, name: str) -> str:
        """Create a role (or revive a soft-deleted one of the same name). Returns its id.

        Raises IntegrityError if a live role with this name already exists --
        callers check get_role_by_name() first for a friendly error.
        """
        with self.engine.connect() as conn:
            row = conn.execute(
                select(_roles.c.id).where((_roles.c.name == name) & _roles.c.deleted_at.isnot(None))
            ).first()
            if row is not None:
                conn.execute(_roles.update().where(_roles.c.id == row.id).values(deleted_at=None))
                conn.commit()
                return row.id
            role_id = _new_id()
            conn.execute(_roles.insert().values(id=role_id, name=name, created_at=_now_iso()))
            conn.commit()
        return role_id

    def list_roles(self) -> list[Role]:
        """Return live roles, oldest first, each with its live holder count."""
        holders = (
            select(_user_roles.c.role_id, func.count().label("n"))
            .select_from(_user_roles.join(_users, _users.c.id == _user_roles.c.user_id))
            .where(_user_roles.c.deleted_at.is_(None) & _users.c.deleted_at.is_(None))
            .group_by(_user_roles.c.role_id)
            .subquery()
        )
        stmt = (
            select(
                _roles.c.id,
                _roles.c.name,
                _roles.c.created_at,
                func.coalesce(holders.c.n, 0).label("user_count"),
            )
            .select_from(_roles.outerjoin(holders, holders.c.role_id == _roles.c.id))
            .where(_roles.c.deleted_at.is_(None))
            .order_by(_roles.c.created_at, _roles.c.name)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(stmt).fetchall()
        return [_row_to_role(r) for r in rows]

    def delete_role(self, role_id: str) -> bool:
        """Soft-delete a role. Protected-name and in-use checks are the caller's job."""
        with self.engine.connect() as conn:
            result = conn.execute(
                _roles.update()
                .where((_roles.c.id == role_id) & _roles.c.deleted_at.is_(None))
                .values(deleted_at=_now_iso())
            )
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Linked OAuth accounts
    # ------------------------------------------------------------------

    def link_account(self, user_id: str, provider: str, provider_account_id: str) -> str:
        """Attach an OAuth identity to a user. Raises IntegrityError if already linked."""
        link_id = _new_id()
        with self.engine.connect() as conn:
            conn.execute(
                _linked_accounts.insert().values(
                    id=link_id,
                    user_id=user_id,
                    provider=provider,
                    provider_account_id=provider_account_id,
                    created_at=_now_iso(),
                )
            )
            conn.commit()
        return link_id

    def get_linked_account(self, provider: str, provider_account_id: str) -> LinkedAccount | None:
        with self.engine.connect() as conn:
            row = conn.execute(
                _linked_accounts.select().where(
                    (_linked_accounts.c.provider == provider)
                    & (_linked_accounts.c.provider_account_id == provider_account_id)
                )
            ).fetchone()
        return _row_to_linked(row) if row is not None else None

    def list_linked_accounts(self, user_id: str) -> list[LinkedAccount]:
        with self.engine.connect() as conn:
            rows = conn.execute(
                _linked_accounts.select()
                .where(_linked_accounts.c.user_id == user_id)
                .order_by(_linked_accounts.c.created_at)
            ).fetchall()
        return [_row_to_linked(r) for r in rows]

    # ------------------------------------------------------------------
    # Single-use tokens
    # ------------------------------------------------------------------

    def consume_token(self, jti: str, purpose: str, user_id: str) -> bool:
        """Record a token id as redeemed. Returns False if it was already used.

        The insert is the check: of two concurrent redemptions only one
        passes the primary key.
        """
        with self.engine.connect() as conn:
            try:
                conn.execute(
                    _used_tokens.insert().values(jti=jti, purpose=purpose, user_id=user_id, used_at=_now_iso())
                )
                conn.commit()
            except IntegrityError:
                conn.rollback()
                logger.info("Rejected reuse of %s token for user %s", purpose, user_id)
                return False
        return True

    def is_token_used(self, jti: str) -> bool:
        with self.engine.connect() as conn:
            row = conn.execute(select(_used_tokens.c.jti).where(_used_tokens.c.jti == jti)).first()
        return row is not None

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        email=row.email,
        name=row.name,
        image=row.image,
        hashed_password=row.hashed_password,
        created_at=row.created_at,
        last_signed_in=row.last_signed_in,
        deleted_at=row.deleted_at,
    )


def _row_to_role(row) -> Role:
    return Role(
        id=row.id,
        name=row.name,
        created_at=row.created_at,
        user_count=getattr(row, "user_count", 0) or 0,
    )


def _row_to_linked(row) -> LinkedAccount:
    return LinkedAccount(
        id=row.id,
        user_id=row.user_id,
        provider=row.provider,
        provider_account_id=row.provider_account_id,
        created_at=row.created_at,
    )
