"""Database repositories for account hierarchy and access grant data."""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Iterator

import psycopg
from psycopg import errors as pg_errors
from psycopg.rows import tuple_row
from psycopg.types.json import Json
from psycopg_pool import ConnectionPool, PoolTimeout

from .domain.account import (
    Account,
    AccountSettings,
    AccountType,
    Billing,
    BillingStatus,
    PlanLimits,
    Usage,
)
from .domain.contracts import AccessGrant
from .domain.errors import AccountNotFound, Conflict, ParentNotFound, StorageUnavailable, UpstreamUnavailable

logger = logging.getLogger(__name__)

_ACCOUNT_FIELDS = (
    "account_id",
    "parent_account_id",
    "name",
    "slug",
    "account_path",
    "level",
    "account_type",
    "created_at",
    "updated_at",
    "company",
    "description",
    "owner_user_id",
    "settings",
    "billing",
    "usage",
    "version",
)
_ACCOUNT_COLUMNS = ", ".join(_ACCOUNT_FIELDS)
_QUALIFIED_COLUMNS = ", ".join(f"a.{field}" for field in _ACCOUNT_FIELDS)


def _billing_json(billing: Billing) -> dict[str, Any]:
    return {
        "status": billing.status.value,
        "plan": billing.plan,
        "limits": asdict(billing.limits),
    }


def _billing_from_json(data: dict[str, Any] | None) -> Billing:
    data = data or {}
    return Billing(
        status=BillingStatus(data.get("status", BillingStatus.inherited.value)),
        plan=data.get("plan"),
        limits=PlanLimits(**(data.get("limits") or {})),
    )


class AccountRepository:
    """Postgres-backed account store.

    Each mutating method runs in one transaction. ``accounts.version`` is the
    optimistic concurrency token: creating a child bumps the parent's version,
    and a rename bumps the version of every node whose path it rewrites.
    """

    def __init__(self, pool: ConnectionPool, *, statement_timeout_ms: int = 5000) -> None:
        """Store the connection pool used for all database interactions."""
        self._pool = pool
        self._statement_timeout_ms = statement_timeout_ms

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        """Yield a cursor bounded by the statement timeout, translating driver failures."""
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    cur.execute(
                        "SELECT set_config('statement_timeout', %s, true)",
                        (str(self._statement_timeout_ms),),
                    )
                    yield cur
                    conn.commit()
        except (pg_errors.UniqueViolation, pg_errors.ForeignKeyViolation) as exc:
            raise Conflict(f"concurrent structural change: {exc.diag.message_primary}") from exc
        except pg_errors.QueryCanceled as exc:
            raise StorageUnavailable("account store operation timed out") from exc
        except (psycopg.OperationalError, PoolTimeout) as exc:
            logger.warning("account store unavailable: %s", exc)
            raise StorageUnavailable(f"account store unavailable: {exc}") from exc

    def create_account(
        self,
        account: Account,
        *,
        parent_version: int | None,
        owner_grant: AccessGrant | None = None,
    ) -> Account:
        """Insert ``account`` and its owner grant.

        The insert is conditional on the parent still being at ``parent_version``.
        """
        with self._cursor() as cur:
            if account.parent_account_id is not None:
                cur.execute(
                    """
                    UPDATE accounts
                    SET version = version + 1
                    WHERE account_id = %s AND version = %s
                    RETURNING version
                    """,
                    (account.parent_account_id, parent_version),
                )
                if cur.fetchone() is None:
                    cur.execute("SELECT 1 FROM accounts WHERE account_id = %s", (account.parent_account_id,))
                    if cur.fetchone() is None:
                        raise ParentNotFound(account.parent_account_id)
                    raise Conflict(f"parent {account.parent_account_id} changed during sub-account creation")
            cur.execute(
                f"""
                INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (
                    account.account_id,
                    account.parent_account_id,
                    account.name,
                    account.slug,
                    account.account_path,
                    account.level,
                    account.account_type.value,
                    account.created_at,
                    account.updated_at,
                    account.company,
                    account.description,
                    account.owner_user_id,
                    Json(asdict(account.settings)),
                    Json(_billing_json(account.billing)),
                    Json(asdict(account.usage)),
                    account.version,
                ),
            )
            row = cur.fetchone()
            if owner_grant is not None:
                cur.execute(
                    """
                    INSERT INTO user_accounts (user_id, account_id, role, capabilities, status, linked_at)
                    VALUES (%s, %s, %s, %s, 'active', NOW())
                    ON CONFLICT (user_id, account_id)
                    DO UPDATE SET role = EXCLUDED.role, capabilities = EXCLUDED.capabilities, status = 'active'
                    """,
                    (owner_grant.user_id, owner_grant.account_id, owner_grant.role, Json(owner_grant.capabilities)),
                )
        return self._map_record(row)

    def get_account(self, account_id: str) -> Account | None:
        """Fetch an account by id or return ``None``."""
        with self._cursor() as cur:
            cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = %s", (account_id,))
            row = cur.fetchone()
        if not row:
            return None
        return self._map_record(row)

    def get_accounts(self, account_ids: list[str]) -> list[Account]:
        with self._cursor() as cur:
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE account_id = ANY(%s)",
                (list(account_ids),),
            )
            rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def children_of(self, account_id: str | None) -> list[Account]:
        """Direct children ordered by creation time; ``None`` lists root accounts."""
        with self._cursor() as cur:
            if account_id is None:
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS} FROM accounts
                    WHERE parent_account_id IS NULL
                    ORDER BY created_at, account_id
                    """
                )
            else:
                cur.execute(
                    f"""
                    SELECT {_ACCOUNT_COLUMNS} FROM accounts
                    WHERE parent_account_id = %s
                    ORDER BY created_at, account_id
                    """,
                    (account_id,),
                )
            rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def subtree(self, account_id: str) -> list[Account]:
        """Return the account and all descendants from a single statement snapshot."""
        with self._cursor() as cur:
            cur.execute(
                f"""
                WITH target AS (
                    SELECT account_path FROM accounts WHERE account_id = %s
                )
                SELECT {_QUALIFIED_COLUMNS}
                FROM accounts a, target t
                WHERE a.account_path = t.account_path
                   OR a.account_path LIKE t.account_path || '/%%'
                ORDER BY a.level, a.created_at, a.account_id
                """,
                (account_id,),
            )
            rows = cur.fetchall()
        return [self._map_record(row) for row in rows]

    def update_account(
        self,
        account: Account,
        *,
        expected_version: int,
        parent_version: int | None = None,
        rename_from: str | None = None,
    ) -> Account:
        """Write ``account`` and move its descendants' paths in one transaction."""
        with self._cursor() as cur:
            if parent_version is not None and account.parent_account_id is not None:
                cur.execute(
                    "SELECT version FROM accounts WHERE account_id = %s FOR SHARE",
                    (account.parent_account_id,),
                )
                parent = cur.fetchone()
                if parent is None:
                    raise ParentNotFound(account.parent_account_id)
                if parent[0] != parent_version:
                    raise Conflict(f"parent {account.parent_account_id} changed during rename")
            cur.execute(
                f"""
                UPDATE accounts
                SET name = %s, slug = %s, account_path = %s, company = %s, description = %s,
                    settings = %s, billing = %s, updated_at = %s, version = version + 1
                WHERE account_id = %s AND version = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (
                    account.name,
                    account.slug,
                    account.account_path,
                    account.company,
                    account.description,
                    Json(asdict(account.settings)),
                    Json(_billing_json(account.billing)),
                    account.updated_at,
                    account.account_id,
                    expected_version,
                ),
            )
            row = cur.fetchone()
            if row is None:
                cur.execute("SELECT version FROM accounts WHERE account_id = %s", (account.account_id,))
                current = cur.fetchone()
                if current is None:
                    raise AccountNotFound(account.account_id)
                raise Conflict(
                    f"account {account.account_id} is at version {current[0]}, not {expected_version}"
                )
            if rename_from is not None and rename_from != account.account_path:
                cur.execute(
                    "SELECT account_id FROM accounts WHERE account_path LIKE %s::text || '/%%' FOR UPDATE",
                    (rename_from,),
                )
                cur.execute(
                    """
                    UPDATE accounts
                    SET account_path = %s::text || substr(account_path, length(%s::text) + 1),
                        version = version + 1
                    WHERE account_path LIKE %s::text || '/%%'
                    """,
                    (account.account_path, rename_from, rename_from),
                )
                logger.debug("moved %s descendant paths under %s", cur.rowcount, account.account_path)
        return self._map_record(row)

    def delete_account(self, account_id: str) -> bool:
        """Delete one childless account; returns ``False`` if it was already gone."""
        with self._cursor() as cur:
            cur.execute("DELETE FROM accounts WHERE account_id = %s RETURNING account_id", (account_id,))
            deleted = cur.fetchone() is not None
        return deleted

    def count_active_jobs(self, account_id: str) -> int:
        """Count backup jobs still queued or running for the account."""
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT count(*) FROM backup_jobs
                WHERE account_id = %s AND status IN ('queued', 'running')
                """,
                (account_id,),
            )
            (count,) = cur.fetchone()
        return int(count)

    def write_audit_event(
        self,
        *,
        account_id: str | None,
        event_type: str,
        actor: str | None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record an audit trail entry for a hierarchy or context change."""
        with self._cursor() as cur:
            cur.execute(
                """
                INSERT INTO hierarchy_audit_log (account_id, event_type, actor, metadata, created_at)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (account_id, event_type, actor, Json(metadata or {}), datetime.now(timezone.utc)),
            )

    def _map_record(self, row: tuple) -> Account:
        """Convert a raw database tuple into the domain ``Account`` dataclass."""
        return Account(
            account_id=row[0],
            parent_account_id=row[1],
            name=row[2],
            slug=row[3],
            account_path=row[4],
            level=row[5],
            account_type=AccountType(row[6]),
            created_at=row[7],
            updated_at=row[8],
            company=row[9] or "",
            description=row[10] or "",
            owner_user_id=row[11],
            settings=AccountSettings(**(row[12] or {})),
            billing=_billing_from_json(row[13]),
            usage=Usage(**(row[14] or {})),
            version=row[15],
        )


class GrantRepository:
    """Reads and writes the ``user_accounts`` access grant table."""

    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool

    @contextmanager
    def _cursor(self) -> Iterator[psycopg.Cursor]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    yield cur
                    conn.commit()
        except (psycopg.OperationalError, PoolTimeout) as exc:
            logger.warning("grant store unavailable: %s", exc)
            raise UpstreamUnavailable(f"grant store unavailable: {exc}") from exc

    def grants_for(self, user_id: str, account_ids: list[str]) -> list[AccessGrant]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT user_id, account_id, capabilities, role
                FROM user_accounts
                WHERE user_id = %s AND account_id = ANY(%s) AND status = 'active'
                """,
                (user_id, list(account_ids)),
            )
            rows = cur.fetchall()
        return [AccessGrant(user_id=row[0], account_id=row[1], capabilities=row[2] or {}, role=row[3]) for row in rows]

    def grants_of_user(self, user_id: str) -> list[AccessGrant]:
        with self._cursor() as cur:
            cur.execute(
                """
                SELECT user_id, account_id, capabilities, role
                FROM user_accounts
                WHERE user_id = %s AND status = 'active'
                """,
                (user_id,),
            )
            rows = cur.fetchall()
        return [AccessGrant(user_id=row[0], account_id=row[1], capabilities=row[2] or {}, role=row[3]) for row in rows]

    def delete_grants_for_account(self, account_id: str) -> None:
        with self._cursor() as cur:
            cur.execute("DELETE FROM user_accounts WHERE account_id = %s", (account_id,))
