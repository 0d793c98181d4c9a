"""Privileged Postgres repository for accounts, companies and their records.

Every query here runs on the service-role pool, which bypasses row-level
security. Callers must only pass identifiers that were already established by
the access gate or validated against the caller's company, and every query on
a tenant-owned table filters by ``company_id``.
"""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any

import psycopg
from psycopg import sql
from psycopg.rows import tuple_row
from psycopg_pool import ConnectionPool

from .domain.account import ROLE_MANAGER, ROLE_USER, Account, Company, Identity
from .domain.contracts import CreateCompanyInput
from .domain.records import ActivityEvent, Contract, Property, StatusChange, Template

_ACCOUNT_COLUMNS = "id, email, role, is_system_admin, company_id, full_name, is_active, created_at"
_COMPANY_COLUMNS = (
    "id, name, billing_plan, actual_plan, subscription_status, overage_behavior, "
    "contracts_used_this_period, billing_period_start, created_at"
)
_CONTRACT_SELECT = """
    SELECT c.id, c.company_id, c.status, c.seller_name, c.seller_email, c.buyer_name,
           c.buyer_email, c.price, c.custom_fields, c.sent_at, c.completed_at, c.created_at,
           p.id, p.address, p.city, p.state, p.zip, p.status
    FROM contracts c
    LEFT JOIN properties p ON p.id = c.property_id
"""
_TEMPLATE_COLUMNS = (
    "id, company_id, name, description, tags, html_content, signature_layout, "
    "custom_fields, field_config, is_example, created_at"
)

# Each query yields (source id, occurred at, details, user email, company name).
_ACTIVITY_QUERIES = {
    "signup": """
        SELECT u.id, u.created_at,
               jsonb_build_object('full_name', u.full_name, 'email', u.email),
               u.email, co.name
        FROM users u
        LEFT JOIN companies co ON co.id = u.company_id
        ORDER BY u.created_at DESC
        LIMIT %s
    """,
    "contract_sent": """
        SELECT c.id, c.sent_at,
               jsonb_build_object('seller_name', c.seller_name, 'buyer_name', c.buyer_name, 'price', c.price),
               u.email, co.name
        FROM contracts c
        LEFT JOIN companies co ON co.id = c.company_id
        LEFT JOIN users u ON u.id = c.created_by
        WHERE c.sent_at IS NOT NULL
        ORDER BY c.sent_at DESC
        LIMIT %s
    """,
    "contract_completed": """
        SELECT c.id, c.completed_at,
               jsonb_build_object('seller_name', c.seller_name, 'buyer_name', c.buyer_name, 'price', c.price),
               NULL, co.name
        FROM contracts c
        LEFT JOIN companies co ON co.id = c.company_id
        WHERE c.completed_at IS NOT NULL
        ORDER BY c.completed_at DESC
        LIMIT %s
    """,
    "ai_generation": """
        SELECT l.id, l.created_at, l.metadata, u.email, co.name
        FROM usage_logs l
        LEFT JOIN users u ON u.id = l.user_id
        LEFT JOIN companies co ON co.id = l.company_id
        WHERE l.action_type = 'ai_generation'
        ORDER BY l.created_at DESC
        LIMIT %s
    """,
    "webhook": """
        SELECT h.id, h.created_at,
               jsonb_build_object(
                   'status', h.status, 'seller_name', c.seller_name,
                   'buyer_name', c.buyer_name, 'metadata', h.metadata
               ),
               NULL, co.name
        FROM contract_status_history h
        LEFT JOIN contracts c ON c.id = h.contract_id
        LEFT JOIN companies co ON co.id = c.company_id
        WHERE h.metadata->>'action' = 'webhook_update'
        ORDER BY h.created_at DESC
        LIMIT %s
    """,
}


class DataStoreError(RuntimeError):
    """Raised when the privileged data store cannot complete a request."""


class PrivilegedRepository:
    """Service-role access to accounts, companies and tenant-owned records."""

    def __init__(self, pool: ConnectionPool) -> None:
        """Store the service-role connection pool used for all database interactions."""
        self._pool = pool

    @contextmanager
    def _cursor(self) -> Iterator[tuple[psycopg.Connection, psycopg.Cursor]]:
        try:
            with self._pool.connection() as conn:
                with conn.cursor(row_factory=tuple_row) as cur:
                    yield conn, cur
        except psycopg.Error as exc:
            raise DataStoreError(str(exc)) from exc

    def get_account(self, user_id: str) -> Account | None:
        """Fetch the profile row for an authenticated user or return ``None``."""
        with self._cursor() as (_, cur):
            cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE id = %s", (user_id,))
            row = cur.fetchone()
        if not row:
            return None
        return self._map_account(row)

    def ensure_account(self, identity: Identity) -> Account:
        """Create the profile row on first sign-in and return the stored account."""
        with self._cursor() as (conn, cur):
            cur.execute(
                """
                INSERT INTO users (id, email, role, is_system_admin, is_active, created_at)
                VALUES (%s, %s, %s, false, true, %s)
                ON CONFLICT (id) DO NOTHING
                """,
                (identity.user_id, identity.email or "", ROLE_USER, datetime.now(timezone.utc)),
            )
            cur.execute(f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE id = %s", (identity.user_id,))
            row = cur.fetchone()
            conn.commit()
        return self._map_account(row)

    def email_exists(self, email: str) -> bool:
        """Return ``True`` when a profile is registered under the email (case-insensitive)."""
        with self._cursor() as (_, cur):
            cur.execute("SELECT 1 FROM users WHERE lower(email) = lower(%s) LIMIT 1", (email,))
            return cur.fetchone() is not None

    def get_company(self, company_id: str) -> Company | None:
        """Fetch a company by identifier."""
        with self._cursor() as (_, cur):
            cur.execute(f"SELECT {_COMPANY_COLUMNS} FROM companies WHERE id = %s", (company_id,))
            row = cur.fetchone()
        if not row:
            return None
        return self._map_company(row)

    def create_company_for_owner(self, payload: CreateCompanyInput) -> Company | None:
        """Create a free-plan company and make its owner a manager in one transaction.

        Returns ``None`` (and persists nothing) when the owner already belongs to
        a company.
        """
        now = datetime.now(timezone.utc)
        with self._cursor() as (conn, cur):
            cur.execute(
                f"""
                INSERT INTO companies (
                    name, billing_plan, actual_plan, billing_period_start,
                    contracts_used_this_period, subscription_status, created_at, updated_at
                )
                VALUES (%s, 'free', 'free', %s, 0, 'active', %s, %s)
                RETURNING {_COMPANY_COLUMNS}
                """,
                (payload.name, now, now, now),
            )
            company = self._map_company(cur.fetchone())
            cur.execute(
                """
                UPDATE users
                SET company_id = %s, role = %s, updated_at = %s
                WHERE id = %s AND company_id IS NULL
                """,
                (company.company_id, ROLE_MANAGER, now, payload.owner_id),
            )
            if cur.rowcount != 1:
                conn.rollback()
                return None
            conn.commit()
        return company

    def list_members(self, company_id: str) -> list[Account]:
        """Return the company's members ordered by creation time."""
        with self._cursor() as (_, cur):
            cur.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE company_id = %s ORDER BY created_at ASC",
                (company_id,),
            )
            return [self._map_account(row) for row in cur.fetchall()]

    def count_members(self, company_id: str) -> int:
        with self._cursor() as (_, cur):
            cur.execute("SELECT count(*) FROM users WHERE company_id = %s", (company_id,))
            return int(cur.fetchone()[0])

    def update_member(self, member_id: str, company_id: str, columns: dict[str, Any]) -> bool:
        """Apply column updates to a member of ``company_id``; ``False`` when no such member."""
        if not columns:
            return self.is_member(member_id, company_id)
        return self._update("users", columns, member_id, extra=("company_id", company_id))

    def delete_member(self, member_id: str, company_id: str) -> bool:
        """Delete a member's profile row when it belongs to ``company_id``."""
        with self._cursor() as (conn, cur):
            cur.execute(
                "DELETE FROM users WHERE id = %s AND company_id = %s",
                (member_id, company_id),
            )
            deleted = cur.rowcount == 1
            conn.commit()
        return deleted

    def update_company(self, company_id: str, columns: dict[str, Any]) -> bool:
        """Apply column updates to a company; ``False`` when the company does not exist."""
        return self._update("companies", {**columns, "updated_at": datetime.now(timezone.utc)}, company_id)

    def list_companies(self) -> list[Company]:
        """Return every company, newest first."""
        with self._cursor() as (_, cur):
            cur.execute(f"SELECT {_COMPANY_COLUMNS} FROM companies ORDER BY created_at DESC")
            return [self._map_company(row) for row in cur.fetchall()]

    def list_members_by_company(self, company_ids: list[str]) -> dict[str, list[Account]]:
        """Return members of the given companies grouped by company id."""
        grouped: dict[str, list[Account]] = {company_id: [] for company_id in company_ids}
        if not company_ids:
            return grouped
        with self._cursor() as (_, cur):
            cur.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS}
                FROM users
                WHERE company_id::text = ANY(%s)
                ORDER BY created_at ASC
                """,
                (company_ids,),
            )
            for row in cur.fetchall():
                account = self._map_account(row)
                grouped[account.company_id].append(account)
        return grouped

    def update_property_status(self, property_id: str, company_id: str, status: str) -> Property | None:
        """Set a property's status when it belongs to ``company_id``; ``None`` otherwise."""
        with self._cursor() as (conn, cur):
            cur.execute(
                """
                UPDATE properties SET status = %s
                WHERE id = %s AND company_id = %s
                RETURNING id, company_id, address, city, state, zip, status
                """,
                (status, property_id, company_id),
            )
            row = cur.fetchone()
            conn.commit()
        if not row:
            return None
        return self._map_property(row)

    def list_contracts(self, company_id: str) -> list[Contract]:
        """Return the company's contracts with their property, newest first."""
        with self._cursor() as (_, cur):
            cur.execute(
                f"{_CONTRACT_SELECT} WHERE c.company_id = %s ORDER BY c.created_at DESC",
                (company_id,),
            )
            return [self._map_contract(row) for row in cur.fetchall()]

    def get_contract(self, contract_id: str, company_id: str) -> Contract | None:
        """Fetch one contract, but only when it belongs to ``company_id``."""
        with self._cursor() as (_, cur):
            cur.execute(
                f"{_CONTRACT_SELECT} WHERE c.id = %s AND c.company_id = %s",
                (contract_id, company_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        return self._map_contract(row)

    def list_status_history(self, contract_id: str) -> list[StatusChange]:
        with self._cursor() as (_, cur):
            cur.execute(
                """
                SELECT id, contract_id, status, metadata, changed_by, created_at
                FROM contract_status_history
                WHERE contract_id = %s
                ORDER BY created_at DESC
                """,
                (contract_id,),
            )
            return [
                StatusChange(
                    change_id=str(row[0]),
                    contract_id=str(row[1]),
                    status=row[2],
                    metadata=row[3] or {},
                    changed_by=str(row[4]) if row[4] is not None else None,
                    created_at=row[5],
                )
                for row in cur.fetchall()
            ]

    def get_template(self, template_id: str, company_id: str) -> Template | None:
        """Fetch a template owned by ``company_id`` or shared as an example."""
        with self._cursor() as (_, cur):
            cur.execute(
                f"""
                SELECT {_TEMPLATE_COLUMNS} FROM company_templates
                WHERE id = %s AND (company_id = %s OR is_example)
                """,
                (template_id, company_id),
            )
            row = cur.fetchone()
        if not row:
            return None
        return self._map_template(row)

    def list_templates(
        self,
        company_id: str,
        *,
        include_examples: bool = True,
        tag: str | None = None,
        search: str | None = None,
    ) -> list[Template]:
        """Return the company's active templates (plus shared examples), newest first."""
        conditions = [sql.SQL("is_active")]
        params: list[Any] = []
        if include_examples:
            conditions.append(sql.SQL("(company_id = %s OR is_example)"))
        else:
            conditions.append(sql.SQL("company_id = %s"))
        params.append(company_id)
        if tag:
            conditions.append(sql.SQL("%s = ANY(tags)"))
            params.append(tag)
        if search:
            conditions.append(sql.SQL("(name ILIKE %s OR description ILIKE %s)"))
            pattern = f"%{search}%"
            params.extend([pattern, pattern])
        query = sql.SQL("SELECT {} FROM company_templates WHERE {} ORDER BY created_at DESC").format(
            sql.SQL(_TEMPLATE_COLUMNS), sql.SQL(" AND ").join(conditions)
        )
        with self._cursor() as (_, cur):
            cur.execute(query, params)
            return [self._map_template(row) for row in cur.fetchall()]

    def list_template_tags(self, company_id: str) -> list[str]:
        """Return every tag used by templates visible to the company, sorted."""
        with self._cursor() as (_, cur):
            cur.execute(
                """
                SELECT DISTINCT unnest(tags) AS tag FROM company_templates
                WHERE is_active AND (company_id = %s OR is_example)
                ORDER BY tag
                """,
                (company_id,),
            )
            return [row[0] for row in cur.fetchall()]

    def recent_activity(self, kind: str, limit: int = 20) -> list[ActivityEvent]:
        """Return the latest platform events of one kind, across every company."""
        query = _ACTIVITY_QUERIES.get(kind)
        if query is None:
            return []
        with self._cursor() as (_, cur):
            cur.execute(query, (limit,))
            return [
                ActivityEvent(
                    kind=kind,
                    source_id=str(row[0]),
                    occurred_at=row[1],
                    details=row[2] or {},
                    user_email=row[3],
                    company_name=row[4],
                )
                for row in cur.fetchall()
            ]

    def is_member(self, member_id: str, company_id: str) -> bool:
        """Return ``True`` when ``member_id`` belongs to ``company_id``."""
        with self._cursor() as (_, cur):
            cur.execute(
                "SELECT 1 FROM users WHERE id = %s AND company_id = %s",
                (member_id, company_id),
            )
            return cur.fetchone() is not None

    def _update(
        self,
        table: str,
        columns: dict[str, Any],
        row_id: str,
        extra: tuple[str, str] | None = None,
    ) -> bool:
        assignments = sql.SQL(", ").join(
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in columns
        )
        where = sql.SQL("id = %s")
        params: list[Any] = [*columns.values(), row_id]
        if extra is not None:
            where = sql.SQL("{} AND {} = %s").format(where, sql.Identifier(extra[0]))
            params.append(extra[1])
        query = sql.SQL("UPDATE {} SET {} WHERE {}").format(sql.Identifier(table), assignments, where)
        with self._cursor() as (conn, cur):
            cur.execute(query, params)
            updated = cur.rowcount == 1
            conn.commit()
        return updated

    def _map_account(self, row: tuple) -> Account:
        """Convert a raw ``users`` tuple into the domain ``Account`` dataclass."""
        return Account(
            user_id=str(row[0]),
            email=row[1],
            role=row[2],
            is_superuser=bool(row[3]),
            company_id=str(row[4]) if row[4] is not None else None,
            full_name=row[5],
            is_active=row[6] if row[6] is not None else True,
            created_at=row[7],
        )

    def _map_company(self, row: tuple) -> Company:
        """Convert a raw ``companies`` tuple into the domain ``Company`` dataclass."""
        return Company(
            company_id=str(row[0]),
            name=row[1],
            billing_plan=row[2] or "free",
            actual_plan=row[3] or "free",
            subscription_status=row[4] or "active",
            overage_behavior=row[5],
            contracts_used_this_period=row[6] or 0,
            billing_period_start=row[7],
            created_at=row[8],
        )

    def _map_property(self, row: tuple) -> Property:
        return Property(
            property_id=str(row[0]),
            company_id=str(row[1]) if row[1] is not None else None,
            address=row[2],
            city=row[3],
            state=row[4],
            zip=row[5],
            status=row[6],
        )

    def _map_contract(self, row: tuple) -> Contract:
        """Convert a ``contracts`` row joined with its property into a ``Contract``."""
        linked = None
        if row[12] is not None:
            linked = Property(
                property_id=str(row[12]),
                company_id=str(row[1]),
                address=row[13],
                city=row[14],
                state=row[15],
                zip=row[16],
                status=row[17],
            )
        return Contract(
            contract_id=str(row[0]),
            company_id=str(row[1]),
            status=row[2],
            seller_name=row[3],
            seller_email=row[4],
            buyer_name=row[5],
            buyer_email=row[6],
            price=row[7],
            custom_fields=row[8] or {},
            sent_at=row[9],
            completed_at=row[10],
            created_at=row[11],
            linked_property=linked,
        )

    def _map_template(self, row: tuple) -> Template:
        return Template(
            template_id=str(row[0]),
            company_id=str(row[1]) if row[1] is not None else None,
            name=row[2],
            description=row[3],
            tags=list(row[4] or []),
            html_content=row[5] or "",
            signature_layout=row[6] or "two-column",
            custom_fields=list(row[7] or []),
            field_config=row[8],
            is_example=bool(row[9]),
            created_at=row[10],
        )
