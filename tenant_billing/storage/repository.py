"""
Repository pattern for data access.

Handles database operations and data persistence logic for billing cycles,
invoices, payment results, subscriptions, payment tokens, the notification
outbox, the operation log and shard progress.

State transitions are compare-and-set updates (``UPDATE ... WHERE status = ?``)
so a transition either happens exactly once or reports that it did not.
"""

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from decimal import Decimal
from typing import Dict, Iterator, List, Optional, Sequence, Set, Tuple

from .db import DEFAULT_DB_PATH, get_connection, transaction
from .locks import KeyedLocks
from .models import (
    BillingCycle,
    CycleFilter,
    CycleStatus,
    Invoice,
    InvoiceFilter,
    InvoiceStatus,
    NotificationRecord,
    NotificationStatus,
    OperationLogEntry,
    Page,
    PaymentAttempt,
    PaymentResult,
    PaymentStatus,
    PaymentToken,
    Subscription,
)

CYCLE_SORT_COLUMNS = {"period_start", "period_end", "created_at", "updated_at", "tenant_id", "status", "retry_count"}
INVOICE_SORT_COLUMNS = {"issued_at", "due_at", "total_amount", "tenant_id", "status"}

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS billing_cycle (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        period_start TEXT NOT NULL,
        period_end TEXT NOT NULL,
        status TEXT NOT NULL,
        retry_count INTEGER NOT NULL DEFAULT 0,
        invoice_id TEXT,
        payment_id TEXT,
        warning_emitted INTEGER NOT NULL DEFAULT 0,
        warning_emitted_at TEXT,
        finalized INTEGER NOT NULL DEFAULT 0,
        finalized_at TEXT,
        last_error TEXT,
        renewal_status TEXT,
        renewal_reason TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT,
        UNIQUE (tenant_id, period_start, period_end)
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_billing_cycle_status ON billing_cycle (status)",
    """
    CREATE TABLE IF NOT EXISTS invoice (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        cycle_id TEXT NOT NULL UNIQUE REFERENCES billing_cycle (id),
        base_amount TEXT NOT NULL,
        prorated_amount TEXT NOT NULL,
        tax_amount TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        status TEXT NOT NULL,
        issued_at TEXT NOT NULL,
        due_at TEXT NOT NULL,
        currency TEXT NOT NULL,
        usage_units INTEGER NOT NULL DEFAULT 0,
        signed INTEGER NOT NULL DEFAULT 0,
        signature_timestamp TEXT,
        signature_format TEXT,
        signature_value TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_result (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        cycle_id TEXT NOT NULL,
        invoice_id TEXT NOT NULL REFERENCES invoice (id),
        amount TEXT NOT NULL,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 1,
        attempt_log TEXT NOT NULL DEFAULT '[]',
        transaction_id TEXT UNIQUE,
        failure_reason TEXT,
        recoverable INTEGER NOT NULL DEFAULT 0,
        gateway_provider TEXT,
        reversed INTEGER NOT NULL DEFAULT 0,
        reversal_reason TEXT,
        reversal_actor TEXT,
        reversed_at TEXT,
        created_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    # At most one successful payment per invoice.
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_payment_result_success
    ON payment_result (invoice_id) WHERE status = 'SUCCESS'
    """,
    """
    CREATE TABLE IF NOT EXISTS subscription (
        tenant_id TEXT PRIMARY KEY,
        plan_code TEXT NOT NULL,
        tier TEXT NOT NULL,
        country_code TEXT NOT NULL,
        contract_end TEXT,
        current_period_start TEXT NOT NULL,
        current_period_end TEXT NOT NULL,
        last_renewed_cycle_id TEXT,
        suspended INTEGER NOT NULL DEFAULT 0,
        suspended_reason TEXT,
        suspended_at TEXT,
        cancelled INTEGER NOT NULL DEFAULT 0,
        cancelled_reason TEXT,
        cancelled_at TEXT,
        reactivated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_token (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        encrypted_payload TEXT NOT NULL,
        expires_at TEXT NOT NULL,
        gateway_provider TEXT NOT NULL,
        revoked INTEGER NOT NULL DEFAULT 0,
        reusable INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS token_consumption (
        token_id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        invoice_id TEXT,
        consumed_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS notification_outbox (
        id TEXT PRIMARY KEY,
        tenant_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        payload TEXT NOT NULL,
        cycle_id TEXT,
        invoice_id TEXT,
        status TEXT NOT NULL,
        attempts INTEGER NOT NULL DEFAULT 0,
        last_error TEXT,
        dedupe_key TEXT UNIQUE,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS operation_log (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        tenant_id TEXT NOT NULL,
        cycle_id TEXT NOT NULL,
        step TEXT NOT NULL,
        outcome TEXT NOT NULL,
        detail TEXT NOT NULL DEFAULT '',
        timestamp TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shard_progress (
        run_id TEXT NOT NULL,
        shard_id INTEGER NOT NULL,
        tenant_id TEXT NOT NULL,
        processed_at TEXT NOT NULL,
        PRIMARY KEY (run_id, tenant_id)
    )
    """,
]


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create all billing tables if they don't exist.

    Args:
        db_path: Path to SQLite database file
    """
    with transaction(db_path) as conn:
        for statement in SCHEMA:
            conn.execute(statement)


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _now() -> datetime:
    return datetime.now()


def _row_to_cycle(row: sqlite3.Row) -> BillingCycle:
    return BillingCycle(
        id=row["id"],
        tenant_id=row["tenant_id"],
        period_start=_parse_date(row["period_start"]),
        period_end=_parse_date(row["period_end"]),
        status=CycleStatus(row["status"]),
        retry_count=row["retry_count"],
        invoice_id=row["invoice_id"],
        payment_id=row["payment_id"],
        warning_emitted=bool(row["warning_emitted"]),
        warning_emitted_at=_parse_ts(row["warning_emitted_at"]),
        finalized=bool(row["finalized"]),
        finalized_at=_parse_ts(row["finalized_at"]),
        last_error=row["last_error"],
        renewal_status=row["renewal_status"],
        renewal_reason=row["renewal_reason"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
        completed_at=_parse_ts(row["completed_at"]),
    )


def _row_to_invoice(row: sqlite3.Row) -> Invoice:
    return Invoice(
        id=row["id"],
        tenant_id=row["tenant_id"],
        cycle_id=row["cycle_id"],
        base_amount=Decimal(row["base_amount"]),
        prorated_amount=Decimal(row["prorated_amount"]),
        tax_amount=Decimal(row["tax_amount"]),
        total_amount=Decimal(row["total_amount"]),
        status=InvoiceStatus(row["status"]),
        issued_at=_parse_ts(row["issued_at"]),
        due_at=_parse_ts(row["due_at"]),
        currency=row["currency"],
        usage_units=row["usage_units"],
        signed=bool(row["signed"]),
        signature_timestamp=_parse_ts(row["signature_timestamp"]),
        signature_format=row["signature_format"],
        signature_value=row["signature_value"],
    )


def _encode_attempts(attempts: Sequence[PaymentAttempt]) -> str:
    return json.dumps([
        {"at": a.at.isoformat(), "outcome": a.outcome, "detail": a.detail}
        for a in attempts
    ])


def _decode_attempts(raw: str) -> Tuple[PaymentAttempt, ...]:
    return tuple(
        PaymentAttempt(at=datetime.fromisoformat(a["at"]), outcome=a["outcome"], detail=a.get("detail", ""))
        for a in json.loads(raw or "[]")
    )


def _row_to_payment(row: sqlite3.Row) -> PaymentResult:
    return PaymentResult(
        id=row["id"],
        tenant_id=row["tenant_id"],
        cycle_id=row["cycle_id"],
        invoice_id=row["invoice_id"],
        amount=Decimal(row["amount"]),
        status=PaymentStatus(row["status"]),
        attempts=row["attempts"],
        attempt_log=_decode_attempts(row["attempt_log"]),
        transaction_id=row["transaction_id"],
        failure_reason=row["failure_reason"],
        recoverable=bool(row["recoverable"]),
        gateway_provider=row["gateway_provider"],
        reversed=bool(row["reversed"]),
        reversal_reason=row["reversal_reason"],
        reversal_actor=row["reversal_actor"],
        reversed_at=_parse_ts(row["reversed_at"]),
        created_at=_parse_ts(row["created_at"]),
        completed_at=_parse_ts(row["completed_at"]),
    )


def _row_to_subscription(row: sqlite3.Row) -> Subscription:
    return Subscription(
        tenant_id=row["tenant_id"],
        plan_code=row["plan_code"],
        tier=row["tier"],
        country_code=row["country_code"],
        contract_end=_parse_date(row["contract_end"]),
        current_period_start=_parse_date(row["current_period_start"]),
        current_period_end=_parse_date(row["current_period_end"]),
        last_renewed_cycle_id=row["last_renewed_cycle_id"],
        suspended=bool(row["suspended"]),
        suspended_reason=row["suspended_reason"],
        suspended_at=_parse_ts(row["suspended_at"]),
        cancelled=bool(row["cancelled"]),
        cancelled_reason=row["cancelled_reason"],
        cancelled_at=_parse_ts(row["cancelled_at"]),
        reactivated_at=_parse_ts(row["reactivated_at"]),
    )


def _row_to_token(row: sqlite3.Row) -> PaymentToken:
    return PaymentToken(
        id=row["id"],
        tenant_id=row["tenant_id"],
        encrypted_payload=row["encrypted_payload"],
        expires_at=_parse_ts(row["expires_at"]),
        gateway_provider=row["gateway_provider"],
        revoked=bool(row["revoked"]),
        reusable=bool(row["reusable"]),
    )


def _row_to_notification(row: sqlite3.Row) -> NotificationRecord:
    return NotificationRecord(
        id=row["id"],
        tenant_id=row["tenant_id"],
        kind=row["kind"],
        payload=row["payload"],
        cycle_id=row["cycle_id"],
        invoice_id=row["invoice_id"],
        status=NotificationStatus(row["status"]),
        attempts=row["attempts"],
        last_error=row["last_error"],
        dedupe_key=row["dedupe_key"],
        created_at=_parse_ts(row["created_at"]),
    )


def _paginate(page: int, page_size: int) -> Tuple[int, int]:
    if page < 1:
        raise ValueError("page must be >= 1")
    if page_size < 1 or page_size > 500:
        raise ValueError("page_size must be between 1 and 500")
    return page_size, (page - 1) * page_size


class BillingRepository:
    """Repository for billing state.

    Each operation opens its own connection, as SQLite connections are not
    shared across threads. The repository also owns the per-key lock
    registries used for exclusive read-for-update sections, so every component
    sharing a repository instance shares its locks.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._cycle_locks = KeyedLocks()
        self._tenant_locks = KeyedLocks()

    # -- locking -----------------------------------------------------------

    @contextmanager
    def lock_cycle(self, tenant_id: str, cycle_id: str) -> Iterator[None]:
        """Exclusive section for one (tenant, cycle) key."""
        with self._cycle_locks.hold((tenant_id, cycle_id)):
            yield

    @contextmanager
    def lock_tenant(self, tenant_id: str) -> Iterator[None]:
        """Exclusive section for subscription mutations of one tenant."""
        with self._tenant_locks.hold(tenant_id):
            yield

    # -- billing cycles ----------------------------------------------------

    def create_cycle(self, cycle: BillingCycle) -> bool:
        """Insert a cycle; returns False if the (tenant, period) already exists."""
        now = _ts(_now())
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO billing_cycle
                (id, tenant_id, period_start, period_end, status, retry_count,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                cycle.id,
                cycle.tenant_id,
                cycle.period_start.isoformat(),
                cycle.period_end.isoformat(),
                cycle.status.value,
                cycle.retry_count,
                _ts(cycle.created_at) or now,
                now,
            ))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def get_cycle(self, cycle_id: str) -> Optional[BillingCycle]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM billing_cycle WHERE id = ?", (cycle_id,)).fetchone()
            return _row_to_cycle(row) if row else None
        finally:
            conn.close()

    def find_cycle_for_period(self, tenant_id: str, period_start: date, period_end: date) -> Optional[BillingCycle]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT * FROM billing_cycle
                WHERE tenant_id = ? AND period_start = ? AND period_end = ?
            """, (tenant_id, period_start.isoformat(), period_end.isoformat())).fetchone()
            return _row_to_cycle(row) if row else None
        finally:
            conn.close()

    def list_cycles(
        self,
        tenant_id: Optional[str] = None,
        statuses: Sequence[CycleStatus] = (),
        limit: int = 1000
    ) -> List[BillingCycle]:
        """List cycles ordered by period start (oldest first)."""
        query = "SELECT * FROM billing_cycle"
        params: list = []
        conditions = []
        if tenant_id:
            conditions.append("tenant_id = ?")
            params.append(tenant_id)
        if statuses:
            conditions.append(f"status IN ({', '.join('?' for _ in statuses)})")
            params.extend(s.value for s in statuses)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY period_start ASC, id ASC LIMIT ?"
        params.append(limit)
        conn = get_connection(self.db_path)
        try:
            return [_row_to_cycle(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def transition_cycle(
        self,
        cycle_id: str,
        from_statuses: Sequence[CycleStatus],
        to_status: CycleStatus,
        **fields
    ) -> Optional[BillingCycle]:
        """Compare-and-set a cycle's status.

        Args:
            cycle_id: Cycle identifier
            from_statuses: Statuses the cycle must currently be in
            to_status: New status
            **fields: Extra columns to set in the same statement
                (invoice_id, payment_id, last_error, completed_at,
                retry_increment)

        Returns:
            The updated cycle, or None if the cycle was not in ``from_statuses``
        """
        assignments = ["status = ?", "updated_at = ?"]
        params: list = [to_status.value, _ts(_now())]
        retry_increment = fields.pop("retry_increment", 0)
        if retry_increment:
            assignments.append("retry_count = retry_count + ?")
            params.append(retry_increment)
        for column in ("invoice_id", "payment_id", "last_error", "completed_at"):
            if column in fields:
                value = fields.pop(column)
                assignments.append(f"{column} = ?")
                params.append(_ts(value) if isinstance(value, datetime) else value)
        if fields:
            raise ValueError(f"Unknown cycle fields: {sorted(fields)}")
        params.append(cycle_id)
        params.extend(s.value for s in from_statuses)
        with transaction(self.db_path) as conn:
            cursor = conn.execute(
                f"UPDATE billing_cycle SET {', '.join(assignments)} "
                f"WHERE id = ? AND status IN ({', '.join('?' for _ in from_statuses)})",
                params,
            )
            if cursor.rowcount != 1:
                return None
            row = conn.execute("SELECT * FROM billing_cycle WHERE id = ?", (cycle_id,)).fetchone()
            return _row_to_cycle(row)

    def mark_warning_emitted(self, cycle_id: str, at: datetime) -> bool:
        """Set the cancellation-warning flag once. False if already set."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE billing_cycle
                SET warning_emitted = 1, warning_emitted_at = ?, updated_at = ?
                WHERE id = ? AND warning_emitted = 0
            """, (_ts(at), _ts(_now()), cycle_id))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def mark_finalized(self, cycle_id: str, at: datetime) -> bool:
        """Set the non-payment finalized flag once. False if already set."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE billing_cycle
                SET finalized = 1, finalized_at = ?, updated_at = ?
                WHERE id = ? AND finalized = 0
            """, (_ts(at), _ts(_now()), cycle_id))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def record_renewal(self, cycle_id: str, status: str, reason: Optional[str] = None) -> None:
        """Store the latest renewal decision of a cycle and its reason code."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE billing_cycle SET renewal_status = ?, renewal_reason = ?, updated_at = ?
                WHERE id = ?
            """, (status, reason, _ts(_now()), cycle_id))
        finally:
            conn.close()

    def renewal_candidates(self, tenant_id: Optional[str] = None, limit: int = 1000) -> List[BillingCycle]:
        """Each tenant's latest COMPLETED cycle, if its renewal is undecided or pending."""
        query = """
            SELECT c.* FROM billing_cycle c
            WHERE c.status = ?
              AND (c.renewal_status IS NULL OR c.renewal_status = 'PENDING')
              AND NOT EXISTS (
                  SELECT 1 FROM billing_cycle later
                  WHERE later.tenant_id = c.tenant_id
                    AND later.status = ?
                    AND later.period_start > c.period_start
              )
        """
        params: list = [CycleStatus.COMPLETED.value, CycleStatus.COMPLETED.value]
        if tenant_id:
            query += " AND c.tenant_id = ?"
            params.append(tenant_id)
        query += " ORDER BY c.tenant_id ASC, c.period_start ASC LIMIT ?"
        params.append(limit)
        conn = get_connection(self.db_path)
        try:
            return [_row_to_cycle(row) for row in conn.execute(query, params).fetchall()]
        finally:
            conn.close()

    def query_cycles(
        self,
        filters: CycleFilter,
        page: int = 1,
        page_size: int = 50,
        sort_by: str = "period_start",
        descending: bool = True
    ) -> Page:
        """Filtered, sorted, paginated cycle listing for audit.

        Raises:
            ValueError: If sort column or pagination values are invalid
        """
        if sort_by not in CYCLE_SORT_COLUMNS:
            raise ValueError(f"Unsupported sort column: {sort_by}")
        limit, offset = _paginate(page, page_size)
        conditions = []
        params: list = []
        if filters.tenant_id:
            conditions.append("tenant_id = ?")
            params.append(filters.tenant_id)
        if filters.statuses:
            conditions.append(f"status IN ({', '.join('?' for _ in filters.statuses)})")
            params.extend(s.value for s in filters.statuses)
        if filters.period_from:
            conditions.append("period_start >= ?")
            params.append(filters.period_from.isoformat())
        if filters.period_to:
            conditions.append("period_end <= ?")
            params.append(filters.period_to.isoformat())
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        order = "DESC" if descending else "ASC"
        conn = get_connection(self.db_path)
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM billing_cycle{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM billing_cycle{where} ORDER BY {sort_by} {order}, id {order} LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            return Page(items=[_row_to_cycle(r) for r in rows], total=total, page=page, page_size=page_size)
        finally:
            conn.close()

    # -- invoices ----------------------------------------------------------

    def save_invoice(self, invoice: Invoice) -> None:
        """Insert an invoice. Fails with IntegrityError if the cycle already has one."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO invoice
                (id, tenant_id, cycle_id, base_amount, prorated_amount, tax_amount,
                 total_amount, status, issued_at, due_at, currency, usage_units,
                 signed, signature_timestamp, signature_format, signature_value)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                invoice.id,
                invoice.tenant_id,
                invoice.cycle_id,
                str(invoice.base_amount),
                str(invoice.prorated_amount),
                str(invoice.tax_amount),
                str(invoice.total_amount),
                invoice.status.value,
                _ts(invoice.issued_at),
                _ts(invoice.due_at),
                invoice.currency,
                invoice.usage_units,
                int(invoice.signed),
                _ts(invoice.signature_timestamp),
                invoice.signature_format,
                invoice.signature_value,
            ))
        finally:
            conn.close()

    def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM invoice WHERE id = ?", (invoice_id,)).fetchone()
            return _row_to_invoice(row) if row else None
        finally:
            conn.close()

    def get_invoice_for_cycle(self, cycle_id: str) -> Optional[Invoice]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM invoice WHERE cycle_id = ?", (cycle_id,)).fetchone()
            return _row_to_invoice(row) if row else None
        finally:
            conn.close()

    def update_invoice_status(self, invoice_id: str, status: InvoiceStatus) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("UPDATE invoice SET status = ? WHERE id = ?", (status.value, invoice_id))
        finally:
            conn.close()

    def query_invoices(
        self,
        filters: InvoiceFilter,
        page: int = 1,
        page_size: int = 50,
        sort_by: str = "issued_at",
        descending: bool = True
    ) -> Page:
        """Filtered, sorted, paginated invoice history for audit.

        Amounts are stored as text, so the minimum-total filter and the
        ``total_amount`` sort compare numerically via CAST.
        """
        if sort_by not in INVOICE_SORT_COLUMNS:
            raise ValueError(f"Unsupported sort column: {sort_by}")
        limit, offset = _paginate(page, page_size)
        conditions = []
        params: list = []
        if filters.tenant_id:
            conditions.append("tenant_id = ?")
            params.append(filters.tenant_id)
        if filters.statuses:
            conditions.append(f"status IN ({', '.join('?' for _ in filters.statuses)})")
            params.extend(s.value for s in filters.statuses)
        if filters.issued_from:
            conditions.append("issued_at >= ?")
            params.append(_ts(filters.issued_from))
        if filters.issued_to:
            conditions.append("issued_at <= ?")
            params.append(_ts(filters.issued_to))
        if filters.min_total is not None:
            conditions.append("CAST(total_amount AS REAL) >= CAST(? AS REAL)")
            params.append(str(filters.min_total))
        where = (" WHERE " + " AND ".join(conditions)) if conditions else ""
        order = "DESC" if descending else "ASC"
        sort_expr = "CAST(total_amount AS REAL)" if sort_by == "total_amount" else sort_by
        conn = get_connection(self.db_path)
        try:
            total = conn.execute(f"SELECT COUNT(*) FROM invoice{where}", params).fetchone()[0]
            rows = conn.execute(
                f"SELECT * FROM invoice{where} ORDER BY {sort_expr} {order}, id {order} LIMIT ? OFFSET ?",
                params + [limit, offset],
            ).fetchall()
            return Page(items=[_row_to_invoice(r) for r in rows], total=total, page=page, page_size=page_size)
        finally:
            conn.close()

    # -- payment results ---------------------------------------------------

    def insert_payment(self, payment: PaymentResult) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO payment_result
                (id, tenant_id, cycle_id, invoice_id, amount, status, attempts,
                 attempt_log, transaction_id, failure_reason, recoverable,
                 gateway_provider, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                payment.id,
                payment.tenant_id,
                payment.cycle_id,
                payment.invoice_id,
                str(payment.amount),
                payment.status.value,
                payment.attempts,
                _encode_attempts(payment.attempt_log),
                payment.transaction_id,
                payment.failure_reason,
                int(payment.recoverable),
                payment.gateway_provider,
                _ts(payment.created_at or _now()),
            ))
        finally:
            conn.close()

    def complete_payment(
        self,
        payment_id: str,
        status: PaymentStatus,
        attempt: PaymentAttempt,
        transaction_id: Optional[str] = None,
        failure_reason: Optional[str] = None,
        recoverable: bool = False
    ) -> PaymentResult:
        """Move a Pending payment to Success or Failed exactly once.

        Raises:
            ValueError: If the payment is missing or no longer Pending
        """
        if status == PaymentStatus.PENDING:
            raise ValueError("A payment can only complete to SUCCESS or FAILED")
        with transaction(self.db_path) as conn:
            row = conn.execute("SELECT * FROM payment_result WHERE id = ?", (payment_id,)).fetchone()
            if row is None or row["status"] != PaymentStatus.PENDING.value:
                raise ValueError(f"Payment {payment_id} is not pending")
            log = _decode_attempts(row["attempt_log"]) + (attempt,)
            conn.execute("""
                UPDATE payment_result
                SET status = ?, transaction_id = ?, failure_reason = ?, recoverable = ?,
                    attempt_log = ?, completed_at = ?
                WHERE id = ? AND status = ?
            """, (
                status.value,
                transaction_id,
                failure_reason,
                int(recoverable),
                _encode_attempts(log),
                _ts(attempt.at),
                payment_id,
                PaymentStatus.PENDING.value,
            ))
            row = conn.execute("SELECT * FROM payment_result WHERE id = ?", (payment_id,)).fetchone()
            return _row_to_payment(row)

    def get_payment(self, payment_id: str) -> Optional[PaymentResult]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM payment_result WHERE id = ?", (payment_id,)).fetchone()
            return _row_to_payment(row) if row else None
        finally:
            conn.close()

    def find_successful_payment(self, invoice_id: str) -> Optional[PaymentResult]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT * FROM payment_result WHERE invoice_id = ? AND status = ?
            """, (invoice_id, PaymentStatus.SUCCESS.value)).fetchone()
            return _row_to_payment(row) if row else None
        finally:
            conn.close()

    def find_payment_by_transaction(self, transaction_id: str) -> Optional[PaymentResult]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM payment_result WHERE transaction_id = ?", (transaction_id,)
            ).fetchone()
            return _row_to_payment(row) if row else None
        finally:
            conn.close()

    def list_payments_for_invoice(self, invoice_id: str) -> List[PaymentResult]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM payment_result WHERE invoice_id = ?
                ORDER BY attempts ASC, created_at ASC
            """, (invoice_id,)).fetchall()
            return [_row_to_payment(r) for r in rows]
        finally:
            conn.close()

    def mark_payment_reversed(self, payment_id: str, reason: str, actor: str, at: datetime) -> bool:
        """Record a reversal once. False if already reversed or not Success."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                UPDATE payment_result
                SET reversed = 1, reversal_reason = ?, reversal_actor = ?, reversed_at = ?
                WHERE id = ? AND reversed = 0 AND status = ?
            """, (reason, actor, _ts(at), payment_id, PaymentStatus.SUCCESS.value))
            return cursor.rowcount == 1
        finally:
            conn.close()

    # -- subscriptions -----------------------------------------------------

    def save_subscription(self, subscription: Subscription) -> None:
        """Insert or replace a subscription. Callers hold ``lock_tenant``."""
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO subscription
                (tenant_id, plan_code, tier, country_code, contract_end,
                 current_period_start, current_period_end, last_renewed_cycle_id,
                 suspended, suspended_reason, suspended_at,
                 cancelled, cancelled_reason, cancelled_at, reactivated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                subscription.tenant_id,
                subscription.plan_code,
                subscription.tier,
                subscription.country_code,
                subscription.contract_end.isoformat() if subscription.contract_end else None,
                subscription.current_period_start.isoformat(),
                subscription.current_period_end.isoformat(),
                subscription.last_renewed_cycle_id,
                int(subscription.suspended),
                subscription.suspended_reason,
                _ts(subscription.suspended_at),
                int(subscription.cancelled),
                subscription.cancelled_reason,
                _ts(subscription.cancelled_at),
                _ts(subscription.reactivated_at),
            ))
        finally:
            conn.close()

    def get_subscription(self, tenant_id: str) -> Optional[Subscription]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM subscription WHERE tenant_id = ?", (tenant_id,)).fetchone()
            return _row_to_subscription(row) if row else None
        finally:
            conn.close()

    def list_tenant_ids(self, include_cancelled: bool = False) -> List[str]:
        query = "SELECT tenant_id FROM subscription"
        if not include_cancelled:
            query += " WHERE cancelled = 0"
        query += " ORDER BY tenant_id"
        conn = get_connection(self.db_path)
        try:
            return [row[0] for row in conn.execute(query).fetchall()]
        finally:
            conn.close()

    # -- payment tokens ----------------------------------------------------

    def save_token(self, token: PaymentToken) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT OR REPLACE INTO payment_token
                (id, tenant_id, encrypted_payload, expires_at, gateway_provider,
                 revoked, reusable, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                token.id,
                token.tenant_id,
                token.encrypted_payload,
                _ts(token.expires_at),
                token.gateway_provider,
                int(token.revoked),
                int(token.reusable),
                _ts(_now()),
            ))
        finally:
            conn.close()

    def get_token(self, token_id: str) -> Optional[PaymentToken]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("SELECT * FROM payment_token WHERE id = ?", (token_id,)).fetchone()
            return _row_to_token(row) if row else None
        finally:
            conn.close()

    def get_current_token(self, tenant_id: str) -> Optional[PaymentToken]:
        """Most recently stored non-revoked token of a tenant."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute("""
                SELECT * FROM payment_token
                WHERE tenant_id = ? AND revoked = 0
                ORDER BY created_at DESC, rowid DESC LIMIT 1
            """, (tenant_id,)).fetchone()
            return _row_to_token(row) if row else None
        finally:
            conn.close()

    def consume_token(self, token_id: str, tenant_id: str, at: datetime, invoice_id: Optional[str] = None) -> bool:
        """Record a token as used for an invoice.

        Returns:
            True if this call consumed it, or if it was already consumed for
            the same invoice; False if it was consumed elsewhere
        """
        with transaction(self.db_path) as conn:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO token_consumption (token_id, tenant_id, invoice_id, consumed_at)
                VALUES (?, ?, ?, ?)
            """, (token_id, tenant_id, invoice_id, _ts(at)))
            if cursor.rowcount == 1:
                return True
            row = conn.execute(
                "SELECT invoice_id FROM token_consumption WHERE token_id = ?", (token_id,)
            ).fetchone()
            return invoice_id is not None and row["invoice_id"] == invoice_id

    def is_token_consumed(self, token_id: str, invoice_id: Optional[str] = None) -> bool:
        """True if the token was consumed by anything other than ``invoice_id``."""
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT invoice_id FROM token_consumption WHERE token_id = ?", (token_id,)
            ).fetchone()
            if row is None:
                return False
            return invoice_id is None or row["invoice_id"] != invoice_id
        finally:
            conn.close()

    # -- notification outbox -----------------------------------------------

    def insert_notification(self, record: NotificationRecord) -> bool:
        """Write an outbox row. Returns False if its dedupe key is already queued."""
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO notification_outbox
                (id, tenant_id, kind, payload, cycle_id, invoice_id, status,
                 attempts, last_error, dedupe_key, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.tenant_id,
                record.kind,
                record.payload,
                record.cycle_id,
                record.invoice_id,
                record.status.value,
                record.attempts,
                record.last_error,
                record.dedupe_key,
                _ts(record.created_at or _now()),
            ))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def record_notification_attempt(
        self,
        notification_id: str,
        status: NotificationStatus,
        error: Optional[str] = None
    ) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                UPDATE notification_outbox
                SET status = ?, attempts = attempts + 1, last_error = ?
                WHERE id = ?
            """, (status.value, error, notification_id))
        finally:
            conn.close()

    def get_notification(self, notification_id: str) -> Optional[NotificationRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM notification_outbox WHERE id = ?", (notification_id,)
            ).fetchone()
            return _row_to_notification(row) if row else None
        finally:
            conn.close()

    def get_notification_by_key(self, dedupe_key: str) -> Optional[NotificationRecord]:
        conn = get_connection(self.db_path)
        try:
            row = conn.execute(
                "SELECT * FROM notification_outbox WHERE dedupe_key = ?", (dedupe_key,)
            ).fetchone()
            return _row_to_notification(row) if row else None
        finally:
            conn.close()

    def pending_notifications(self, limit: int = 100) -> List[NotificationRecord]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT * FROM notification_outbox WHERE status = ?
                ORDER BY created_at ASC LIMIT ?
            """, (NotificationStatus.PENDING.value, limit)).fetchall()
            return [_row_to_notification(r) for r in rows]
        finally:
            conn.close()

    # -- operation log -----------------------------------------------------

    def log_operation(self, entry: OperationLogEntry) -> None:
        conn = get_connection(self.db_path)
        try:
            conn.execute("""
                INSERT INTO operation_log (tenant_id, cycle_id, step, outcome, detail, timestamp)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                entry.tenant_id,
                entry.cycle_id,
                entry.step,
                entry.outcome,
                entry.detail,
                _ts(entry.timestamp or _now()),
            ))
        finally:
            conn.close()

    def operation_log(self, tenant_id: str, cycle_id: Optional[str] = None) -> List[OperationLogEntry]:
        """Operation log of a tenant (optionally one cycle), oldest first."""
        query = "SELECT * FROM operation_log WHERE tenant_id = ?"
        params = [tenant_id]
        if cycle_id:
            query += " AND cycle_id = ?"
            params.append(cycle_id)
        query += " ORDER BY id ASC"
        conn = get_connection(self.db_path)
        try:
            return [
                OperationLogEntry(
                    tenant_id=row["tenant_id"],
                    cycle_id=row["cycle_id"],
                    step=row["step"],
                    outcome=row["outcome"],
                    detail=row["detail"],
                    timestamp=_parse_ts(row["timestamp"]),
                )
                for row in conn.execute(query, params).fetchall()
            ]
        finally:
            conn.close()

    # -- shard progress ----------------------------------------------------

    def mark_shard_tenant_processed(self, run_id: str, shard_id: int, tenant_id: str) -> bool:
        conn = get_connection(self.db_path)
        try:
            cursor = conn.execute("""
                INSERT OR IGNORE INTO shard_progress (run_id, shard_id, tenant_id, processed_at)
                VALUES (?, ?, ?, ?)
            """, (run_id, shard_id, tenant_id, _ts(_now())))
            return cursor.rowcount == 1
        finally:
            conn.close()

    def processed_shard_tenants(self, run_id: str, shard_id: int) -> Set[str]:
        conn = get_connection(self.db_path)
        try:
            rows = conn.execute("""
                SELECT tenant_id FROM shard_progress WHERE run_id = ? AND shard_id = ?
            """, (run_id, shard_id)).fetchall()
            return {row[0] for row in rows}
        finally:
            conn.close()


def new_id(prefix: str) -> str:
    """Generate a prefixed unique identifier, e.g. ``inv_3f2a...``."""
    return f"{prefix}_{uuid.uuid4().hex}"


# Global repository instances, one per database path
_repositories: Dict[str, BillingRepository] = {}


def get_repository(db_path: str = DEFAULT_DB_PATH) -> BillingRepository:
    """Get a repository instance.

    Repositories are shared per database path so every caller in the process
    shares the same lock registries.

    Args:
        db_path: Path to SQLite database file

    Returns:
        An instance of BillingRepository
    """
    repository = _repositories.get(db_path)
    if repository is None:
        repository = BillingRepository(db_path)
        _repositories[db_path] = repository
    return repository
