"""
SQLite-based bill store.

Persists documents, bills, line items, payment schedules and journal
entries. Foreign keys are enforced per connection so deleting a document
cascades to its bill and everything the bill owns.
"""

import sqlite3
import json
from contextlib import contextmanager
from datetime import date, datetime, UTC
from typing import Iterator, Optional
from loguru import logger
from .store_base import BillStoreBase


DOCUMENT_COLUMNS = {
    "file_name", "file_path", "file_size", "file_type", "file_hash",
    "document_category", "payment_method", "drop_name", "notes", "status",
    "raw_text", "raw_text_hash", "extracted_data", "extraction_state",
    "quality_score", "verification_status", "verification_reason",
    "bill_date_locked", "total_locked", "ai_attempt_count", "ai_last_attempt_at",
    "ai_last_error", "processing_started_at", "uploaded_by",
}

BILL_COLUMNS = (
    "vendor_id", "bill_number", "bill_date", "subtotal", "tax_amount", "total_amount",
    "category", "category_group", "drop_name", "payment_method", "confidence_score", "provider",
)

BILL_UPDATABLE = set(BILL_COLUMNS) | {"payment_status", "status", "posted_at", "journal_id"}

# Applied when a saved bill leaves these out or passes None
BILL_DEFAULTS = {"subtotal": 0, "tax_amount": 0}

ITEM_COLUMNS = (
    "description", "sku_code", "quantity", "unit_price", "amount",
    "coa_account_id", "department_id", "drop_id", "is_postable", "posting_status", "go_live_eligible",
)

_JSON_COLUMNS = {"extracted_data", "extraction_state"}
_BOOL_COLUMNS = {"bill_date_locked", "total_locked", "is_postable", "go_live_eligible", "is_active"}

_SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS documents (
        document_id INTEGER PRIMARY KEY AUTOINCREMENT,
        file_name TEXT NOT NULL,
        file_path TEXT,
        file_size INTEGER,
        file_type TEXT,
        file_hash TEXT,
        document_category TEXT,
        payment_method TEXT,
        drop_name TEXT,
        notes TEXT,
        status TEXT NOT NULL DEFAULT 'uploaded',
        raw_text TEXT,
        raw_text_hash TEXT,
        extracted_data TEXT,
        extraction_state TEXT,
        quality_score INTEGER,
        verification_status TEXT NOT NULL DEFAULT 'unverified',
        verification_reason TEXT,
        bill_date_locked INTEGER NOT NULL DEFAULT 0,
        total_locked INTEGER NOT NULL DEFAULT 0,
        ai_attempt_count INTEGER NOT NULL DEFAULT 0,
        ai_last_attempt_at TEXT,
        ai_last_error TEXT,
        processing_started_at TEXT,
        uploaded_by INTEGER,
        uploaded_at TEXT NOT NULL,
        updated_at TEXT,
        CHECK (status IN ('uploaded', 'processing', 'processed', 'manual_required', 'error')),
        CHECK (verification_status IN ('unverified', 'needs_review', 'verified'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vendors (
        vendor_id INTEGER PRIMARY KEY AUTOINCREMENT,
        vendor_name TEXT NOT NULL,
        vendor_code TEXT NOT NULL UNIQUE,
        gstin TEXT,
        pan TEXT,
        address TEXT,
        phone TEXT,
        vendor_type TEXT,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        updated_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS drops (
        drop_id INTEGER PRIMARY KEY AUTOINCREMENT,
        drop_name TEXT NOT NULL UNIQUE,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accounts (
        account_id INTEGER PRIMARY KEY AUTOINCREMENT,
        account_code TEXT NOT NULL UNIQUE,
        account_name TEXT NOT NULL,
        account_type TEXT NOT NULL,
        is_active INTEGER NOT NULL DEFAULT 1,
        created_at TEXT NOT NULL,
        CHECK (account_type IN ('ASSET', 'LIABILITY', 'EQUITY', 'REVENUE', 'EXPENSE', 'COGS'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bills (
        bill_id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id INTEGER NOT NULL UNIQUE REFERENCES documents(document_id) ON DELETE CASCADE,
        vendor_id INTEGER REFERENCES vendors(vendor_id),
        bill_number TEXT,
        bill_date TEXT,
        subtotal REAL NOT NULL DEFAULT 0,
        tax_amount REAL NOT NULL DEFAULT 0,
        total_amount REAL NOT NULL,
        category TEXT,
        category_group TEXT,
        drop_name TEXT,
        payment_method TEXT,
        payment_status TEXT NOT NULL DEFAULT 'pending',
        confidence_score REAL,
        provider TEXT,
        status TEXT NOT NULL DEFAULT 'draft',
        posted_at TEXT,
        journal_id INTEGER,
        created_at TEXT NOT NULL,
        updated_at TEXT,
        CHECK (payment_status IN ('pending', 'partial', 'paid')),
        CHECK (status IN ('draft', 'posted'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS bill_items (
        item_id INTEGER PRIMARY KEY AUTOINCREMENT,
        bill_id INTEGER NOT NULL REFERENCES bills(bill_id) ON DELETE CASCADE,
        description TEXT NOT NULL,
        sku_code TEXT,
        quantity REAL NOT NULL DEFAULT 1,
        unit_price REAL,
        amount REAL NOT NULL,
        line_number INTEGER NOT NULL,
        coa_account_id INTEGER REFERENCES accounts(account_id),
        department_id INTEGER,
        drop_id INTEGER REFERENCES drops(drop_id),
        is_postable INTEGER NOT NULL DEFAULT 1,
        posting_status TEXT NOT NULL DEFAULT 'unposted',
        go_live_eligible INTEGER NOT NULL DEFAULT 0,
        CHECK (posting_status IN ('unposted', 'posted')),
        CHECK (posting_status = 'unposted'
               OR (coa_account_id IS NOT NULL AND department_id IS NOT NULL AND drop_id IS NOT NULL))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_terms (
        terms_id INTEGER PRIMARY KEY AUTOINCREMENT,
        bill_id INTEGER NOT NULL UNIQUE REFERENCES bills(bill_id) ON DELETE CASCADE,
        payment_type TEXT,
        total_amount REAL,
        advance_percentage REAL,
        due_date TEXT,
        net_days INTEGER,
        installment_count INTEGER,
        terms_text TEXT,
        terms_json TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payment_schedule (
        schedule_id INTEGER PRIMARY KEY AUTOINCREMENT,
        bill_id INTEGER NOT NULL REFERENCES bills(bill_id) ON DELETE CASCADE,
        installment_number INTEGER NOT NULL,
        due_date TEXT,
        amount_due REAL NOT NULL,
        amount_paid REAL NOT NULL DEFAULT 0,
        payment_status TEXT NOT NULL DEFAULT 'PENDING',
        paid_at TEXT,
        CHECK (payment_status IN ('PENDING', 'PARTIAL', 'PAID'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS payments (
        payment_id INTEGER PRIMARY KEY AUTOINCREMENT,
        bill_id INTEGER NOT NULL REFERENCES bills(bill_id) ON DELETE CASCADE,
        schedule_id INTEGER REFERENCES payment_schedule(schedule_id) ON DELETE SET NULL,
        payment_date TEXT NOT NULL,
        amount_paid REAL NOT NULL,
        payment_method TEXT,
        notes TEXT,
        created_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journal_entries (
        journal_id INTEGER PRIMARY KEY AUTOINCREMENT,
        entry_date TEXT NOT NULL,
        reference_type TEXT NOT NULL DEFAULT 'BILL',
        bill_id INTEGER NOT NULL REFERENCES bills(bill_id) ON DELETE CASCADE,
        description TEXT,
        total_debit REAL NOT NULL,
        total_credit REAL NOT NULL,
        status TEXT NOT NULL DEFAULT 'posted',
        created_by INTEGER,
        created_at TEXT NOT NULL,
        voided_at TEXT,
        CHECK (status IN ('posted', 'void')),
        CHECK (abs(total_debit - total_credit) < 0.005)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS journal_entry_lines (
        line_id INTEGER PRIMARY KEY AUTOINCREMENT,
        journal_id INTEGER NOT NULL REFERENCES journal_entries(journal_id) ON DELETE CASCADE,
        account_id INTEGER NOT NULL REFERENCES accounts(account_id),
        debit_amount REAL NOT NULL DEFAULT 0,
        credit_amount REAL NOT NULL DEFAULT 0,
        description TEXT,
        line_number INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS document_field_history (
        history_id INTEGER PRIMARY KEY AUTOINCREMENT,
        document_id INTEGER NOT NULL REFERENCES documents(document_id) ON DELETE CASCADE,
        field_name TEXT NOT NULL,
        old_value TEXT,
        new_value TEXT,
        actor_type TEXT NOT NULL,
        actor_id INTEGER,
        reason TEXT,
        confidence REAL,
        evidence TEXT,
        operation_id TEXT,
        source_action TEXT,
        changed_at TEXT NOT NULL
    )
    """,
    # At most one active journal entry per bill
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_journal_one_posted
    ON journal_entries(bill_id) WHERE status = 'posted'
    """,
    "CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status)",
    "CREATE INDEX IF NOT EXISTS idx_documents_uploaded_at ON documents(uploaded_at)",
    "CREATE INDEX IF NOT EXISTS idx_bill_items_bill ON bill_items(bill_id)",
    "CREATE INDEX IF NOT EXISTS idx_schedule_bill ON payment_schedule(bill_id)",
    "CREATE INDEX IF NOT EXISTS idx_history_document ON document_field_history(document_id)",
]


def _now() -> str:
    return datetime.now(UTC).isoformat()


def _to_sql(column: str, value):
    if value is None:
        return None
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value


def _rollup_payment_status(conn: sqlite3.Connection, bill_id: int) -> str:
    """paid when every row is PAID, partial once anything is paid, pending otherwise"""
    schedule = conn.execute(
        "SELECT payment_status, amount_paid FROM payment_schedule WHERE bill_id = ?", (bill_id,)
    ).fetchall()
    if all(r["payment_status"] == "PAID" for r in schedule):
        return "paid"
    if any(r["amount_paid"] > 0 for r in schedule):
        return "partial"
    return "pending"


def _reapply_payments(conn: sqlite3.Connection, bill_id: int, payments: list[sqlite3.Row]) -> None:
    """Spread recorded payments over the bill's open rows, earliest due first"""
    open_rows = [
        dict(row)
        for row in conn.execute(
            """
            SELECT schedule_id, amount_due, amount_paid FROM payment_schedule
            WHERE bill_id = ? AND payment_status != 'PAID'
            ORDER BY due_date IS NULL, due_date, installment_number
            """,
            (bill_id,),
        ).fetchall()
    ]
    for payment in payments:
        remaining = payment["amount_paid"]
        first_row = None
        for row in open_rows:
            if remaining <= 0.005:
                break
            room = round(row["amount_due"] - row["amount_paid"], 2)
            if room <= 0.005:
                continue
            applied = min(room, remaining)
            row["amount_paid"] = round(row["amount_paid"] + applied, 2)
            remaining = round(remaining - applied, 2)
            first_row = first_row or row["schedule_id"]
        if first_row is None and open_rows:
            # Overpaid: the excess stays on the last row
            last = open_rows[-1]
            last["amount_paid"] = round(last["amount_paid"] + remaining, 2)
            first_row = last["schedule_id"]
        conn.execute("UPDATE payments SET schedule_id = ? WHERE payment_id = ?", (first_row, payment["payment_id"]))

    for row in open_rows:
        if row["amount_paid"] <= 0:
            continue
        status = "PAID" if row["amount_paid"] >= row["amount_due"] - 0.005 else "PARTIAL"
        conn.execute(
            "UPDATE payment_schedule SET amount_paid = ?, payment_status = ?, paid_at = ? WHERE schedule_id = ?",
            (row["amount_paid"], status, _now() if status == "PAID" else None, row["schedule_id"]),
        )


def _row_to_dict(row: sqlite3.Row) -> dict:
    data = dict(row)
    for column in data.keys() & _JSON_COLUMNS:
        if data[column]:
            data[column] = json.loads(data[column])
    for column in data.keys() & _BOOL_COLUMNS:
        if data[column] is not None:
            data[column] = bool(data[column])
    return data


class SQLiteBillStore(BillStoreBase):
    """
    SQLite-backed bill store with persistent storage.

    Features:
    - Cascading delete from document to bill, items, schedule and journal
    - Replace operations (items, schedule, journal) in one transaction each
    - Partial unique index keeping one posted journal entry per bill
    - Database-level posting precondition on bill items
    """

    def __init__(self, db_path: str = "billbook.db"):
        """
        Initialize store with database path.

        Args:
            db_path: Path to SQLite database file (default: billbook.db)
        """
        self.db_path = db_path
        self._init_database()

    def _init_database(self):
        """Create tables and indexes if they don't exist"""
        conn = sqlite3.connect(self.db_path)
        cursor = conn.cursor()
        for statement in _SCHEMA:
            cursor.execute(statement)
        conn.commit()
        conn.close()

    def _get_connection(self) -> sqlite3.Connection:
        """Get database connection with row factory and foreign keys enforced"""
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Commit on success, roll back on any exception"""
        conn = self._get_connection()
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    # ----- documents -------------------------------------------------

    def create_document(self, **fields) -> int:
        unknown = set(fields) - DOCUMENT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown document columns: {sorted(unknown)}")
        fields.setdefault("status", "uploaded")
        columns = list(fields) + ["uploaded_at", "updated_at"]
        now = _now()
        values = [_to_sql(c, fields[c]) for c in fields] + [now, now]
        placeholders = ", ".join("?" for _ in columns)

        with self._transaction() as conn:
            cursor = conn.execute(
                f"INSERT INTO documents ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            return cursor.lastrowid

    def get_document(self, document_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM documents WHERE document_id = ?", (document_id,)).fetchone()
        conn.close()
        return _row_to_dict(row) if row else None

    def update_document(self, document_id: int, **fields) -> bool:
        unknown = set(fields) - DOCUMENT_COLUMNS
        if unknown:
            raise ValueError(f"Unknown document columns: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [_to_sql(c, v) for c, v in fields.items()] + [_now(), document_id]

        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE documents SET {assignments}, updated_at = ? WHERE document_id = ?",
                values,
            )
            return cursor.rowcount > 0

    def delete_document(self, document_id: int) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute("DELETE FROM documents WHERE document_id = ?", (document_id,))
            return cursor.rowcount > 0

    def list_documents(self, status: Optional[str] = None) -> list[dict]:
        conn = self._get_connection()
        if status:
            rows = conn.execute(
                "SELECT * FROM documents WHERE status = ? ORDER BY uploaded_at DESC", (status,)
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM documents ORDER BY uploaded_at DESC").fetchall()
        conn.close()
        return [_row_to_dict(row) for row in rows]

    def record_ai_attempt(self, document_id: int, at: datetime, error: Optional[str] = None) -> int:
        """
        Count an extraction attempt for the per-day reprocess cap.

        The counter restarts on the first attempt of a new (UTC) day.

        Returns:
            Attempt count for the day including this one
        """
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT ai_attempt_count, ai_last_attempt_at FROM documents WHERE document_id = ?",
                (document_id,),
            ).fetchone()
            if row is None:
                return 0
            last = row["ai_last_attempt_at"]
            same_day = bool(last) and last[:10] == at.date().isoformat()
            count = row["ai_attempt_count"] + 1 if same_day else 1
            conn.execute(
                """
                UPDATE documents
                SET ai_attempt_count = ?, ai_last_attempt_at = ?, ai_last_error = ?
                WHERE document_id = ?
                """,
                (count, at.isoformat(), error, document_id),
            )
            return count

    def select_documents_for_reverify(self, scope: str, since: str, limit: int) -> list[dict]:
        """
        Documents needing re-verification, oldest first.

        Args:
            scope: needs_review (missing date/total or not verified),
                   missing_dates, or pending (uploaded/manual_required/error)
            since: ISO timestamp; only documents uploaded at or after it
            limit: Maximum rows
        """
        conditions = {
            "needs_review": (
                "(d.verification_status IN ('needs_review', 'unverified')"
                " OR b.bill_date IS NULL OR b.total_amount IS NULL)"
            ),
            "missing_dates": "b.bill_id IS NOT NULL AND b.bill_date IS NULL",
            "pending": "d.status IN ('uploaded', 'manual_required', 'error')",
        }
        if scope not in conditions:
            raise ValueError(f"Unknown reverify scope: {scope}")

        conn = self._get_connection()
        rows = conn.execute(
            f"""
            SELECT d.*, b.bill_id
            FROM documents d
            LEFT JOIN bills b ON b.document_id = d.document_id
            WHERE d.uploaded_at >= ?
              AND d.status != 'processing'
              AND {conditions[scope]}
            ORDER BY d.uploaded_at ASC, d.document_id ASC
            LIMIT ?
            """,
            (since, limit),
        ).fetchall()
        conn.close()
        return [_row_to_dict(row) for row in rows]

    def reset_stale_processing(self, cutoff: str) -> list[int]:
        """
        Move documents stuck in 'processing' since before cutoff back to 'uploaded'.

        Returns:
            Ids of the documents that were re-queued
        """
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT document_id FROM documents
                WHERE status = 'processing'
                  AND (processing_started_at IS NULL OR processing_started_at < ?)
                """,
                (cutoff,),
            ).fetchall()
            ids = [row["document_id"] for row in rows]
            now = _now()
            for document_id in ids:
                conn.execute(
                    """
                    UPDATE documents
                    SET status = 'uploaded', processing_started_at = NULL, updated_at = ?
                    WHERE document_id = ? AND status = 'processing'
                    """,
                    (now, document_id),
                )
        return ids

    # ----- audit -----------------------------------------------------

    def add_field_history(self, document_id: int, field_name: str, old_value, new_value, **audit) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO document_field_history (
                    document_id, field_name, old_value, new_value, actor_type, actor_id,
                    reason, confidence, evidence, operation_id, source_action, changed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    document_id,
                    field_name,
                    old_value,
                    new_value,
                    audit.get("actor_type", "system"),
                    audit.get("actor_id"),
                    audit.get("reason"),
                    audit.get("confidence"),
                    audit.get("evidence"),
                    audit.get("operation_id"),
                    audit.get("source_action"),
                    _now(),
                ),
            )
            return cursor.lastrowid

    def list_field_history(self, document_id: int) -> list[dict]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM document_field_history WHERE document_id = ? ORDER BY history_id",
            (document_id,),
        ).fetchall()
        conn.close()
        return [dict(row) for row in rows]

    # ----- vendors, drops, accounts ----------------------------------

    def upsert_vendor(self, vendor_name: str, vendor_code: str, gstin: Optional[str] = None) -> int:
        """Insert or refresh a vendor keyed by its derived code"""
        now = _now()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO vendors (vendor_name, vendor_code, gstin, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(vendor_code) DO UPDATE SET
                    vendor_name = excluded.vendor_name,
                    gstin = COALESCE(excluded.gstin, vendors.gstin),
                    updated_at = excluded.updated_at
                """,
                (vendor_name, vendor_code, gstin, now, now),
            )
            row = conn.execute(
                "SELECT vendor_id FROM vendors WHERE vendor_code = ?", (vendor_code,)
            ).fetchone()
            return row["vendor_id"]

    def get_vendor(self, vendor_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM vendors WHERE vendor_id = ?", (vendor_id,)).fetchone()
        conn.close()
        return _row_to_dict(row) if row else None

    def count_vendors(self) -> int:
        conn = self._get_connection()
        count = conn.execute("SELECT COUNT(*) FROM vendors").fetchone()[0]
        conn.close()
        return count

    def get_or_create_drop(self, drop_name: str) -> int:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO drops (drop_name, created_at) VALUES (?, ?) ON CONFLICT(drop_name) DO NOTHING",
                (drop_name, _now()),
            )
            row = conn.execute("SELECT drop_id FROM drops WHERE drop_name = ?", (drop_name,)).fetchone()
            return row["drop_id"]

    def upsert_account(self, account_code: str, account_name: str, account_type: str) -> int:
        """Resolve an account by code, creating it on first use"""
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO accounts (account_code, account_name, account_type, created_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(account_code) DO NOTHING
                """,
                (account_code, account_name, account_type, _now()),
            )
            row = conn.execute(
                "SELECT account_id FROM accounts WHERE account_code = ?", (account_code,)
            ).fetchone()
            return row["account_id"]

    def get_account_by_code(self, account_code: str) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM accounts WHERE account_code = ?", (account_code,)).fetchone()
        conn.close()
        return _row_to_dict(row) if row else None

    def count_accounts(self) -> int:
        conn = self._get_connection()
        count = conn.execute("SELECT COUNT(*) FROM accounts").fetchone()[0]
        conn.close()
        return count

    # ----- bills and items -------------------------------------------

    def save_bill(self, document_id: int, bill: dict, items: list[dict]) -> int:
        values = [
            _to_sql(c, bill.get(c) if bill.get(c) is not None else BILL_DEFAULTS.get(c)) for c in BILL_COLUMNS
        ]
        now = _now()
        updates = ",\n".join(f"{c} = excluded.{c}" for c in BILL_COLUMNS)

        with self._transaction() as conn:
            conn.execute(
                f"""
                INSERT INTO bills (document_id, {', '.join(BILL_COLUMNS)}, status, created_at, updated_at)
                VALUES (?, {', '.join('?' for _ in BILL_COLUMNS)}, 'draft', ?, ?)
                ON CONFLICT(document_id) DO UPDATE SET
                {updates},
                status = 'draft',
                updated_at = excluded.updated_at
                """,
                [document_id, *values, now, now],
            )
            bill_id = conn.execute(
                "SELECT bill_id FROM bills WHERE document_id = ?", (document_id,)
            ).fetchone()["bill_id"]

            # Items are replaced, never appended
            conn.execute("DELETE FROM bill_items WHERE bill_id = ?", (bill_id,))
            for line_number, item in enumerate(items, start=1):
                conn.execute(
                    f"""
                    INSERT INTO bill_items (bill_id, line_number, {', '.join(ITEM_COLUMNS)})
                    VALUES (?, ?, {', '.join('?' for _ in ITEM_COLUMNS)})
                    """,
                    [
                        bill_id,
                        line_number,
                        item["description"],
                        item.get("sku_code"),
                        item.get("quantity", 1),
                        item.get("unit_price"),
                        item["amount"],
                        item.get("coa_account_id"),
                        item.get("department_id"),
                        item.get("drop_id"),
                        int(item.get("is_postable", True)),
                        item.get("posting_status", "unposted"),
                        int(item.get("go_live_eligible", False)),
                    ],
                )
        return bill_id

    def get_bill(self, bill_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT b.*, v.vendor_name, v.vendor_code, v.gstin AS vendor_gstin
            FROM bills b
            LEFT JOIN vendors v ON v.vendor_id = b.vendor_id
            WHERE b.bill_id = ?
            """,
            (bill_id,),
        ).fetchone()
        conn.close()
        return _row_to_dict(row) if row else None

    def get_bill_by_document(self, document_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT bill_id FROM bills WHERE document_id = ?", (document_id,)).fetchone()
        conn.close()
        return self.get_bill(row["bill_id"]) if row else None

    def update_bill(self, bill_id: int, **fields) -> bool:
        unknown = set(fields) - BILL_UPDATABLE
        if unknown:
            raise ValueError(f"Unknown bill columns: {sorted(unknown)}")
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [_to_sql(c, v) for c, v in fields.items()] + [_now(), bill_id]
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE bills SET {assignments}, updated_at = ? WHERE bill_id = ?", values
            )
            return cursor.rowcount > 0

    def list_bill_items(self, bill_id: int) -> list[dict]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM bill_items WHERE bill_id = ? ORDER BY line_number", (bill_id,)
        ).fetchall()
        conn.close()
        return [_row_to_dict(row) for row in rows]

    def get_bill_item(self, item_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute(
            """
            SELECT i.*, b.document_id
            FROM bill_items i
            JOIN bills b ON b.bill_id = i.bill_id
            WHERE i.item_id = ?
            """,
            (item_id,),
        ).fetchone()
        conn.close()
        return _row_to_dict(row) if row else None

    def update_bill_item(self, item_id: int, **fields) -> bool:
        unknown = set(fields) - set(ITEM_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown bill item columns: {sorted(unknown)}")
        if not fields:
            return False
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [_to_sql(c, v) for c, v in fields.items()] + [item_id]
        with self._transaction() as conn:
            cursor = conn.execute(f"UPDATE bill_items SET {assignments} WHERE item_id = ?", values)
            return cursor.rowcount > 0

    # ----- payment terms and schedule --------------------------------

    def replace_payment_schedule(
        self, bill_id: int, terms: Optional[dict], rows: list[dict], payment_status: str
    ) -> list[int]:
        """
        Rebuild payment terms and schedule rows for a bill.

        Payments already recorded against the bill are re-applied to the new
        rows, and the bill status is then rolled up from them.

        Args:
            bill_id: Bill to rebuild
            terms: Terms row values (payment_type, advance_percentage, ...) or None
            rows: Schedule rows (installment_number, due_date, amount_due, amount_paid, payment_status)
            payment_status: Bill-level status to set (pending/partial/paid) when nothing has been paid

        Returns:
            Ids of the inserted schedule rows
        """
        schedule_ids = []
        now = _now()
        with self._transaction() as conn:
            payments = conn.execute(
                "SELECT payment_id, amount_paid FROM payments WHERE bill_id = ? ORDER BY payment_id", (bill_id,)
            ).fetchall()
            conn.execute("DELETE FROM payment_schedule WHERE bill_id = ?", (bill_id,))
            conn.execute("DELETE FROM payment_terms WHERE bill_id = ?", (bill_id,))
            if terms is not None:
                conn.execute(
                    """
                    INSERT INTO payment_terms (
                        bill_id, payment_type, total_amount, advance_percentage, due_date,
                        net_days, installment_count, terms_text, terms_json, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        bill_id,
                        terms.get("payment_type"),
                        terms.get("total_amount"),
                        terms.get("advance_percentage"),
                        _to_sql("due_date", terms.get("due_date")),
                        terms.get("net_days"),
                        terms.get("installment_count"),
                        terms.get("terms_text"),
                        json.dumps(terms.get("terms_json")) if terms.get("terms_json") else None,
                        now,
                    ),
                )
            for row in rows:
                cursor = conn.execute(
                    """
                    INSERT INTO payment_schedule (
                        bill_id, installment_number, due_date, amount_due, amount_paid, payment_status, paid_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        bill_id,
                        row["installment_number"],
                        _to_sql("due_date", row.get("due_date")),
                        row["amount_due"],
                        row.get("amount_paid", 0),
                        row.get("payment_status", "PENDING"),
                        now if row.get("payment_status") == "PAID" else None,
                    ),
                )
                schedule_ids.append(cursor.lastrowid)
            if payments:
                _reapply_payments(conn, bill_id, payments)
                payment_status = _rollup_payment_status(conn, bill_id)
            conn.execute(
                "UPDATE bills SET payment_status = ?, updated_at = ? WHERE bill_id = ?",
                (payment_status, now, bill_id),
            )
        return schedule_ids

    def get_payment_terms(self, bill_id: int) -> Optional[dict]:
        conn = self._get_connection()
        row = conn.execute("SELECT * FROM payment_terms WHERE bill_id = ?", (bill_id,)).fetchone()
        conn.close()
        if row is None:
            return None
        terms = dict(row)
        terms["terms_json"] = json.loads(terms["terms_json"]) if terms["terms_json"] else None
        return terms

    def list_payment_schedule(self, bill_id: int) -> list[dict]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM payment_schedule WHERE bill_id = ? ORDER BY installment_number", (bill_id,)
        ).fetchall()
        conn.close()
        return [dict(row) for row in rows]

    def apply_payment(
        self,
        bill_id: int,
        schedule_id: int,
        amount: float,
        payment_date: str,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None,
    ) -> Optional[dict]:
        """
        Add a payment to one schedule row and roll the bill status up.

        Row status becomes PAID once amount_paid covers amount_due, PARTIAL
        otherwise. The bill is paid when every row is PAID, partial when
        anything has been paid, pending otherwise.

        Returns:
            Updated schedule row, or None if the row does not belong to the bill
        """
        now = _now()
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM payment_schedule WHERE schedule_id = ? AND bill_id = ?",
                (schedule_id, bill_id),
            ).fetchone()
            if row is None:
                return None
            paid = round(row["amount_paid"] + amount, 2)
            status = "PAID" if paid >= row["amount_due"] - 0.005 else "PARTIAL"
            conn.execute(
                """
                UPDATE payment_schedule
                SET amount_paid = ?, payment_status = ?, paid_at = ?
                WHERE schedule_id = ?
                """,
                (paid, status, now if status == "PAID" else None, schedule_id),
            )
            conn.execute(
                """
                INSERT INTO payments (bill_id, schedule_id, payment_date, amount_paid, payment_method, notes, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (bill_id, schedule_id, payment_date, amount, payment_method, notes, now),
            )
            conn.execute(
                "UPDATE bills SET payment_status = ?, updated_at = ? WHERE bill_id = ?",
                (_rollup_payment_status(conn, bill_id), now, bill_id),
            )
            updated = conn.execute(
                "SELECT * FROM payment_schedule WHERE schedule_id = ?", (schedule_id,)
            ).fetchone()
            return dict(updated)

    def list_payments(self, bill_id: int) -> list[dict]:
        conn = self._get_connection()
        rows = conn.execute(
            "SELECT * FROM payments WHERE bill_id = ? ORDER BY payment_id", (bill_id,)
        ).fetchall()
        conn.close()
        return [dict(row) for row in rows]

    # ----- journal ---------------------------------------------------

    def replace_journal_entry(self, bill_id: int, entry: dict, lines: list[dict]) -> int:
        now = _now()
        with self._transaction() as conn:
            voided = conn.execute(
                """
                UPDATE journal_entries SET status = 'void', voided_at = ?
                WHERE bill_id = ? AND status = 'posted'
                """,
                (now, bill_id),
            ).rowcount
            cursor = conn.execute(
                """
                INSERT INTO journal_entries (
                    entry_date, reference_type, bill_id, description,
                    total_debit, total_credit, status, created_by, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, 'posted', ?, ?)
                """,
                (
                    _to_sql("entry_date", entry["entry_date"]),
                    entry.get("reference_type", "BILL"),
                    bill_id,
                    entry.get("description"),
                    entry["total_debit"],
                    entry["total_credit"],
                    entry.get("created_by"),
                    now,
                ),
            )
            journal_id = cursor.lastrowid
            for line_number, line in enumerate(lines, start=1):
                conn.execute(
                    """
                    INSERT INTO journal_entry_lines (
                        journal_id, account_id, debit_amount, credit_amount, description, line_number
                    ) VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        journal_id,
                        line["account_id"],
                        line.get("debit_amount", 0),
                        line.get("credit_amount", 0),
                        line.get("description"),
                        line_number,
                    ),
                )
            conn.execute(
                """
                UPDATE bills SET status = 'posted', posted_at = ?, journal_id = ?, updated_at = ?
                WHERE bill_id = ?
                """,
                (now, journal_id, now, bill_id),
            )
        if voided:
            logger.info("Voided previous journal entry", bill_id=bill_id, voided=voided)
        return journal_id

    def list_journal_entries(self, bill_id: int, include_void: bool = True) -> list[dict]:
        conn = self._get_connection()
        query = "SELECT * FROM journal_entries WHERE bill_id = ?"
        if not include_void:
            query += " AND status = 'posted'"
        entries = [dict(row) for row in conn.execute(query + " ORDER BY journal_id", (bill_id,)).fetchall()]
        for entry in entries:
            entry["lines"] = [
                dict(row)
                for row in conn.execute(
                    """
                    SELECT l.*, a.account_code, a.account_name, a.account_type
                    FROM journal_entry_lines l
                    JOIN accounts a ON a.account_id = l.account_id
                    WHERE l.journal_id = ?
                    ORDER BY l.line_number
                    """,
                    (entry["journal_id"],),
                ).fetchall()
            ]
        conn.close()
        return entries
