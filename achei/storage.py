"""
SQLite storage layer for Achei Leads.
"""

import json
import os
import sqlite3
import time
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import uuid4

DEFAULT_DB_PATH = os.getenv("ACHEI_DB_PATH", "achei.db")

COMPANY_COLUMNS = {
    "name",
    "cnpj",
    "cnae",
    "cnae_description",
    "city",
    "state",
    "address",
    "cep",
    "segment",
    "website",
    "email",
    "instagram",
    "facebook",
    "linkedin",
    "ai_summary",
    "enriched_at",
    "crm_stage_id",
    "deal_value",
    "expected_close_date",
    "crm_notes",
}
STAGE_COLUMNS = {"name", "color", "position"}
ACTIVITY_COLUMNS = {"title", "description", "is_completed", "due_date", "completed_at", "activity_type"}
TEMPLATE_COLUMNS = {"name", "content"}
PIX_COLUMNS = {"status", "paid_at"}


def _utcnow() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def get_db_path() -> str:
    return os.getenv("ACHEI_DB_PATH", DEFAULT_DB_PATH)


@contextmanager
def get_conn():
    conn = sqlite3.connect(get_db_path(), check_same_thread=False)
    conn.row_factory = sqlite3.Row
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA foreign_keys=ON")
        yield conn
        conn.commit()
    finally:
        conn.close()


def init_db() -> None:
    with get_conn() as conn:
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS profiles (
                id TEXT PRIMARY KEY,
                email TEXT,
                full_name TEXT,
                phone TEXT,
                cpf TEXT,
                avatar_url TEXT,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_profiles_email ON profiles(email)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS api_tokens (
                token_hash TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                created_at TIMESTAMP,
                expires_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS crm_pipeline_stages (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                color TEXT NOT NULL,
                position INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_stages_user ON crm_pipeline_stages(user_id, position)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS companies (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                cnpj TEXT,
                cnae TEXT NOT NULL DEFAULT '',
                cnae_description TEXT,
                city TEXT NOT NULL DEFAULT '',
                state TEXT NOT NULL DEFAULT '',
                address TEXT,
                cep TEXT,
                segment TEXT,
                website TEXT,
                email TEXT,
                instagram TEXT,
                facebook TEXT,
                linkedin TEXT,
                ai_summary TEXT,
                enriched_at TIMESTAMP,
                crm_stage_id TEXT REFERENCES crm_pipeline_stages(id) ON DELETE SET NULL,
                deal_value REAL,
                expected_close_date TEXT,
                crm_notes TEXT,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_companies_user ON companies(user_id, created_at)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_companies_cnpj ON companies(user_id, cnpj)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS company_phones (
                id TEXT PRIMARY KEY,
                company_id TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                phone_number TEXT NOT NULL,
                phone_type TEXT NOT NULL DEFAULT 'mobile',
                status TEXT NOT NULL DEFAULT 'pending',
                created_at TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_phones_company ON company_phones(company_id)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS crm_activities (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                company_id TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                activity_type TEXT NOT NULL,
                title TEXT NOT NULL,
                description TEXT,
                is_completed INTEGER NOT NULL DEFAULT 0,
                due_date TIMESTAMP,
                completed_at TIMESTAMP,
                created_at TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_activities_company ON crm_activities(company_id)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS crm_stage_history (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                company_id TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                from_stage_id TEXT,
                from_stage_name TEXT,
                to_stage_id TEXT,
                to_stage_name TEXT,
                notes TEXT,
                changed_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS user_credits (
                user_id TEXT PRIMARY KEY,
                balance INTEGER NOT NULL DEFAULT 0,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_transactions (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                amount INTEGER NOT NULL,
                type TEXT NOT NULL,
                description TEXT,
                reference_id TEXT,
                created_at TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_credit_tx_user ON credit_transactions(user_id, created_at)")
        cur.execute("CREATE INDEX IF NOT EXISTS idx_credit_tx_ref ON credit_transactions(reference_id, type)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS credit_packages (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                price_brl REAL NOT NULL,
                credits INTEGER NOT NULL,
                bonus_credits INTEGER NOT NULL DEFAULT 0,
                position INTEGER NOT NULL DEFAULT 0,
                is_active INTEGER NOT NULL DEFAULT 1,
                created_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS pix_payments (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                package_id TEXT,
                external_id TEXT,
                amount_cents INTEGER,
                credits INTEGER,
                bonus_credits INTEGER,
                status TEXT,
                br_code TEXT,
                br_code_base64 TEXT,
                expires_at TIMESTAMP,
                created_at TIMESTAMP,
                paid_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS message_templates (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                name TEXT NOT NULL,
                content TEXT NOT NULL,
                created_at TIMESTAMP,
                updated_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS message_history (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                company_id TEXT NOT NULL REFERENCES companies(id) ON DELETE CASCADE,
                phone_id TEXT NOT NULL,
                template_id TEXT,
                channel TEXT NOT NULL,
                message_content TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',
                sent_at TIMESTAMP,
                created_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS rate_limit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL,
                endpoint TEXT NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_rate_events ON rate_limit_events(user_id, endpoint, created_at)")

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT,
                action TEXT,
                detail_json TEXT,
                created_at TIMESTAMP
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                created_at TIMESTAMP,
                level TEXT,
                event TEXT,
                detail_json TEXT
            )
            """
        )

        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS cache (
                key TEXT PRIMARY KEY,
                data TEXT,
                created_at TIMESTAMP,
                expires_at TIMESTAMP
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_cache_expires ON cache(expires_at)")


def _set_clause(fields: Dict[str, Any], allowed: Iterable[str]) -> tuple:
    allowed = set(allowed)
    keys = []
    values = []
    for key, value in fields.items():
        if key not in allowed:
            raise ValueError(f"Coluna nao permitida: {key}")
        keys.append(f"{key}=?")
        values.append(value)
    return ", ".join(keys), values


# Logs and cache


def log_event(level: str, event: str, detail: Optional[Dict[str, Any]] = None) -> None:
    detail_json = json.dumps(detail or {}, ensure_ascii=False, default=str)
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO logs (created_at, level, event, detail_json) VALUES (?, ?, ?, ?)",
            (_utcnow(), level, event, detail_json),
        )


def cache_get(key: str) -> Optional[Any]:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT data FROM cache WHERE key = ? AND (expires_at IS NULL OR expires_at > ?)",
            (key, _utcnow()),
        ).fetchone()
        if not row:
            return None
        return json.loads(row["data"])


def cache_set(key: str, data: Any, ttl_hours: Optional[float] = 24) -> None:
    expires_at = None
    if ttl_hours:
        expires_at = (datetime.now(timezone.utc) + timedelta(hours=ttl_hours)).strftime("%Y-%m-%d %H:%M:%S")
    with get_conn() as conn:
        conn.execute(
            "INSERT OR REPLACE INTO cache (key, data, created_at, expires_at) VALUES (?, ?, ?, ?)",
            (key, json.dumps(data, ensure_ascii=False), _utcnow(), expires_at),
        )


def cache_delete(key: str) -> None:
    with get_conn() as conn:
        conn.execute("DELETE FROM cache WHERE key = ?", (key,))


# Profiles and tokens


def upsert_profile(
    user_id: str,
    email: Optional[str] = None,
    full_name: Optional[str] = None,
    phone: Optional[str] = None,
) -> None:
    now = _utcnow()
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO profiles (id, email, full_name, phone, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                email=COALESCE(excluded.email, profiles.email),
                full_name=COALESCE(excluded.full_name, profiles.full_name),
                phone=COALESCE(excluded.phone, profiles.phone),
                updated_at=excluded.updated_at
            """,
            (user_id, email, full_name, phone, now, now),
        )


def get_profile(user_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE id = ?", (user_id,)).fetchone()
    return dict(row) if row else None


def find_profile_by_email(email: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM profiles WHERE email = ?", (email,)).fetchone()
    return dict(row) if row else None


def insert_token(token_hash: str, user_id: str, expires_at: Optional[str] = None) -> None:
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO api_tokens (token_hash, user_id, created_at, expires_at) VALUES (?, ?, ?, ?)",
            (token_hash, user_id, _utcnow(), expires_at),
        )


def get_token_user(token_hash: str) -> Optional[str]:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT user_id FROM api_tokens WHERE token_hash = ? AND (expires_at IS NULL OR expires_at > ?)",
            (token_hash, _utcnow()),
        ).fetchone()
    return row["user_id"] if row else None


# Companies and phones


def _attach_phones(conn: sqlite3.Connection, companies: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    if not companies:
        return companies
    ids = [company["id"] for company in companies]
    placeholders = ",".join(["?"] * len(ids))
    rows = conn.execute(
        f"SELECT * FROM company_phones WHERE company_id IN ({placeholders}) ORDER BY created_at, rowid",
        ids,
    ).fetchall()
    phones: Dict[str, List[Dict[str, Any]]] = {}
    for row in rows:
        phones.setdefault(row["company_id"], []).append(dict(row))
    for company in companies:
        company["company_phones"] = phones.get(company["id"], [])
    return companies


def insert_company(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    company_id = str(uuid4())
    fields = {key: value for key, value in data.items() if key in COMPANY_COLUMNS}
    fields.setdefault("cnae", "")
    fields.setdefault("city", "")
    fields.setdefault("state", "")
    now = _utcnow()
    columns = ["id", "user_id", *fields.keys(), "created_at", "updated_at"]
    values = [company_id, user_id, *fields.values(), now, now]
    placeholders = ", ".join(["?"] * len(columns))
    with get_conn() as conn:
        conn.execute(
            f"INSERT INTO companies ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )
        row = conn.execute("SELECT * FROM companies WHERE id = ?", (company_id,)).fetchone()
    return dict(row)


def get_company(user_id: str, company_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM companies WHERE id = ? AND user_id = ?",
            (company_id, user_id),
        ).fetchone()
        if not row:
            return None
        return _attach_phones(conn, [dict(row)])[0]


def fetch_companies(user_id: str, company_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM companies WHERE user_id = ?"
    params: List[Any] = [user_id]
    if company_ids is not None:
        if not company_ids:
            return []
        sql += f" AND id IN ({','.join(['?'] * len(company_ids))})"
        params.extend(company_ids)
    sql += " ORDER BY created_at DESC, rowid DESC"
    with get_conn() as conn:
        rows = conn.execute(sql, params).fetchall()
        return _attach_phones(conn, [dict(row) for row in rows])


def find_company_by_cnpj(user_id: str, cnpj: str) -> Optional[Dict[str, Any]]:
    if not cnpj:
        return None
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM companies WHERE user_id = ? AND cnpj = ?",
            (user_id, cnpj),
        ).fetchone()
    return dict(row) if row else None


def update_company(user_id: str, company_id: str, **fields: Any) -> bool:
    if not fields:
        return False
    set_sql, values = _set_clause(fields, COMPANY_COLUMNS)
    values.extend([_utcnow(), company_id, user_id])
    with get_conn() as conn:
        cur = conn.execute(
            f"UPDATE companies SET {set_sql}, updated_at=? WHERE id = ? AND user_id = ?",
            values,
        )
    return cur.rowcount > 0


def delete_company(user_id: str, company_id: str) -> bool:
    with get_conn() as conn:
        cur = conn.execute(
            "DELETE FROM companies WHERE id = ? AND user_id = ?",
            (company_id, user_id),
        )
    return cur.rowcount > 0


def clear_stage_from_companies(user_id: str, stage_id: str) -> int:
    with get_conn() as conn:
        cur = conn.execute(
            "UPDATE companies SET crm_stage_id = NULL, updated_at = ? WHERE user_id = ? AND crm_stage_id = ?",
            (_utcnow(), user_id, stage_id),
        )
    return cur.rowcount


def insert_phone(company_id: str, phone_number: str, phone_type: str, status: str = "pending") -> Dict[str, Any]:
    phone_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO company_phones (id, company_id, phone_number, phone_type, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (phone_id, company_id, phone_number, phone_type, status, _utcnow()),
        )
        row = conn.execute("SELECT * FROM company_phones WHERE id = ?", (phone_id,)).fetchone()
    return dict(row)


def fetch_phones(user_id: str, phone_ids: List[str]) -> List[Dict[str, Any]]:
    if not phone_ids:
        return []
    placeholders = ",".join(["?"] * len(phone_ids))
    with get_conn() as conn:
        rows = conn.execute(
            f"""
            SELECT p.* FROM company_phones p
            JOIN companies c ON c.id = p.company_id
            WHERE c.user_id = ? AND p.id IN ({placeholders})
            """,
            [user_id, *phone_ids],
        ).fetchall()
    return [dict(row) for row in rows]


def update_phone_status(phone_id: str, status: str) -> None:
    with get_conn() as conn:
        conn.execute("UPDATE company_phones SET status = ? WHERE id = ?", (status, phone_id))


def delete_phone(user_id: str, phone_id: str) -> bool:
    with get_conn() as conn:
        cur = conn.execute(
            """
            DELETE FROM company_phones
            WHERE id = ? AND company_id IN (SELECT id FROM companies WHERE user_id = ?)
            """,
            (phone_id, user_id),
        )
    return cur.rowcount > 0


# CRM


def list_stages(user_id: str) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM crm_pipeline_stages WHERE user_id = ? ORDER BY position ASC, created_at ASC",
            (user_id,),
        ).fetchall()
    return [dict(row) for row in rows]


def get_stage(user_id: str, stage_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM crm_pipeline_stages WHERE id = ? AND user_id = ?",
            (stage_id, user_id),
        ).fetchone()
    return dict(row) if row else None


def max_stage_position(user_id: str) -> int:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT MAX(position) AS pos FROM crm_pipeline_stages WHERE user_id = ?",
            (user_id,),
        ).fetchone()
    return int(row["pos"]) if row and row["pos"] is not None else -1


def insert_stage(user_id: str, name: str, color: str, position: int) -> Dict[str, Any]:
    stage_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO crm_pipeline_stages (id, user_id, name, color, position, created_at) VALUES (?, ?, ?, ?, ?, ?)",
            (stage_id, user_id, name, color, position, _utcnow()),
        )
        row = conn.execute("SELECT * FROM crm_pipeline_stages WHERE id = ?", (stage_id,)).fetchone()
    return dict(row)


def update_stage(user_id: str, stage_id: str, **fields: Any) -> bool:
    if not fields:
        return False
    set_sql, values = _set_clause(fields, STAGE_COLUMNS)
    values.extend([stage_id, user_id])
    with get_conn() as conn:
        cur = conn.execute(
            f"UPDATE crm_pipeline_stages SET {set_sql} WHERE id = ? AND user_id = ?",
            values,
        )
    return cur.rowcount > 0


def delete_stage(user_id: str, stage_id: str) -> bool:
    with get_conn() as conn:
        cur = conn.execute(
            "DELETE FROM crm_pipeline_stages WHERE id = ? AND user_id = ?",
            (stage_id, user_id),
        )
    return cur.rowcount > 0


def insert_stage_history(user_id: str, company_id: str, data: Dict[str, Any]) -> None:
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO crm_stage_history (
                id, user_id, company_id, from_stage_id, from_stage_name,
                to_stage_id, to_stage_name, notes, changed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                str(uuid4()),
                user_id,
                company_id,
                data.get("from_stage_id"),
                data.get("from_stage_name"),
                data.get("to_stage_id"),
                data.get("to_stage_name"),
                data.get("notes"),
                _utcnow(),
            ),
        )


def list_stage_history(user_id: str, company_id: str) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT * FROM crm_stage_history
            WHERE user_id = ? AND company_id = ?
            ORDER BY changed_at DESC, rowid DESC
            """,
            (user_id, company_id),
        ).fetchall()
    return [dict(row) for row in rows]


def list_activities(
    user_id: str,
    company_id: Optional[str] = None,
    only_open: bool = False,
    due_before: Optional[str] = None,
) -> List[Dict[str, Any]]:
    clauses = ["a.user_id = ?"]
    params: List[Any] = [user_id]
    if company_id:
        clauses.append("a.company_id = ?")
        params.append(company_id)
    if only_open:
        clauses.append("a.is_completed = 0")
    if due_before:
        clauses.append("a.due_date IS NOT NULL AND a.due_date < ?")
        params.append(due_before)
    order = "a.due_date ASC" if due_before else "a.created_at DESC, a.rowid DESC"
    sql = (
        "SELECT a.*, c.name AS company_name, c.city AS company_city, c.state AS company_state "
        "FROM crm_activities a LEFT JOIN companies c ON c.id = a.company_id "
        f"WHERE {' AND '.join(clauses)} ORDER BY {order}"
    )
    with get_conn() as conn:
        rows = conn.execute(sql, params).fetchall()
    return [dict(row) for row in rows]


def insert_activity(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    activity_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO crm_activities (
                id, user_id, company_id, activity_type, title, description,
                is_completed, due_date, completed_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                activity_id,
                user_id,
                data["company_id"],
                data["activity_type"],
                data["title"],
                data.get("description"),
                int(bool(data.get("is_completed"))),
                data.get("due_date"),
                data.get("completed_at"),
                _utcnow(),
            ),
        )
        row = conn.execute("SELECT * FROM crm_activities WHERE id = ?", (activity_id,)).fetchone()
    return dict(row)


def update_activity(user_id: str, activity_id: str, **fields: Any) -> bool:
    if not fields:
        return False
    set_sql, values = _set_clause(fields, ACTIVITY_COLUMNS)
    values.extend([activity_id, user_id])
    with get_conn() as conn:
        cur = conn.execute(
            f"UPDATE crm_activities SET {set_sql} WHERE id = ? AND user_id = ?",
            values,
        )
    return cur.rowcount > 0


def delete_activity(user_id: str, activity_id: str) -> bool:
    with get_conn() as conn:
        cur = conn.execute(
            "DELETE FROM crm_activities WHERE id = ? AND user_id = ?",
            (activity_id, user_id),
        )
    return cur.rowcount > 0


# Credits


def get_balance(user_id: str) -> Optional[int]:
    with get_conn() as conn:
        row = conn.execute("SELECT balance FROM user_credits WHERE user_id = ?", (user_id,)).fetchone()
    return int(row["balance"]) if row else None


def try_debit(user_id: str, amount: int) -> bool:
    with get_conn() as conn:
        cur = conn.execute(
            "UPDATE user_credits SET balance = balance - ?, updated_at = ? WHERE user_id = ? AND balance >= ?",
            (amount, _utcnow(), user_id, amount),
        )
    return cur.rowcount > 0


def add_to_balance(user_id: str, amount: int) -> int:
    now = _utcnow()
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO user_credits (user_id, balance, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                balance = user_credits.balance + excluded.balance,
                updated_at = excluded.updated_at
            """,
            (user_id, amount, now, now),
        )
        row = conn.execute("SELECT balance FROM user_credits WHERE user_id = ?", (user_id,)).fetchone()
    return int(row["balance"])


def insert_transaction(
    user_id: str,
    amount: int,
    tx_type: str,
    description: Optional[str] = None,
    reference_id: Optional[str] = None,
) -> Dict[str, Any]:
    tx_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO credit_transactions (id, user_id, amount, type, description, reference_id, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (tx_id, user_id, amount, tx_type, description, reference_id, _utcnow()),
        )
        row = conn.execute("SELECT * FROM credit_transactions WHERE id = ?", (tx_id,)).fetchone()
    return dict(row)


def list_transactions(user_id: str, limit: int = 50) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM credit_transactions WHERE user_id = ? ORDER BY created_at DESC, rowid DESC LIMIT ?",
            (user_id, limit),
        ).fetchall()
    return [dict(row) for row in rows]


def find_transaction(reference_id: str, tx_type: Optional[str] = None) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        if tx_type:
            row = conn.execute(
                "SELECT * FROM credit_transactions WHERE reference_id = ? AND type = ?",
                (reference_id, tx_type),
            ).fetchone()
        else:
            row = conn.execute(
                "SELECT * FROM credit_transactions WHERE reference_id = ?",
                (reference_id,),
            ).fetchone()
    return dict(row) if row else None


def upsert_package(package: Dict[str, Any]) -> str:
    package_id = package.get("id") or str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO credit_packages (id, name, price_brl, credits, bonus_credits, position, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                price_brl=excluded.price_brl,
                credits=excluded.credits,
                bonus_credits=excluded.bonus_credits,
                position=excluded.position,
                is_active=excluded.is_active
            """,
            (
                package_id,
                package["name"],
                package["price_brl"],
                package["credits"],
                package.get("bonus_credits", 0),
                package.get("position", 0),
                int(package.get("is_active", True)),
                _utcnow(),
            ),
        )
    return package_id


def list_packages(active_only: bool = True) -> List[Dict[str, Any]]:
    sql = "SELECT * FROM credit_packages"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY position ASC"
    with get_conn() as conn:
        rows = conn.execute(sql).fetchall()
    return [dict(row) for row in rows]


def get_package(package_id: str, active_only: bool = True) -> Optional[Dict[str, Any]]:
    sql = "SELECT * FROM credit_packages WHERE id = ?"
    if active_only:
        sql += " AND is_active = 1"
    with get_conn() as conn:
        row = conn.execute(sql, (package_id,)).fetchone()
    return dict(row) if row else None


def insert_pix_payment(data: Dict[str, Any]) -> None:
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO pix_payments (
                id, user_id, package_id, external_id, amount_cents, credits,
                bonus_credits, status, br_code, br_code_base64, expires_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                data["id"],
                data["user_id"],
                data.get("package_id"),
                data.get("external_id"),
                data.get("amount_cents"),
                data.get("credits"),
                data.get("bonus_credits"),
                data.get("status", "PENDING"),
                data.get("br_code"),
                data.get("br_code_base64"),
                data.get("expires_at"),
                _utcnow(),
            ),
        )


def get_pix_payment(pix_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute("SELECT * FROM pix_payments WHERE id = ?", (pix_id,)).fetchone()
    return dict(row) if row else None


def update_pix_payment(pix_id: str, **fields: Any) -> None:
    if not fields:
        return
    set_sql, values = _set_clause(fields, PIX_COLUMNS)
    values.append(pix_id)
    with get_conn() as conn:
        conn.execute(f"UPDATE pix_payments SET {set_sql} WHERE id = ?", values)


# Messages


def list_templates(user_id: str) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        rows = conn.execute(
            "SELECT * FROM message_templates WHERE user_id = ? ORDER BY created_at DESC, rowid DESC",
            (user_id,),
        ).fetchall()
    return [dict(row) for row in rows]


def get_template(user_id: str, template_id: str) -> Optional[Dict[str, Any]]:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT * FROM message_templates WHERE id = ? AND user_id = ?",
            (template_id, user_id),
        ).fetchone()
    return dict(row) if row else None


def insert_template(user_id: str, name: str, content: str) -> Dict[str, Any]:
    template_id = str(uuid4())
    now = _utcnow()
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO message_templates (id, user_id, name, content, created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
            (template_id, user_id, name, content, now, now),
        )
        row = conn.execute("SELECT * FROM message_templates WHERE id = ?", (template_id,)).fetchone()
    return dict(row)


def update_template(user_id: str, template_id: str, **fields: Any) -> bool:
    if not fields:
        return False
    set_sql, values = _set_clause(fields, TEMPLATE_COLUMNS)
    values.extend([_utcnow(), template_id, user_id])
    with get_conn() as conn:
        cur = conn.execute(
            f"UPDATE message_templates SET {set_sql}, updated_at=? WHERE id = ? AND user_id = ?",
            values,
        )
    return cur.rowcount > 0


def delete_template(user_id: str, template_id: str) -> bool:
    with get_conn() as conn:
        cur = conn.execute(
            "DELETE FROM message_templates WHERE id = ? AND user_id = ?",
            (template_id, user_id),
        )
    return cur.rowcount > 0


def insert_message(user_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
    message_id = str(uuid4())
    with get_conn() as conn:
        conn.execute(
            """
            INSERT INTO message_history (
                id, user_id, company_id, phone_id, template_id, channel,
                message_content, status, sent_at, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                message_id,
                user_id,
                data["company_id"],
                data["phone_id"],
                data.get("template_id"),
                data["channel"],
                data["message_content"],
                data.get("status", "sent"),
                data.get("sent_at"),
                _utcnow(),
            ),
        )
        row = conn.execute("SELECT * FROM message_history WHERE id = ?", (message_id,)).fetchone()
    return dict(row)


def list_messages(user_id: str, limit: int = 200) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        rows = conn.execute(
            """
            SELECT m.*, c.name AS company_name, p.phone_number, t.name AS template_name
            FROM message_history m
            LEFT JOIN companies c ON c.id = m.company_id
            LEFT JOIN company_phones p ON p.id = m.phone_id
            LEFT JOIN message_templates t ON t.id = m.template_id
            WHERE m.user_id = ?
            ORDER BY m.created_at DESC, m.rowid DESC
            LIMIT ?
            """,
            (user_id, limit),
        ).fetchall()
    return [dict(row) for row in rows]


def dashboard_counts(user_id: str) -> Dict[str, int]:
    with get_conn() as conn:
        companies = conn.execute(
            "SELECT COUNT(*) AS cnt, SUM(CASE WHEN enriched_at IS NOT NULL THEN 1 ELSE 0 END) AS enriched "
            "FROM companies WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        valid_phones = conn.execute(
            """
            SELECT COUNT(*) AS cnt FROM company_phones p
            JOIN companies c ON c.id = p.company_id
            WHERE c.user_id = ? AND p.status = 'valid'
            """,
            (user_id,),
        ).fetchone()
        messages = conn.execute(
            """
            SELECT
                SUM(CASE WHEN status IN ('sent', 'delivered') THEN 1 ELSE 0 END) AS sent,
                SUM(CASE WHEN status = 'pending' THEN 1 ELSE 0 END) AS pending
            FROM message_history WHERE user_id = ?
            """,
            (user_id,),
        ).fetchone()
    return {
        "total_companies": int(companies["cnt"] or 0),
        "enriched_companies": int(companies["enriched"] or 0),
        "valid_phones": int(valid_phones["cnt"] or 0),
        "messages_sent": int(messages["sent"] or 0),
        "pending_messages": int(messages["pending"] or 0),
    }


# Rate limiting and audit


def count_rate_events(user_id: str, endpoint: str, since: float) -> int:
    with get_conn() as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS cnt FROM rate_limit_events WHERE user_id = ? AND endpoint = ? AND created_at > ?",
            (user_id, endpoint, since),
        ).fetchone()
    return int(row["cnt"])


def insert_rate_event(user_id: str, endpoint: str, at: Optional[float] = None) -> None:
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO rate_limit_events (user_id, endpoint, created_at) VALUES (?, ?, ?)",
            (user_id, endpoint, at if at is not None else time.time()),
        )


def purge_rate_events(before: float, user_id: Optional[str] = None, endpoint: Optional[str] = None) -> int:
    query = "DELETE FROM rate_limit_events WHERE created_at <= ?"
    params: List[Any] = [before]
    if user_id is not None:
        query += " AND user_id = ?"
        params.append(user_id)
    if endpoint is not None:
        query += " AND endpoint = ?"
        params.append(endpoint)
    with get_conn() as conn:
        cur = conn.execute(query, params)
    return cur.rowcount


def record_audit(user_id: Optional[str], action: str, detail: Optional[Dict[str, Any]] = None) -> None:
    with get_conn() as conn:
        conn.execute(
            "INSERT INTO audit_logs (user_id, action, detail_json, created_at) VALUES (?, ?, ?, ?)",
            (user_id, action, json.dumps(detail or {}, ensure_ascii=False, default=str), _utcnow()),
        )


def fetch_audit_logs(user_id: Optional[str] = None, limit: int = 50) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        if user_id:
            rows = conn.execute(
                "SELECT * FROM audit_logs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
        else:
            rows = conn.execute("SELECT * FROM audit_logs ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
    return [dict(row) for row in rows]
