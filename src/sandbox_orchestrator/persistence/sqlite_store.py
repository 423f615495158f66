import json
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

_META_COLUMNS = ("id", "related_object_type", "owner_tenant_id", "created_at", "updated_at")


class SqliteObjectStore:
    """Generic "objects" table keyed by id.

    Each row carries a ``related_object_type`` discriminator and an optional
    ``owner_tenant_id``; every other field lives in a JSON ``data`` column and
    is merged on update.
    """

    def __init__(self, db_path: Path):
        self._db_path = Path(db_path).expanduser().resolve()
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_schema()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._db_path))
        conn.row_factory = sqlite3.Row
        return conn

    def _init_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS objects (
                    id TEXT PRIMARY KEY,
                    related_object_type TEXT NOT NULL,
                    owner_tenant_id TEXT,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_objects_type_owner
                ON objects (related_object_type, owner_tenant_id)
                """
            )

    def get_row_by_id(self, row_id: str) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM objects WHERE id = ?", (row_id,)).fetchone()
        return _row_to_dict(row) if row else None

    def get_rows(
        self,
        related_object_type: str,
        owner_tenant_id: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        query = "SELECT * FROM objects WHERE related_object_type = ?"
        params: List[Any] = [related_object_type]
        if owner_tenant_id is not None:
            query += " AND owner_tenant_id = ?"
            params.append(owner_tenant_id)
        query += " ORDER BY created_at ASC"
        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_dict(r) for r in rows]

    def insert_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        related_type = str(row.get("related_object_type") or "").strip()
        if not related_type:
            raise ValueError("related_object_type is required")
        row_id = str(row.get("id") or uuid.uuid4())
        now = _utc_now()
        data = {k: v for k, v in row.items() if k not in _META_COLUMNS}
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO objects (id, related_object_type, owner_tenant_id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (row_id, related_type, row.get("owner_tenant_id"), json.dumps(data), now, now),
            )
        stored = self.get_row_by_id(row_id)
        assert stored is not None
        return stored

    def upsert_row(self, row: Dict[str, Any]) -> Dict[str, Any]:
        row_id = str(row.get("id") or "")
        if row_id and self.get_row_by_id(row_id) is not None:
            updated = self.update_row(row_id, {k: v for k, v in row.items() if k != "id"})
            assert updated is not None
            return updated
        return self.insert_row(row)

    def update_row(self, row_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM objects WHERE id = ?", (row_id,)).fetchone()
            if row is None:
                return None
            data = json.loads(row["data"] or "{}")
            owner = row["owner_tenant_id"]
            for key, value in fields.items():
                if key == "owner_tenant_id":
                    owner = value
                elif key not in _META_COLUMNS:
                    data[key] = value
            conn.execute(
                "UPDATE objects SET data = ?, owner_tenant_id = ?, updated_at = ? WHERE id = ?",
                (json.dumps(data), owner, _utc_now(), row_id),
            )
        return self.get_row_by_id(row_id)

    def delete_row(self, row_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM objects WHERE id = ?", (row_id,))
        return cur.rowcount > 0


def _row_to_dict(row: sqlite3.Row) -> Dict[str, Any]:
    data = json.loads(row["data"] or "{}")
    if not isinstance(data, dict):
        data = {}
    data.update(
        {
            "id": row["id"],
            "related_object_type": row["related_object_type"],
            "owner_tenant_id": row["owner_tenant_id"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }
    )
    return data


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()
