"""
Effect Execution Log — append-only audit trail of attempted effect applications.

Every effect the resolution pipeline attempts produces one EffectExecutionRecord,
successful or not.

Behavioral Contract:
- Append-only. No record is ever modified or deleted.
- Every record answers: Which effect? On which entity? In which phase?
  Did it apply? What changed? What did the variables look like before?
- Queryable by effect, entity, failure status, recency.
"""

import json
import sqlite3
from datetime import datetime
from typing import List, Optional

from campaign_rules.models.execution import EffectExecutionRecord


class EffectExecutionLog:
    """
    Append-only effect execution log.
    Prototype: SQLite. Production: the campaign database's audit table.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the executions table if it doesn't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS effect_executions (
                id TEXT PRIMARY KEY,
                effect_id TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                phase TEXT,
                success INTEGER NOT NULL DEFAULT 0,
                error TEXT,
                executed_at TEXT NOT NULL,
                record_json TEXT NOT NULL
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_effect_id ON effect_executions(effect_id)
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_executions_entity
            ON effect_executions(entity_type, entity_id)
        """)
        self._conn.commit()

    def append(self, record: EffectExecutionRecord) -> EffectExecutionRecord:
        """Append one execution record."""
        full_json = json.dumps(record.model_dump(mode="json"), default=str)
        self._conn.execute(
            """
            INSERT INTO effect_executions (
                id, effect_id, entity_type, entity_id, phase,
                success, error, executed_at, record_json
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.effect_id,
                record.entity_type,
                record.entity_id,
                record.phase.value if record.phase else None,
                int(record.success),
                record.error,
                record.executed_at.isoformat(),
                full_json,
            ),
        )
        self._conn.commit()
        return record

    def _deserialize(self, row: sqlite3.Row) -> EffectExecutionRecord:
        return EffectExecutionRecord.model_validate_json(row["record_json"])

    def get_by_id(self, record_id: str) -> Optional[EffectExecutionRecord]:
        row = self._conn.execute(
            "SELECT record_json FROM effect_executions WHERE id = ?", (record_id,)
        ).fetchone()
        return self._deserialize(row) if row else None

    def query_by_effect(self, effect_id: str, limit: int = 50) -> List[EffectExecutionRecord]:
        """Most recent executions of one effect, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM effect_executions WHERE effect_id = ? "
            "ORDER BY rowid DESC LIMIT ?",
            (effect_id, limit),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_by_entity(
        self, entity_type: str, entity_id: str, limit: int = 50
    ) -> List[EffectExecutionRecord]:
        """Most recent executions against one entity, oldest first."""
        rows = self._conn.execute(
            "SELECT record_json FROM effect_executions "
            "WHERE entity_type = ? AND entity_id = ? ORDER BY rowid DESC LIMIT ?",
            (entity_type, entity_id, limit),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def query_failures(self, since: Optional[datetime] = None) -> List[EffectExecutionRecord]:
        """All failed executions."""
        if since:
            rows = self._conn.execute(
                "SELECT record_json FROM effect_executions WHERE success = 0 "
                "AND executed_at >= ? ORDER BY rowid",
                (since.isoformat(),),
            ).fetchall()
        else:
            rows = self._conn.execute(
                "SELECT record_json FROM effect_executions WHERE success = 0 ORDER BY rowid"
            ).fetchall()
        return [self._deserialize(r) for r in rows]

    def query_recent(self, limit: int = 50) -> List[EffectExecutionRecord]:
        rows = self._conn.execute(
            "SELECT record_json FROM effect_executions ORDER BY rowid DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [self._deserialize(r) for r in reversed(rows)]

    def count(self) -> int:
        """Total number of execution records."""
        row = self._conn.execute("SELECT COUNT(*) as cnt FROM effect_executions").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
