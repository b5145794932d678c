"""Persistent state for actions, opportunities, audit logs and content records."""

import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any, Iterable, Optional

import aiosqlite

from core.models import (
    Action,
    ActionWithOpportunity,
    Collection,
    CollectionItem,
    ContentRecord,
    ExecutionLog,
    NotificationPreferences,
    Opportunity,
    TERMINAL_STATUSES,
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _dump(value: Any) -> Optional[str]:
    return None if value is None else json.dumps(value)


def _load(value: Optional[str]) -> Any:
    return None if value is None else json.loads(value)


# Columns writable through the partial-update helpers
ACTION_COLUMNS = {
    "status", "action_data", "execution_tier", "auto_executable",
    "last_attempt_at", "execution_result", "executed_at", "rolled_back_at",
    "measured_impact",
}
OPPORTUNITY_COLUMNS = {
    "status", "confidence", "estimated_revenue_impact", "approved_at",
    "rejected_at", "implemented_at",
}
EXECUTION_LOG_COLUMNS = {"rolled_back_at", "rolled_back_by", "rollback_reason"}
CONTENT_COLUMNS = {
    "title", "source", "source_url", "author", "description",
    "short_description", "content_type", "visual_style", "themes", "tags",
    "is_free",
}
JSON_COLUMNS = {
    "action_data", "execution_result", "input_data", "output_data",
    "rollback_data", "themes", "tags", "metadata",
}
BOOL_COLUMNS = {"auto_executable", "is_free", "success"}


class StateStore:
    """
    Repository over SQLite.

    Holds the records the engine reads and mutates: opportunities, actions,
    execution logs, the content records and collections handlers edit, and
    notification preferences/log.
    """

    def __init__(self, db_path: str = "./data/engine.db"):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Initialize database and create tables."""
        self._db = await aiosqlite.connect(str(self.db_path))
        self._db.row_factory = aiosqlite.Row

        await self._db.executescript("""
            CREATE TABLE IF NOT EXISTS opportunities (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                opportunity_type TEXT NOT NULL,
                confidence REAL NOT NULL,
                estimated_revenue_impact REAL,
                content_id TEXT,
                page_url TEXT,
                status TEXT NOT NULL,
                created_at REAL NOT NULL,
                approved_at REAL,
                rejected_at REAL,
                implemented_at REAL
            );

            CREATE TABLE IF NOT EXISTS actions (
                id TEXT PRIMARY KEY,
                opportunity_id TEXT NOT NULL REFERENCES opportunities(id),
                action_type TEXT NOT NULL,
                action_data TEXT NOT NULL,
                status TEXT NOT NULL,
                execution_tier INTEGER NOT NULL DEFAULT 3,
                auto_executable INTEGER NOT NULL DEFAULT 0,
                execution_attempts INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                last_attempt_at REAL,
                execution_result TEXT,
                executed_at REAL,
                rolled_back_at REAL,
                measured_impact REAL
            );

            -- Audit trail, never deleted
            CREATE TABLE IF NOT EXISTS execution_logs (
                id TEXT PRIMARY KEY,
                action_id TEXT NOT NULL REFERENCES actions(id),
                executed_by TEXT NOT NULL,
                executed_at REAL NOT NULL,
                input_data TEXT,
                output_data TEXT,
                success INTEGER NOT NULL,
                error_message TEXT,
                duration_ms REAL NOT NULL,
                rollback_data TEXT,
                rolled_back_at REAL,
                rolled_back_by TEXT,
                rollback_reason TEXT
            );

            CREATE TABLE IF NOT EXISTS content_records (
                id TEXT PRIMARY KEY,
                title TEXT NOT NULL,
                source TEXT DEFAULT '',
                source_url TEXT,
                author TEXT,
                description TEXT,
                short_description TEXT,
                content_type TEXT,
                visual_style TEXT,
                themes TEXT DEFAULT '[]',
                tags TEXT DEFAULT '[]',
                is_free INTEGER DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS collections (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                description TEXT DEFAULT '',
                is_public INTEGER DEFAULT 1,
                is_featured INTEGER DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS collection_items (
                id TEXT PRIMARY KEY,
                collection_id TEXT NOT NULL REFERENCES collections(id),
                content_id TEXT NOT NULL REFERENCES content_records(id),
                notes TEXT,
                created_at REAL NOT NULL,
                UNIQUE (collection_id, content_id)
            );

            CREATE TABLE IF NOT EXISTS notification_preferences (
                user_id TEXT PRIMARY KEY,
                slack_enabled INTEGER DEFAULT 1,
                email_enabled INTEGER DEFAULT 1,
                critical_alerts INTEGER DEFAULT 1,
                opportunity_alerts INTEGER DEFAULT 1,
                execution_alerts INTEGER DEFAULT 1,
                digest_alerts INTEGER DEFAULT 1,
                quiet_hours_start INTEGER,
                quiet_hours_end INTEGER
            );

            CREATE TABLE IF NOT EXISTS notification_log (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                channel TEXT NOT NULL,
                event TEXT NOT NULL,
                subject TEXT,
                body TEXT,
                success INTEGER NOT NULL,
                error_message TEXT,
                metadata TEXT,
                created_at REAL NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_actions_status ON actions(status, execution_tier);
            CREATE INDEX IF NOT EXISTS idx_actions_opportunity ON actions(opportunity_id);
            CREATE INDEX IF NOT EXISTS idx_logs_executed ON execution_logs(executed_by, executed_at);
            CREATE INDEX IF NOT EXISTS idx_logs_action ON execution_logs(action_id);
            CREATE INDEX IF NOT EXISTS idx_opportunities_created ON opportunities(created_at);
        """)
        await self._db.commit()

    async def close(self) -> None:
        """Close database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    # ==================== Opportunities ====================

    async def create_opportunity(
        self,
        title: str,
        opportunity_type: str,
        confidence: float,
        estimated_revenue_impact: Optional[float],
        content_id: Optional[str] = None,
        page_url: Optional[str] = None,
        status: str = "PENDING",
        opportunity_id: Optional[str] = None,
        created_at: Optional[float] = None,
    ) -> Opportunity:
        """Create an opportunity record."""
        opportunity = Opportunity(
            id=opportunity_id or _new_id(),
            title=title,
            opportunity_type=opportunity_type,
            confidence=confidence,
            estimated_revenue_impact=estimated_revenue_impact,
            content_id=content_id,
            page_url=page_url,
            status=status,
            created_at=created_at if created_at is not None else time.time(),
        )
        async with self._lock:
            await self._db.execute("""
                INSERT INTO opportunities
                (id, title, opportunity_type, confidence, estimated_revenue_impact,
                 content_id, page_url, status, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                opportunity.id,
                opportunity.title,
                opportunity.opportunity_type,
                opportunity.confidence,
                opportunity.estimated_revenue_impact,
                opportunity.content_id,
                opportunity.page_url,
                opportunity.status,
                opportunity.created_at,
            ))
            await self._db.commit()
        return opportunity

    async def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        """Get opportunity by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM opportunities WHERE id = ?",
            (opportunity_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_opportunity(row) if row else None

    async def update_opportunity(self, opportunity_id: str, **fields: Any) -> bool:
        """Update selected opportunity fields."""
        return await self._update("opportunities", opportunity_id, fields, OPPORTUNITY_COLUMNS)

    # ==================== Actions ====================

    async def create_action(
        self,
        opportunity_id: str,
        action_type: str,
        action_data: Optional[dict] = None,
        execution_tier: int = 3,
        auto_executable: bool = False,
        status: str = "PENDING",
        action_id: Optional[str] = None,
        created_at: Optional[float] = None,
        execution_attempts: int = 0,
    ) -> Action:
        """Create an action record."""
        action = Action(
            id=action_id or _new_id(),
            opportunity_id=opportunity_id,
            action_type=action_type,
            action_data=action_data or {},
            status=status,
            execution_tier=execution_tier,
            auto_executable=auto_executable,
            execution_attempts=execution_attempts,
            created_at=created_at if created_at is not None else time.time(),
        )
        async with self._lock:
            await self._db.execute("""
                INSERT INTO actions
                (id, opportunity_id, action_type, action_data, status,
                 execution_tier, auto_executable, execution_attempts, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                action.id,
                action.opportunity_id,
                action.action_type,
                json.dumps(action.action_data),
                action.status,
                action.execution_tier,
                int(action.auto_executable),
                action.execution_attempts,
                action.created_at,
            ))
            await self._db.commit()
        return action

    async def get_action(self, action_id: str) -> Optional[Action]:
        """Get action by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM actions WHERE id = ?",
            (action_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_action(row) if row else None

    async def update_action(
        self,
        action_id: str,
        increment_attempts: bool = False,
        **fields: Any,
    ) -> bool:
        """
        Update selected action fields.

        With ``increment_attempts`` the attempt counter is bumped in the same
        statement (``execution_attempts = execution_attempts + 1``).
        """
        extra = ["execution_attempts = execution_attempts + 1"] if increment_attempts else []
        return await self._update("actions", action_id, fields, ACTION_COLUMNS, extra)

    async def increment_action_attempts(self, action_id: str) -> bool:
        """Bump the attempt counter of an action."""
        return await self.update_action(action_id, increment_attempts=True)

    async def find_sweep_candidates(
        self,
        status: str,
        execution_tier: int,
        max_attempts: int,
        limit: int,
        auto_executable: Optional[bool] = None,
        not_executed: bool = False,
    ) -> list[ActionWithOpportunity]:
        """Get actions eligible for a sweep pass, oldest first, with their opportunity."""
        if limit <= 0:
            return []

        clauses = ["a.status = ?", "a.execution_tier = ?", "a.execution_attempts < ?"]
        params: list[Any] = [status, execution_tier, max_attempts]
        if auto_executable is not None:
            clauses.append("a.auto_executable = ?")
            params.append(int(auto_executable))
        if not_executed:
            clauses.append("a.executed_at IS NULL")
        params.append(limit)

        cursor = await self._db.execute(f"""
            SELECT a.id AS action_id, o.id AS opportunity_id
            FROM actions a JOIN opportunities o ON o.id = a.opportunity_id
            WHERE {' AND '.join(clauses)}
            ORDER BY a.created_at ASC
            LIMIT ?
        """, params)
        rows = await cursor.fetchall()

        results = []
        for row in rows:
            action = await self.get_action(row["action_id"])
            opportunity = await self.get_opportunity(row["opportunity_id"])
            results.append(ActionWithOpportunity(action=action, opportunity=opportunity))
        return results

    async def count_unresolved_actions(self, opportunity_id: str) -> int:
        """Count actions of an opportunity not in a terminal status."""
        terminal = [s.value for s in TERMINAL_STATUSES]
        cursor = await self._db.execute(f"""
            SELECT COUNT(*) AS cnt FROM actions
            WHERE opportunity_id = ? AND status NOT IN ({', '.join('?' for _ in terminal)})
        """, (opportunity_id, *terminal))
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    # ==================== Execution Logs ====================

    async def create_execution_log(
        self,
        action_id: str,
        executed_by: str,
        input_data: Optional[dict],
        success: bool,
        error_message: Optional[str],
        output_data: Optional[dict],
        duration_ms: float,
        rollback_data: Optional[dict] = None,
        executed_at: Optional[float] = None,
    ) -> ExecutionLog:
        """Write an audit record for one execution attempt."""
        log = ExecutionLog(
            id=_new_id(),
            action_id=action_id,
            executed_by=executed_by,
            executed_at=executed_at if executed_at is not None else time.time(),
            input_data=input_data or {},
            output_data=output_data,
            success=success,
            error_message=error_message,
            duration_ms=duration_ms,
            rollback_data=rollback_data,
        )
        async with self._lock:
            await self._db.execute("""
                INSERT INTO execution_logs
                (id, action_id, executed_by, executed_at, input_data, output_data,
                 success, error_message, duration_ms, rollback_data)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                log.id,
                log.action_id,
                log.executed_by,
                log.executed_at,
                json.dumps(log.input_data),
                _dump(log.output_data),
                int(log.success),
                log.error_message,
                log.duration_ms,
                _dump(log.rollback_data),
            ))
            await self._db.commit()
        return log

    async def get_execution_log(self, log_id: str) -> Optional[ExecutionLog]:
        """Get execution log by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM execution_logs WHERE id = ?",
            (log_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_log(row) if row else None

    async def get_execution_logs_for_action(self, action_id: str) -> list[ExecutionLog]:
        """Get all execution logs of an action, oldest first."""
        cursor = await self._db.execute(
            "SELECT * FROM execution_logs WHERE action_id = ? ORDER BY executed_at ASC",
            (action_id,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_log(row) for row in rows]

    async def update_execution_log(self, log_id: str, **fields: Any) -> bool:
        """Stamp rollback metadata on an execution log."""
        return await self._update("execution_logs", log_id, fields, EXECUTION_LOG_COLUMNS)

    async def count_execution_logs(
        self,
        since: float,
        executed_by: Optional[str] = None,
        success: Optional[bool] = None,
    ) -> int:
        """Count execution attempts since a timestamp."""
        clauses = ["executed_at >= ?"]
        params: list[Any] = [since]
        if executed_by is not None:
            clauses.append("executed_by = ?")
            params.append(executed_by)
        if success is not None:
            clauses.append("success = ?")
            params.append(int(success))

        cursor = await self._db.execute(
            f"SELECT COUNT(*) AS cnt FROM execution_logs WHERE {' AND '.join(clauses)}",
            params
        )
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    async def count_rolled_back_since(self, since: float) -> int:
        """Count executions rolled back since a timestamp."""
        cursor = await self._db.execute(
            "SELECT COUNT(*) AS cnt FROM execution_logs WHERE rolled_back_at >= ?",
            (since,)
        )
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    async def recent_execution_logs(self, limit: int = 20) -> list[ExecutionLog]:
        """Get most recent execution logs, newest first."""
        cursor = await self._db.execute(
            "SELECT * FROM execution_logs ORDER BY executed_at DESC LIMIT ?",
            (limit,)
        )
        rows = await cursor.fetchall()
        return [self._row_to_log(row) for row in rows]

    async def execution_counts_by_type(self, since: float) -> dict[str, dict[str, int]]:
        """Attempts, successes and failures per action type since a timestamp."""
        cursor = await self._db.execute("""
            SELECT a.action_type AS action_type,
                   COUNT(*) AS executed,
                   SUM(CASE WHEN l.success = 1 THEN 1 ELSE 0 END) AS success,
                   SUM(CASE WHEN l.success = 0 THEN 1 ELSE 0 END) AS failed
            FROM execution_logs l JOIN actions a ON a.id = l.action_id
            WHERE l.executed_at >= ?
            GROUP BY a.action_type
        """, (since,))
        rows = await cursor.fetchall()
        return {
            row["action_type"]: {
                "executed": row["executed"],
                "success": row["success"] or 0,
                "failed": row["failed"] or 0,
            }
            for row in rows
        }

    # ==================== Content Records ====================

    async def create_content_record(self, record: ContentRecord) -> ContentRecord:
        """Insert a content record."""
        async with self._lock:
            await self._db.execute("""
                INSERT INTO content_records
                (id, title, source, source_url, author, description,
                 short_description, content_type, visual_style, themes, tags, is_free)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                record.id,
                record.title,
                record.source,
                record.source_url,
                record.author,
                record.description,
                record.short_description,
                record.content_type,
                record.visual_style,
                json.dumps(record.themes),
                json.dumps(record.tags),
                int(record.is_free),
            ))
            await self._db.commit()
        return record

    async def get_content_record(self, content_id: str) -> Optional[ContentRecord]:
        """Get content record by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM content_records WHERE id = ?",
            (content_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return ContentRecord(
            id=row["id"],
            title=row["title"],
            source=row["source"] or "",
            source_url=row["source_url"],
            author=row["author"],
            description=row["description"],
            short_description=row["short_description"],
            content_type=row["content_type"],
            visual_style=row["visual_style"],
            themes=_load(row["themes"]) or [],
            tags=_load(row["tags"]) or [],
            is_free=bool(row["is_free"]),
        )

    async def update_content_record(self, content_id: str, **fields: Any) -> bool:
        """Update selected content record fields."""
        return await self._update("content_records", content_id, fields, CONTENT_COLUMNS)

    # ==================== Collections ====================

    async def create_collection(
        self,
        owner: str,
        name: str,
        description: str = "",
        is_public: bool = True,
        is_featured: bool = False,
        collection_id: Optional[str] = None,
    ) -> Collection:
        """Create a collection."""
        collection = Collection(
            id=collection_id or _new_id(),
            owner=owner,
            name=name,
            description=description,
            is_public=is_public,
            is_featured=is_featured,
        )
        async with self._lock:
            await self._db.execute("""
                INSERT INTO collections (id, owner, name, description, is_public, is_featured)
                VALUES (?, ?, ?, ?, ?, ?)
            """, (
                collection.id,
                collection.owner,
                collection.name,
                collection.description,
                int(collection.is_public),
                int(collection.is_featured),
            ))
            await self._db.commit()
        return collection

    async def get_collection(self, collection_id: str) -> Optional[Collection]:
        """Get collection by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM collections WHERE id = ?",
            (collection_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_collection(row) if row else None

    async def find_collection(self, owner: str, name: str) -> Optional[Collection]:
        """Find a collection by owner and name."""
        cursor = await self._db.execute(
            "SELECT * FROM collections WHERE owner = ? AND name = ? LIMIT 1",
            (owner, name)
        )
        row = await cursor.fetchone()
        return self._row_to_collection(row) if row else None

    async def get_collection_item(
        self,
        collection_id: str,
        content_id: str,
    ) -> Optional[CollectionItem]:
        """Get the membership row for a (collection, content) pair."""
        cursor = await self._db.execute(
            "SELECT * FROM collection_items WHERE collection_id = ? AND content_id = ?",
            (collection_id, content_id)
        )
        row = await cursor.fetchone()
        return self._row_to_collection_item(row) if row else None

    async def get_collection_item_by_id(self, item_id: str) -> Optional[CollectionItem]:
        """Get a membership row by ID."""
        cursor = await self._db.execute(
            "SELECT * FROM collection_items WHERE id = ?",
            (item_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_collection_item(row) if row else None

    async def create_collection_item(
        self,
        collection_id: str,
        content_id: str,
        notes: Optional[str] = None,
    ) -> CollectionItem:
        """Add a content record to a collection."""
        item = CollectionItem(
            id=_new_id(),
            collection_id=collection_id,
            content_id=content_id,
            notes=notes,
            created_at=time.time(),
        )
        async with self._lock:
            await self._db.execute("""
                INSERT INTO collection_items (id, collection_id, content_id, notes, created_at)
                VALUES (?, ?, ?, ?, ?)
            """, (item.id, item.collection_id, item.content_id, item.notes, item.created_at))
            await self._db.commit()
        return item

    async def delete_collection_item(self, item_id: str) -> bool:
        """Delete a membership row by ID."""
        async with self._lock:
            result = await self._db.execute(
                "DELETE FROM collection_items WHERE id = ?",
                (item_id,)
            )
            await self._db.commit()
            return result.rowcount > 0

    # ==================== Notifications ====================

    async def get_notification_preferences(
        self,
        user_id: str,
    ) -> Optional[NotificationPreferences]:
        """Get stored notification preferences for a recipient."""
        cursor = await self._db.execute(
            "SELECT * FROM notification_preferences WHERE user_id = ?",
            (user_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return NotificationPreferences(
            user_id=row["user_id"],
            slack_enabled=bool(row["slack_enabled"]),
            email_enabled=bool(row["email_enabled"]),
            critical_alerts=bool(row["critical_alerts"]),
            opportunity_alerts=bool(row["opportunity_alerts"]),
            execution_alerts=bool(row["execution_alerts"]),
            digest_alerts=bool(row["digest_alerts"]),
            quiet_hours_start=row["quiet_hours_start"],
            quiet_hours_end=row["quiet_hours_end"],
        )

    async def upsert_notification_preferences(self, prefs: NotificationPreferences) -> None:
        """Insert or replace notification preferences."""
        async with self._lock:
            await self._db.execute("""
                INSERT OR REPLACE INTO notification_preferences
                (user_id, slack_enabled, email_enabled, critical_alerts,
                 opportunity_alerts, execution_alerts, digest_alerts,
                 quiet_hours_start, quiet_hours_end)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                prefs.user_id,
                int(prefs.slack_enabled),
                int(prefs.email_enabled),
                int(prefs.critical_alerts),
                int(prefs.opportunity_alerts),
                int(prefs.execution_alerts),
                int(prefs.digest_alerts),
                prefs.quiet_hours_start,
                prefs.quiet_hours_end,
            ))
            await self._db.commit()

    async def record_notification(
        self,
        channel: str,
        event: str,
        subject: str,
        success: bool,
        body: str = "",
        error_message: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> None:
        """Record a notification delivery attempt."""
        async with self._lock:
            await self._db.execute("""
                INSERT INTO notification_log
                (channel, event, subject, body, success, error_message, metadata, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """, (
                channel,
                event,
                subject,
                body,
                int(success),
                error_message,
                _dump(metadata),
                time.time(),
            ))
            await self._db.commit()

    async def get_notification_log(self, limit: int = 50) -> list[dict]:
        """Get recent notification log rows, newest first."""
        cursor = await self._db.execute(
            "SELECT * FROM notification_log ORDER BY id DESC LIMIT ?",
            (limit,)
        )
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    # ==================== Digest Aggregates ====================

    async def count_opportunities(self, column: str, start: float, end: float) -> int:
        """Count opportunities whose timestamp column falls in [start, end)."""
        if column not in ("created_at", "approved_at", "rejected_at", "implemented_at"):
            raise ValueError(f"Unsupported opportunity timestamp column: {column}")
        cursor = await self._db.execute(
            f"SELECT COUNT(*) AS cnt FROM opportunities WHERE {column} >= ? AND {column} < ?",
            (start, end)
        )
        row = await cursor.fetchone()
        return row["cnt"] if row else 0

    async def sum_estimated_impact(self, start: float, end: float) -> float:
        """Sum estimated monthly impact of opportunities created in [start, end)."""
        cursor = await self._db.execute("""
            SELECT COALESCE(SUM(estimated_revenue_impact), 0) AS total
            FROM opportunities WHERE created_at >= ? AND created_at < ?
        """, (start, end))
        row = await cursor.fetchone()
        return float(row["total"]) if row else 0.0

    async def top_opportunities(self, start: float, end: float, limit: int = 5) -> list[Opportunity]:
        """Highest-impact opportunities created in [start, end)."""
        cursor = await self._db.execute("""
            SELECT * FROM opportunities
            WHERE created_at >= ? AND created_at < ?
            ORDER BY COALESCE(estimated_revenue_impact, 0) DESC
            LIMIT ?
        """, (start, end, limit))
        rows = await cursor.fetchall()
        return [self._row_to_opportunity(row) for row in rows]

    async def executed_action_stats(self, start: float, end: float) -> list[dict]:
        """Executed actions per type with summed measured impact."""
        cursor = await self._db.execute("""
            SELECT action_type, COUNT(*) AS cnt, COALESCE(SUM(measured_impact), 0) AS impact
            FROM actions
            WHERE status = 'EXECUTED' AND executed_at >= ? AND executed_at < ?
            GROUP BY action_type
            ORDER BY cnt DESC
        """, (start, end))
        rows = await cursor.fetchall()
        return [
            {"type": row["action_type"], "count": row["cnt"], "total_impact": float(row["impact"])}
            for row in rows
        ]

    # ==================== Helpers ====================

    async def _update(
        self,
        table: str,
        record_id: str,
        fields: dict[str, Any],
        allowed: Iterable[str],
        extra_assignments: Optional[list[str]] = None,
    ) -> bool:
        """Partial update restricted to known columns."""
        unknown = set(fields) - set(allowed)
        if unknown:
            raise ValueError(f"Cannot update {table} columns: {sorted(unknown)}")

        updates = list(extra_assignments or [])
        params: list[Any] = []
        for column, value in fields.items():
            if column in JSON_COLUMNS:
                value = _dump(value)
            elif column in BOOL_COLUMNS and value is not None:
                value = int(value)
            updates.append(f"{column} = ?")
            params.append(value)

        if not updates:
            return False

        params.append(record_id)
        async with self._lock:
            result = await self._db.execute(
                f"UPDATE {table} SET {', '.join(updates)} WHERE id = ?",
                params
            )
            await self._db.commit()
            return result.rowcount > 0

    def _row_to_opportunity(self, row) -> Opportunity:
        return Opportunity(
            id=row["id"],
            title=row["title"],
            opportunity_type=row["opportunity_type"],
            confidence=row["confidence"],
            estimated_revenue_impact=row["estimated_revenue_impact"],
            content_id=row["content_id"],
            page_url=row["page_url"],
            status=row["status"],
            created_at=row["created_at"],
            approved_at=row["approved_at"],
            rejected_at=row["rejected_at"],
            implemented_at=row["implemented_at"],
        )

    def _row_to_action(self, row) -> Action:
        return Action(
            id=row["id"],
            opportunity_id=row["opportunity_id"],
            action_type=row["action_type"],
            action_data=_load(row["action_data"]) or {},
            status=row["status"],
            execution_tier=row["execution_tier"],
            auto_executable=bool(row["auto_executable"]),
            execution_attempts=row["execution_attempts"],
            created_at=row["created_at"],
            last_attempt_at=row["last_attempt_at"],
            execution_result=_load(row["execution_result"]),
            executed_at=row["executed_at"],
            rolled_back_at=row["rolled_back_at"],
            measured_impact=row["measured_impact"],
        )

    def _row_to_log(self, row) -> ExecutionLog:
        return ExecutionLog(
            id=row["id"],
            action_id=row["action_id"],
            executed_by=row["executed_by"],
            executed_at=row["executed_at"],
            input_data=_load(row["input_data"]) or {},
            output_data=_load(row["output_data"]),
            success=bool(row["success"]),
            error_message=row["error_message"],
            duration_ms=row["duration_ms"],
            rollback_data=_load(row["rollback_data"]),
            rolled_back_at=row["rolled_back_at"],
            rolled_back_by=row["rolled_back_by"],
            rollback_reason=row["rollback_reason"],
        )

    def _row_to_collection(self, row) -> Collection:
        return Collection(
            id=row["id"],
            owner=row["owner"],
            name=row["name"],
            description=row["description"] or "",
            is_public=bool(row["is_public"]),
            is_featured=bool(row["is_featured"]),
        )

    def _row_to_collection_item(self, row) -> CollectionItem:
        return CollectionItem(
            id=row["id"],
            collection_id=row["collection_id"],
            content_id=row["content_id"],
            notes=row["notes"],
            created_at=row["created_at"],
        )
