"""SQLite implementation of the workflow repository."""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import threading
from pathlib import Path
from typing import Any, Sequence

from ..contracts import ApprovalHistory, DocumentWorkflow, WorkflowTemplate
from ..exceptions import (
    ConcurrentModificationError,
    PersistenceError,
    SignrouteError,
    WorkflowExistsError,
)
from .models import WorkflowRecord
from .repository import WorkflowRepository

logger = logging.getLogger(__name__)

_WORKFLOW_COLUMNS = (
    "id, document_id, template_id, active_step_ids, waiting_step_ids, status, "
    "initiator_id, started_at, completed_at, version"
)
_HISTORY_COLUMNS = (
    "id, workflow_id, step_id, actor_id, status, acted_at, note, evidence_ref"
)


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist templates and workflow state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock, self._conn:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS templates (
                    id TEXT PRIMARY KEY,
                    document_type_id TEXT NOT NULL,
                    is_active INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    data TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS workflows (
                    id TEXT PRIMARY KEY,
                    document_id TEXT NOT NULL,
                    template_id TEXT NOT NULL REFERENCES templates(id),
                    active_step_ids TEXT NOT NULL,
                    waiting_step_ids TEXT NOT NULL,
                    status TEXT NOT NULL,
                    initiator_id TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    version INTEGER NOT NULL
                );
                CREATE UNIQUE INDEX IF NOT EXISTS ux_workflows_open_document
                    ON workflows (document_id)
                    WHERE status IN ('pending', 'in_progress');
                CREATE TABLE IF NOT EXISTS approval_history (
                    id TEXT PRIMARY KEY,
                    workflow_id TEXT NOT NULL REFERENCES workflows(id),
                    step_id TEXT NOT NULL,
                    actor_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    acted_at TEXT,
                    note TEXT,
                    evidence_ref TEXT,
                    UNIQUE (workflow_id, step_id)
                );
                """
            )

    # ------------------------------------------------------------------
    # Helper methods
    def _transaction(self, work, *args: Any) -> Any:
        """Run ``work(cursor, *args)`` in one transaction.

        The connection context manager commits on success and rolls back on
        any exception, so callers never see a partial write.
        """
        with self._lock:
            try:
                with self._conn:
                    return work(self._conn.cursor(), *args)
            except SignrouteError:
                raise
            except sqlite3.Error as exc:
                logger.error(f"SQLite transaction failed on {self.db_path}: {exc}")
                raise PersistenceError(str(exc)) from exc

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    # ------------------------------------------------------------------
    # Templates
    async def save_templates(self, templates: Sequence[WorkflowTemplate]) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            for template in templates:
                cur.execute(
                    """
                    INSERT INTO templates (id, document_type_id, is_active, created_at, data)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        document_type_id = excluded.document_type_id,
                        is_active = excluded.is_active,
                        data = excluded.data
                    """,
                    (
                        template.id,
                        template.document_type_id,
                        int(template.is_active),
                        template.created_at.isoformat(),
                        template.model_dump_json(),
                    ),
                )

        await asyncio.to_thread(self._transaction, work)

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT data FROM templates WHERE id = ?", template_id
        )
        if not row:
            return None
        return WorkflowTemplate.model_validate_json(row["data"])

    async def list_templates(self) -> list[WorkflowTemplate]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT data FROM templates ORDER BY created_at DESC"
        )
        return [WorkflowTemplate.model_validate_json(r["data"]) for r in rows]

    async def template_in_use(self, template_id: str) -> bool:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT 1 FROM workflows WHERE template_id = ? LIMIT 1",
            template_id,
        )
        return row is not None

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self, workflow: DocumentWorkflow, history: Sequence[ApprovalHistory]
    ) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            cur.execute(
                "SELECT id FROM workflows WHERE document_id = ? AND status IN ('pending', 'in_progress')",
                (workflow.document_id,),
            )
            existing = cur.fetchone()
            if existing:
                raise WorkflowExistsError(workflow.document_id, existing["id"])
            cur.execute(
                f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                _workflow_params(workflow),
            )
            for row in history:
                cur.execute(
                    f"INSERT INTO approval_history ({_HISTORY_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    _history_params(row),
                )

        await asyncio.to_thread(self._transaction, work)

    async def commit_transition(
        self,
        workflow: DocumentWorkflow,
        history: Sequence[ApprovalHistory],
        expected_version: int,
    ) -> None:
        def work(cur: sqlite3.Cursor) -> None:
            cur.execute(
                """
                UPDATE workflows
                SET active_step_ids = ?, waiting_step_ids = ?, status = ?,
                    completed_at = ?, version = ?
                WHERE id = ? AND version = ?
                """,
                (
                    json.dumps(list(workflow.active_step_ids)),
                    json.dumps(list(workflow.waiting_step_ids)),
                    workflow.status.value,
                    _iso(workflow.completed_at),
                    workflow.version,
                    workflow.id,
                    expected_version,
                ),
            )
            if cur.rowcount != 1:
                raise ConcurrentModificationError(workflow.id, expected_version)
            for row in history:
                cur.execute(
                    """
                    UPDATE approval_history
                    SET actor_id = ?, status = ?, acted_at = ?, note = ?, evidence_ref = ?
                    WHERE workflow_id = ? AND step_id = ?
                    """,
                    (
                        row.actor_id,
                        row.status.value,
                        _iso(row.acted_at),
                        row.note,
                        row.evidence_ref,
                        row.workflow_id,
                        row.step_id,
                    ),
                )

        await asyncio.to_thread(self._transaction, work)

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = ?",
            workflow_id,
        )
        if not row:
            return None
        return await self._record(row)

    async def get_workflow_for_document(self, document_id: str) -> WorkflowRecord | None:
        row = await asyncio.to_thread(
            self._fetchone,
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE document_id = ? "
            "ORDER BY started_at DESC LIMIT 1",
            document_id,
        )
        if not row:
            return None
        return await self._record(row)

    async def list_workflows(self, active_only: bool = False) -> list[WorkflowRecord]:
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows"
        if active_only:
            query += " WHERE status IN ('pending', 'in_progress')"
        rows = await asyncio.to_thread(self._fetchall, query + " ORDER BY started_at")
        return [await self._record(row) for row in rows]

    async def _record(self, row: sqlite3.Row) -> WorkflowRecord:
        history_rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT {_HISTORY_COLUMNS} FROM approval_history WHERE workflow_id = ?",
            row["id"],
        )
        workflow = DocumentWorkflow(
            id=row["id"],
            document_id=row["document_id"],
            template_id=row["template_id"],
            active_step_ids=json.loads(row["active_step_ids"]),
            waiting_step_ids=json.loads(row["waiting_step_ids"]),
            status=row["status"],
            initiator_id=row["initiator_id"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            version=row["version"],
        )
        history = [ApprovalHistory(**dict(r)) for r in history_rows]
        return WorkflowRecord(workflow=workflow, history=history)


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _workflow_params(workflow: DocumentWorkflow) -> tuple:
    return (
        workflow.id,
        workflow.document_id,
        workflow.template_id,
        json.dumps(list(workflow.active_step_ids)),
        json.dumps(list(workflow.waiting_step_ids)),
        workflow.status.value,
        workflow.initiator_id,
        workflow.started_at.isoformat(),
        _iso(workflow.completed_at),
        workflow.version,
    )


def _history_params(row: ApprovalHistory) -> tuple:
    return (
        row.id,
        row.workflow_id,
        row.step_id,
        row.actor_id,
        row.status.value,
        _iso(row.acted_at),
        row.note,
        row.evidence_ref,
    )
