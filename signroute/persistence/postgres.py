"""PostgreSQL implementation of the workflow repository."""

from __future__ import annotations

import json
import logging
from typing import Sequence

import asyncpg

from ..contracts import ApprovalHistory, DocumentWorkflow, WorkflowTemplate
from ..exceptions import (
    ConcurrentModificationError,
    PersistenceError,
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


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist templates and workflow state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        try:
            conn = await asyncpg.connect(self._dsn)
        except (OSError, asyncpg.PostgresError) as exc:
            raise PersistenceError(f"Cannot connect to PostgreSQL: {exc}") from exc
        if not self._initialized:
            try:
                await self._ensure_schema(conn)
            except BaseException:
                await conn.close()
                raise
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS templates (
                id TEXT PRIMARY KEY,
                document_type_id TEXT NOT NULL,
                is_active BOOLEAN NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                data JSONB NOT NULL
            );
            CREATE TABLE IF NOT EXISTS workflows (
                id TEXT PRIMARY KEY,
                document_id TEXT NOT NULL,
                template_id TEXT NOT NULL REFERENCES templates(id),
                active_step_ids JSONB NOT NULL,
                waiting_step_ids JSONB NOT NULL,
                status TEXT NOT NULL,
                initiator_id TEXT,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
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
                acted_at TIMESTAMPTZ,
                note TEXT,
                evidence_ref TEXT,
                UNIQUE (workflow_id, step_id)
            );
            """
        )

    # ------------------------------------------------------------------
    # Templates
    async def save_templates(self, templates: Sequence[WorkflowTemplate]) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                for template in templates:
                    await conn.execute(
                        """
                        INSERT INTO templates (id, document_type_id, is_active, created_at, data)
                        VALUES ($1, $2, $3, $4, $5)
                        ON CONFLICT (id) DO UPDATE SET
                            document_type_id = EXCLUDED.document_type_id,
                            is_active = EXCLUDED.is_active,
                            data = EXCLUDED.data
                        """,
                        template.id,
                        template.document_type_id,
                        template.is_active,
                        template.created_at,
                        template.model_dump_json(),
                    )
        except asyncpg.PostgresError as exc:
            logger.error(f"Failed to save templates: {exc}")
            raise PersistenceError(str(exc)) from exc
        finally:
            await conn.close()

    async def get_template(self, template_id: str) -> WorkflowTemplate | None:
        conn = await self._connect()
        try:
            data = await conn.fetchval("SELECT data FROM templates WHERE id = $1", template_id)
        finally:
            await conn.close()
        if data is None:
            return None
        return WorkflowTemplate.model_validate_json(data)

    async def list_templates(self) -> list[WorkflowTemplate]:
        conn = await self._connect()
        try:
            rows = await conn.fetch("SELECT data FROM templates ORDER BY created_at DESC")
        finally:
            await conn.close()
        return [WorkflowTemplate.model_validate_json(r["data"]) for r in rows]

    async def template_in_use(self, template_id: str) -> bool:
        conn = await self._connect()
        try:
            found = await conn.fetchval(
                "SELECT 1 FROM workflows WHERE template_id = $1 LIMIT 1", template_id
            )
        finally:
            await conn.close()
        return found is not None

    # ------------------------------------------------------------------
    # Workflows
    async def create_workflow(
        self, workflow: DocumentWorkflow, history: Sequence[ApprovalHistory]
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                existing = await conn.fetchval(
                    "SELECT id FROM workflows WHERE document_id = $1 "
                    "AND status IN ('pending', 'in_progress') FOR UPDATE",
                    workflow.document_id,
                )
                if existing:
                    raise WorkflowExistsError(workflow.document_id, existing)
                await conn.execute(
                    f"INSERT INTO workflows ({_WORKFLOW_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)",
                    workflow.id,
                    workflow.document_id,
                    workflow.template_id,
                    json.dumps(list(workflow.active_step_ids)),
                    json.dumps(list(workflow.waiting_step_ids)),
                    workflow.status.value,
                    workflow.initiator_id,
                    workflow.started_at,
                    workflow.completed_at,
                    workflow.version,
                )
                await conn.executemany(
                    f"INSERT INTO approval_history ({_HISTORY_COLUMNS}) "
                    "VALUES ($1, $2, $3, $4, $5, $6, $7, $8)",
                    [
                        (
                            row.id,
                            row.workflow_id,
                            row.step_id,
                            row.actor_id,
                            row.status.value,
                            row.acted_at,
                            row.note,
                            row.evidence_ref,
                        )
                        for row in history
                    ],
                )
        except asyncpg.UniqueViolationError as exc:
            raise WorkflowExistsError(workflow.document_id, "unknown") from exc
        except asyncpg.PostgresError as exc:
            logger.error(f"Failed to create workflow {workflow.id}: {exc}")
            raise PersistenceError(str(exc)) from exc
        finally:
            await conn.close()

    async def commit_transition(
        self,
        workflow: DocumentWorkflow,
        history: Sequence[ApprovalHistory],
        expected_version: int,
    ) -> None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                status = await conn.execute(
                    """
                    UPDATE workflows
                    SET active_step_ids = $1, waiting_step_ids = $2, status = $3,
                        completed_at = $4, version = $5
                    WHERE id = $6 AND version = $7
                    """,
                    json.dumps(list(workflow.active_step_ids)),
                    json.dumps(list(workflow.waiting_step_ids)),
                    workflow.status.value,
                    workflow.completed_at,
                    workflow.version,
                    workflow.id,
                    expected_version,
                )
                if status != "UPDATE 1":
                    raise ConcurrentModificationError(workflow.id, expected_version)
                await conn.executemany(
                    """
                    UPDATE approval_history
                    SET actor_id = $1, status = $2, acted_at = $3, note = $4, evidence_ref = $5
                    WHERE workflow_id = $6 AND step_id = $7
                    """,
                    [
                        (
                            row.actor_id,
                            row.status.value,
                            row.acted_at,
                            row.note,
                            row.evidence_ref,
                            row.workflow_id,
                            row.step_id,
                        )
                        for row in history
                    ],
                )
        except asyncpg.PostgresError as exc:
            logger.error(f"Failed to commit transition for workflow {workflow.id}: {exc}")
            raise PersistenceError(str(exc)) from exc
        finally:
            await conn.close()

    async def get_workflow(self, workflow_id: str) -> WorkflowRecord | None:
        return await self._fetch_one(
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE id = $1", workflow_id
        )

    async def get_workflow_for_document(self, document_id: str) -> WorkflowRecord | None:
        return await self._fetch_one(
            f"SELECT {_WORKFLOW_COLUMNS} FROM workflows WHERE document_id = $1 "
            "ORDER BY started_at DESC LIMIT 1",
            document_id,
        )

    async def list_workflows(self, active_only: bool = False) -> list[WorkflowRecord]:
        query = f"SELECT {_WORKFLOW_COLUMNS} FROM workflows"
        if active_only:
            query += " WHERE status IN ('pending', 'in_progress')"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query + " ORDER BY started_at")
            return [await self._record(conn, row) for row in rows]
        finally:
            await conn.close()

    async def _fetch_one(self, query: str, *params) -> WorkflowRecord | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(query, *params)
            if not row:
                return None
            return await self._record(conn, row)
        finally:
            await conn.close()

    async def _record(self, conn: asyncpg.Connection, row: asyncpg.Record) -> WorkflowRecord:
        history_rows = await conn.fetch(
            f"SELECT {_HISTORY_COLUMNS} FROM approval_history WHERE workflow_id = $1",
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
