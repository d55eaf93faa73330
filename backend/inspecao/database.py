from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Generator, Iterable, List, Optional

from .models import (
    CorrectiveAction,
    ExportLog,
    ExportStatus,
    MediaRow,
    ModuleDataRow,
    WebhookLogEntry,
    WebhookQueueItem,
    WebhookStatus,
    WorkOrder,
)

ISO_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


class Database:
    """SQLite backed persistence for inspection data, exports and the webhook queue."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def initialize(self) -> None:
        with self._connect() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS module_data (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    inspection_id TEXT NOT NULL,
                    module_type TEXT NOT NULL,
                    field_name TEXT NOT NULL,
                    field_value TEXT,
                    updated_at TEXT NOT NULL,
                    UNIQUE (inspection_id, module_type, field_name)
                );
                CREATE TABLE IF NOT EXISTS media_files (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    inspection_id TEXT NOT NULL,
                    module_type TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    photo_type_for_file TEXT,
                    file_type TEXT NOT NULL,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS webhook_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_type TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    status TEXT NOT NULL,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    priority INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    next_retry_at TEXT,
                    processed_at TEXT,
                    claimed_at TEXT,
                    error_message TEXT
                );
                CREATE INDEX IF NOT EXISTS idx_webhook_queue_status
                    ON webhook_queue(status, priority DESC, created_at ASC);
                CREATE TABLE IF NOT EXISTS webhook_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    queue_id INTEGER NOT NULL REFERENCES webhook_queue(id),
                    event_type TEXT NOT NULL,
                    target_url TEXT NOT NULL,
                    request_payload TEXT NOT NULL,
                    response_status INTEGER,
                    response_body TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS export_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    inspection_id TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    version INTEGER NOT NULL DEFAULT 1,
                    status TEXT NOT NULL,
                    retry_count INTEGER NOT NULL DEFAULT 0,
                    recipient_emails TEXT NOT NULL,
                    metadata TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    uploaded_at TEXT,
                    email_delivered_at TEXT,
                    error_message TEXT
                );
                CREATE TABLE IF NOT EXISTS work_orders (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    os_number TEXT NOT NULL UNIQUE,
                    inspection_id TEXT NOT NULL,
                    fault_id TEXT,
                    description TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    estimated_cost REAL,
                    assigned_to TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS corrective_actions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    fault_id TEXT NOT NULL UNIQUE,
                    inspection_id TEXT NOT NULL,
                    descricao TEXT NOT NULL,
                    criticidade TEXT NOT NULL,
                    custo_estimado REAL,
                    responsavel TEXT,
                    status TEXT NOT NULL,
                    fotos_before_count INTEGER NOT NULL DEFAULT 0,
                    fotos_after_count INTEGER NOT NULL DEFAULT 0,
                    data_deteccao TEXT NOT NULL
                );
            """
            )

    @contextmanager
    def _connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(self.path, timeout=30)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    @contextmanager
    def session(self) -> Generator[sqlite3.Connection, None, None]:
        with self._connect() as conn:
            yield conn

    # Module data operations
    def save_module_field(
        self,
        inspection_id: str,
        module_type: str,
        field_name: str,
        field_value: Optional[str],
    ) -> ModuleDataRow:
        with self.session() as conn:
            conn.execute(
                """
                INSERT INTO module_data (inspection_id, module_type, field_name, field_value, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT (inspection_id, module_type, field_name)
                DO UPDATE SET field_value = excluded.field_value, updated_at = excluded.updated_at
                """,
                (inspection_id, module_type, field_name, field_value, _format_datetime(_utcnow())),
            )
        return ModuleDataRow(
            inspection_id=inspection_id,
            module_type=module_type,
            field_name=field_name,
            field_value=field_value,
        )

    def list_module_data(self, inspection_id: str) -> List[ModuleDataRow]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM module_data WHERE inspection_id = ? ORDER BY module_type, id",
                (inspection_id,),
            ).fetchall()
        return [_row_to_module_data(row) for row in rows]

    def add_media(
        self,
        inspection_id: str,
        module_type: str,
        file_name: str,
        photo_type_for_file: Optional[str],
        file_type: str = "image/jpeg",
    ) -> MediaRow:
        with self.session() as conn:
            conn.execute(
                """
                INSERT INTO media_files (
                    inspection_id, module_type, file_name, photo_type_for_file, file_type, created_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (inspection_id, module_type, file_name, photo_type_for_file, file_type, _format_datetime(_utcnow())),
            )
        return MediaRow(
            inspection_id=inspection_id,
            module_type=module_type,
            file_name=file_name,
            photo_type_for_file=photo_type_for_file,
            file_type=file_type,
        )

    def delete_media(self, inspection_id: str, file_name: str) -> int:
        with self.session() as conn:
            cursor = conn.execute(
                "DELETE FROM media_files WHERE inspection_id = ? AND file_name = ?",
                (inspection_id, file_name),
            )
        return cursor.rowcount

    def list_media(self, inspection_id: str) -> List[MediaRow]:
        with self.session() as conn:
            rows = conn.execute(
                "SELECT * FROM media_files WHERE inspection_id = ? ORDER BY id",
                (inspection_id,),
            ).fetchall()
        return [_row_to_media(row) for row in rows]

    # Webhook queue operations
    def add_webhook_item(self, event_type: str, payload: Dict[str, Any], priority: int) -> WebhookQueueItem:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO webhook_queue (event_type, payload, status, attempts, priority, created_at)
                VALUES (?, ?, ?, 0, ?, ?)
                """,
                (event_type, json.dumps(payload), WebhookStatus.PENDING.value, priority, _format_datetime(now)),
            )
            item_id = cursor.lastrowid
        return WebhookQueueItem(
            id=item_id,
            event_type=event_type,
            payload=payload,
            status=WebhookStatus.PENDING,
            attempts=0,
            priority=priority,
            created_at=now,
        )

    def get_webhook_item(self, item_id: int) -> Optional[WebhookQueueItem]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM webhook_queue WHERE id = ?", (item_id,)).fetchone()
        return _row_to_webhook_item(row) if row else None

    def list_webhook_candidates(
        self, now: datetime, *, stale_before: Optional[datetime] = None
    ) -> List[WebhookQueueItem]:
        """Pending items, failed items due for retry and, when ``stale_before`` is
        given, processing items whose claim is older than it."""
        stale_cutoff = _format_datetime(stale_before) if stale_before else None
        with self.session() as conn:
            rows = conn.execute(
                """
                SELECT * FROM webhook_queue
                WHERE status = ?
                   OR (status = ? AND next_retry_at IS NOT NULL AND next_retry_at <= ?)
                   OR (status = ? AND claimed_at IS NOT NULL AND claimed_at <= ?)
                ORDER BY priority DESC, created_at ASC, id ASC
                """,
                (
                    WebhookStatus.PENDING.value,
                    WebhookStatus.FAILED.value,
                    _format_datetime(now),
                    WebhookStatus.PROCESSING.value,
                    stale_cutoff,
                ),
            ).fetchall()
        return [_row_to_webhook_item(row) for row in rows]

    def claim_webhook_item(
        self,
        item_id: int,
        expected_status: WebhookStatus,
        expected_claimed_at: Optional[datetime],
        claimed_at: datetime,
    ) -> bool:
        """Move an item to processing only if it is still in the state the caller saw."""
        with self.session() as conn:
            cursor = conn.execute(
                """
                UPDATE webhook_queue SET status = ?, claimed_at = ?
                WHERE id = ? AND status = ? AND claimed_at IS ?
                """,
                (
                    WebhookStatus.PROCESSING.value,
                    _format_datetime(claimed_at),
                    item_id,
                    expected_status.value,
                    _format_datetime(expected_claimed_at) if expected_claimed_at else None,
                ),
            )
        return cursor.rowcount == 1

    def mark_webhook_done(self, item_id: int, processed_at: datetime) -> None:
        with self.session() as conn:
            conn.execute(
                """
                UPDATE webhook_queue
                SET status = ?, processed_at = ?, next_retry_at = NULL, error_message = NULL
                WHERE id = ?
                """,
                (WebhookStatus.DONE.value, _format_datetime(processed_at), item_id),
            )

    def mark_webhook_failed(
        self,
        item_id: int,
        *,
        status: WebhookStatus,
        attempts: int,
        error_message: str,
        next_retry_at: Optional[datetime],
    ) -> None:
        with self.session() as conn:
            conn.execute(
                """
                UPDATE webhook_queue
                SET status = ?, attempts = ?, error_message = ?, next_retry_at = ?
                WHERE id = ?
                """,
                (
                    status.value,
                    attempts,
                    error_message,
                    _format_datetime(next_retry_at) if next_retry_at else None,
                    item_id,
                ),
            )

    def count_webhooks_by_status(self) -> Dict[str, int]:
        with self.session() as conn:
            rows = conn.execute("SELECT status, COUNT(*) AS total FROM webhook_queue GROUP BY status").fetchall()
        return {row["status"]: row["total"] for row in rows}

    def add_webhook_log(
        self,
        *,
        queue_id: int,
        event_type: str,
        target_url: str,
        request_payload: Dict[str, Any],
        response_status: Optional[int],
        response_body: Optional[str],
        error: Optional[str],
    ) -> WebhookLogEntry:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO webhook_logs (
                    queue_id, event_type, target_url, request_payload,
                    response_status, response_body, error, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    queue_id,
                    event_type,
                    target_url,
                    json.dumps(request_payload),
                    response_status,
                    response_body,
                    error,
                    _format_datetime(now),
                ),
            )
            log_id = cursor.lastrowid
        return WebhookLogEntry(
            id=log_id,
            queue_id=queue_id,
            event_type=event_type,
            target_url=target_url,
            request_payload=request_payload,
            response_status=response_status,
            response_body=response_body,
            error=error,
            created_at=now,
        )

    def list_webhook_logs(self, *, queue_id: Optional[int] = None, limit: int = 10) -> List[WebhookLogEntry]:
        query = "SELECT * FROM webhook_logs"
        params: list[Any] = []
        if queue_id is not None:
            query += " WHERE queue_id = ?"
            params.append(queue_id)
        query += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit)
        with self.session() as conn:
            rows = conn.execute(query, params).fetchall()
        return [_row_to_webhook_log(row) for row in rows]

    # Export log operations
    def add_export_log(
        self,
        *,
        inspection_id: str,
        file_name: str,
        recipient_emails: Iterable[str],
        metadata: Dict[str, Any],
        version: int = 1,
        status: ExportStatus = ExportStatus.PENDING,
    ) -> ExportLog:
        now = _utcnow()
        recipients = list(recipient_emails)
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO export_logs (
                    inspection_id, file_name, version, status, retry_count,
                    recipient_emails, metadata, created_at
                ) VALUES (?, ?, ?, ?, 0, ?, ?, ?)
                """,
                (
                    inspection_id,
                    file_name,
                    version,
                    status.value,
                    json.dumps(recipients),
                    json.dumps(metadata),
                    _format_datetime(now),
                ),
            )
            log_id = cursor.lastrowid
        export_log = self.get_export_log(log_id)
        assert export_log is not None
        return export_log

    def get_export_log(self, export_log_id: int) -> Optional[ExportLog]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM export_logs WHERE id = ?", (export_log_id,)).fetchone()
        return _row_to_export_log(row) if row else None

    def latest_export_version(self, inspection_id: str) -> int:
        with self.session() as conn:
            row = conn.execute(
                "SELECT MAX(version) AS version FROM export_logs WHERE inspection_id = ?",
                (inspection_id,),
            ).fetchone()
        return row["version"] or 0

    def save_export_log(self, export_log: ExportLog) -> None:
        with self.session() as conn:
            conn.execute(
                """
                UPDATE export_logs
                SET status = ?, retry_count = ?, uploaded_at = ?, email_delivered_at = ?, error_message = ?
                WHERE id = ?
                """,
                (
                    export_log.status.value,
                    export_log.retry_count,
                    _format_datetime(export_log.uploaded_at) if export_log.uploaded_at else None,
                    _format_datetime(export_log.email_delivered_at) if export_log.email_delivered_at else None,
                    export_log.error_message,
                    export_log.id,
                ),
            )

    # Work order operations
    def add_work_order(
        self,
        *,
        os_number: str,
        inspection_id: str,
        fault_id: Optional[str],
        description: str,
        priority: str,
        estimated_cost: Optional[float],
        assigned_to: Optional[str],
    ) -> WorkOrder:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO work_orders (
                    os_number, inspection_id, fault_id, description,
                    priority, estimated_cost, assigned_to, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    os_number,
                    inspection_id,
                    fault_id,
                    description,
                    priority,
                    estimated_cost,
                    assigned_to,
                    _format_datetime(now),
                ),
            )
            order_id = cursor.lastrowid
        return WorkOrder(
            id=order_id,
            os_number=os_number,
            inspection_id=inspection_id,
            fault_id=fault_id,
            description=description,
            priority=priority,
            estimated_cost=estimated_cost,
            assigned_to=assigned_to,
            created_at=now,
        )

    def get_work_order_by_number(self, os_number: str) -> Optional[WorkOrder]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM work_orders WHERE os_number = ?", (os_number,)).fetchone()
        return _row_to_work_order(row) if row else None

    # Corrective action operations
    def add_corrective_action(
        self,
        *,
        fault_id: str,
        inspection_id: str,
        descricao: str,
        criticidade: str,
        custo_estimado: Optional[float],
        responsavel: Optional[str],
        status: str,
        fotos_before_count: int,
        fotos_after_count: int,
    ) -> CorrectiveAction:
        now = _utcnow()
        with self.session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO corrective_actions (
                    fault_id, inspection_id, descricao, criticidade, custo_estimado,
                    responsavel, status, fotos_before_count, fotos_after_count, data_deteccao
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    fault_id,
                    inspection_id,
                    descricao,
                    criticidade,
                    custo_estimado,
                    responsavel,
                    status,
                    fotos_before_count,
                    fotos_after_count,
                    _format_datetime(now),
                ),
            )
            action_id = cursor.lastrowid
        return CorrectiveAction(
            id=action_id,
            fault_id=fault_id,
            inspection_id=inspection_id,
            descricao=descricao,
            criticidade=criticidade,
            custo_estimado=custo_estimado,
            responsavel=responsavel,
            status=status,
            fotos_before_count=fotos_before_count,
            fotos_after_count=fotos_after_count,
            data_deteccao=now,
        )

    def get_corrective_action(self, fault_id: str) -> Optional[CorrectiveAction]:
        with self.session() as conn:
            row = conn.execute("SELECT * FROM corrective_actions WHERE fault_id = ?", (fault_id,)).fetchone()
        return _row_to_corrective_action(row) if row else None

    def update_corrective_action_cost(self, fault_id: str, custo_estimado: Optional[float]) -> None:
        with self.session() as conn:
            conn.execute(
                "UPDATE corrective_actions SET custo_estimado = ? WHERE fault_id = ?",
                (custo_estimado, fault_id),
            )


def _row_to_module_data(row: sqlite3.Row) -> ModuleDataRow:
    return ModuleDataRow(
        inspection_id=row["inspection_id"],
        module_type=row["module_type"],
        field_name=row["field_name"],
        field_value=row["field_value"],
    )


def _row_to_media(row: sqlite3.Row) -> MediaRow:
    return MediaRow(
        inspection_id=row["inspection_id"],
        module_type=row["module_type"],
        file_name=row["file_name"],
        photo_type_for_file=row["photo_type_for_file"],
        file_type=row["file_type"],
    )


def _row_to_webhook_item(row: sqlite3.Row) -> WebhookQueueItem:
    return WebhookQueueItem(
        id=row["id"],
        event_type=row["event_type"],
        payload=json.loads(row["payload"]),
        status=WebhookStatus(row["status"]),
        attempts=row["attempts"],
        priority=row["priority"],
        created_at=_parse_datetime(row["created_at"]),
        next_retry_at=_parse_datetime(row["next_retry_at"]) if row["next_retry_at"] else None,
        processed_at=_parse_datetime(row["processed_at"]) if row["processed_at"] else None,
        claimed_at=_parse_datetime(row["claimed_at"]) if row["claimed_at"] else None,
        error_message=row["error_message"],
    )


def _row_to_webhook_log(row: sqlite3.Row) -> WebhookLogEntry:
    return WebhookLogEntry(
        id=row["id"],
        queue_id=row["queue_id"],
        event_type=row["event_type"],
        target_url=row["target_url"],
        request_payload=json.loads(row["request_payload"]),
        response_status=row["response_status"],
        response_body=row["response_body"],
        error=row["error"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_export_log(row: sqlite3.Row) -> ExportLog:
    return ExportLog(
        id=row["id"],
        inspection_id=row["inspection_id"],
        file_name=row["file_name"],
        version=row["version"],
        status=ExportStatus(row["status"]),
        retry_count=row["retry_count"],
        recipient_emails=json.loads(row["recipient_emails"]),
        metadata=json.loads(row["metadata"]),
        created_at=_parse_datetime(row["created_at"]),
        uploaded_at=_parse_datetime(row["uploaded_at"]) if row["uploaded_at"] else None,
        email_delivered_at=_parse_datetime(row["email_delivered_at"]) if row["email_delivered_at"] else None,
        error_message=row["error_message"],
    )


def _row_to_work_order(row: sqlite3.Row) -> WorkOrder:
    return WorkOrder(
        id=row["id"],
        os_number=row["os_number"],
        inspection_id=row["inspection_id"],
        fault_id=row["fault_id"],
        description=row["description"],
        priority=row["priority"],
        estimated_cost=row["estimated_cost"],
        assigned_to=row["assigned_to"],
        created_at=_parse_datetime(row["created_at"]),
    )


def _row_to_corrective_action(row: sqlite3.Row) -> CorrectiveAction:
    return CorrectiveAction(
        id=row["id"],
        fault_id=row["fault_id"],
        inspection_id=row["inspection_id"],
        descricao=row["descricao"],
        criticidade=row["criticidade"],
        custo_estimado=row["custo_estimado"],
        responsavel=row["responsavel"],
        status=row["status"],
        fotos_before_count=row["fotos_before_count"],
        fotos_after_count=row["fotos_after_count"],
        data_deteccao=_parse_datetime(row["data_deteccao"]),
    )


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _format_datetime(value: datetime) -> str:
    return value.strftime(ISO_FORMAT)


def _parse_datetime(value: str) -> datetime:
    return datetime.strptime(value, ISO_FORMAT)
