import json
import os
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


class Storage:
    def __init__(self, db_path: str) -> None:
        self.db_path = db_path
        directory = os.path.dirname(db_path)
        if directory and db_path != ":memory:":
            os.makedirs(directory, exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                run_id TEXT NOT NULL,
                environment TEXT,
                application TEXT NOT NULL,
                actor TEXT NOT NULL,
                action TEXT NOT NULL,
                detail TEXT NOT NULL,
                requires_review INTEGER NOT NULL DEFAULT 0,
                timestamp TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS decisions (
                run_id TEXT PRIMARY KEY,
                application TEXT NOT NULL,
                environment TEXT,
                should_deploy INTEGER NOT NULL,
                stage TEXT NOT NULL,
                final_reason TEXT NOT NULL,
                payload TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS slot_state (
                environment TEXT NOT NULL,
                application TEXT NOT NULL,
                active_slot TEXT,
                previous_slot TEXT,
                image_tag TEXT,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (environment, application)
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS rollouts (
                id TEXT PRIMARY KEY,
                run_id TEXT,
                environment TEXT NOT NULL,
                application TEXT NOT NULL,
                strategy TEXT NOT NULL,
                cluster TEXT,
                resource_group TEXT,
                region TEXT,
                target_slot TEXT,
                previous_slot TEXT,
                image_tag TEXT,
                previous_image_tag TEXT,
                schedule TEXT NOT NULL,
                current_index INTEGER NOT NULL DEFAULT -1,
                status TEXT NOT NULL,
                rollback_requested INTEGER NOT NULL DEFAULT 0,
                reason TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS rollout_leases (
                environment TEXT NOT NULL,
                application TEXT NOT NULL,
                holder TEXT NOT NULL,
                expires_at REAL NOT NULL,
                PRIMARY KEY (environment, application)
            )
            """
        )
        conn.commit()
        conn.close()

    def insert_audit_entries(
        self,
        run_id: str,
        environment: Optional[str],
        application: str,
        entries: Iterable,
    ) -> int:
        conn = self._connect()
        cur = conn.cursor()
        count = 0
        for entry in entries:
            cur.execute(
                """
                INSERT INTO audit_entries (
                    run_id, environment, application, actor, action, detail, requires_review, timestamp
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    environment,
                    application,
                    entry.actor,
                    entry.action,
                    entry.detail,
                    1 if entry.requires_review else 0,
                    entry.timestamp,
                ),
            )
            count += 1
        conn.commit()
        conn.close()
        return count

    def list_audit_entries(
        self,
        application: Optional[str] = None,
        environment: Optional[str] = None,
        run_id: Optional[str] = None,
        requires_review: Optional[bool] = None,
        limit: int = 200,
    ) -> List[dict]:
        conn = self._connect()
        cur = conn.cursor()
        query = "SELECT * FROM audit_entries"
        params: list = []
        conditions = []
        if application:
            conditions.append("application = ?")
            params.append(application)
        if environment:
            conditions.append("environment = ?")
            params.append(environment)
        if run_id:
            conditions.append("run_id = ?")
            params.append(run_id)
        if requires_review is not None:
            conditions.append("requires_review = ?")
            params.append(1 if requires_review else 0)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id ASC LIMIT ?"
        params.append(max(int(limit), 1))
        cur.execute(query, tuple(params))
        rows = cur.fetchall()
        conn.close()
        return [
            {
                "runId": row["run_id"],
                "environment": row["environment"],
                "application": row["application"],
                "actor": row["actor"],
                "action": row["action"],
                "detail": row["detail"],
                "requiresReview": bool(row["requires_review"]),
                "timestamp": row["timestamp"],
            }
            for row in rows
        ]

    def insert_decision(self, decision) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT OR REPLACE INTO decisions (
                run_id, application, environment, should_deploy, stage, final_reason, payload, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                decision.run_id,
                decision.application,
                decision.target_environment,
                1 if decision.should_deploy else 0,
                decision.stage.value,
                decision.final_reason,
                json.dumps(decision.as_dict()),
                utc_now(),
            ),
        )
        conn.commit()
        conn.close()

    def get_decision(self, run_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT payload FROM decisions WHERE run_id = ?", (run_id,))
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return json.loads(row["payload"])

    def get_slot_state(self, environment: str, application: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT * FROM slot_state WHERE environment = ? AND application = ?",
            (environment, application),
        )
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return {
            "environment": row["environment"],
            "application": row["application"],
            "activeSlot": row["active_slot"],
            "previousSlot": row["previous_slot"],
            "imageTag": row["image_tag"],
            "updatedAt": row["updated_at"],
        }

    def set_slot_state(
        self,
        environment: str,
        application: str,
        active_slot: Optional[str],
        previous_slot: Optional[str],
        image_tag: Optional[str] = None,
    ) -> dict:
        updated_at = utc_now()
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO slot_state (environment, application, active_slot, previous_slot, image_tag, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(environment, application) DO UPDATE SET
                active_slot = excluded.active_slot,
                previous_slot = excluded.previous_slot,
                image_tag = excluded.image_tag,
                updated_at = excluded.updated_at
            """,
            (environment, application, active_slot, previous_slot, image_tag, updated_at),
        )
        conn.commit()
        conn.close()
        return {
            "environment": environment,
            "application": application,
            "activeSlot": active_slot,
            "previousSlot": previous_slot,
            "imageTag": image_tag,
            "updatedAt": updated_at,
        }

    def insert_rollout(self, record: dict) -> dict:
        rollout_id = record.get("id") or str(uuid.uuid4())
        now = utc_now()
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            INSERT INTO rollouts (
                id, run_id, environment, application, strategy, cluster, resource_group, region, target_slot,
                previous_slot, image_tag, previous_image_tag, schedule, current_index, status, rollback_requested,
                reason, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?)
            """,
            (
                rollout_id,
                record.get("runId"),
                record["environment"],
                record["application"],
                record["strategy"],
                record.get("cluster"),
                record.get("resourceGroup"),
                record.get("region"),
                record.get("targetSlot"),
                record.get("previousSlot"),
                record.get("imageTag"),
                record.get("previousImageTag"),
                json.dumps(list(record.get("schedule") or [])),
                int(record.get("currentIndex", -1)),
                record["status"],
                record.get("reason"),
                now,
                now,
            ),
        )
        conn.commit()
        conn.close()
        return self.get_rollout(rollout_id)

    def update_rollout(
        self,
        rollout_id: str,
        status: Optional[str] = None,
        current_index: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> Optional[dict]:
        assignments = ["updated_at = ?"]
        params: list = [utc_now()]
        if status is not None:
            assignments.append("status = ?")
            params.append(status)
        if current_index is not None:
            assignments.append("current_index = ?")
            params.append(int(current_index))
        if reason is not None:
            assignments.append("reason = ?")
            params.append(reason)
        params.append(rollout_id)
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(f"UPDATE rollouts SET {', '.join(assignments)} WHERE id = ?", tuple(params))
        conn.commit()
        conn.close()
        return self.get_rollout(rollout_id)

    def request_rollback(self, rollout_id: str) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "UPDATE rollouts SET rollback_requested = 1, updated_at = ? WHERE id = ?",
            (utc_now(), rollout_id),
        )
        conn.commit()
        conn.close()

    def rollback_requested(self, rollout_id: str) -> bool:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT rollback_requested FROM rollouts WHERE id = ?", (rollout_id,))
        row = cur.fetchone()
        conn.close()
        return bool(row and row["rollback_requested"])

    def get_rollout(self, rollout_id: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute("SELECT * FROM rollouts WHERE id = ?", (rollout_id,))
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_rollout(row)

    def latest_rollout(self, environment: str, application: str) -> Optional[dict]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            """
            SELECT * FROM rollouts
            WHERE environment = ? AND application = ?
            ORDER BY rowid DESC
            LIMIT 1
            """,
            (environment, application),
        )
        row = cur.fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_rollout(row)

    def _row_to_rollout(self, row: sqlite3.Row) -> dict:
        return {
            "id": row["id"],
            "runId": row["run_id"],
            "environment": row["environment"],
            "application": row["application"],
            "strategy": row["strategy"],
            "cluster": row["cluster"],
            "resourceGroup": row["resource_group"],
            "region": row["region"],
            "targetSlot": row["target_slot"],
            "previousSlot": row["previous_slot"],
            "imageTag": row["image_tag"],
            "previousImageTag": row["previous_image_tag"],
            "schedule": json.loads(row["schedule"] or "[]"),
            "currentIndex": row["current_index"],
            "status": row["status"],
            "rollbackRequested": bool(row["rollback_requested"]),
            "reason": row["reason"],
            "createdAt": row["created_at"],
            "updatedAt": row["updated_at"],
        }

    def acquire_lease(
        self,
        environment: str,
        application: str,
        holder: str,
        ttl_seconds: int,
        now: Optional[float] = None,
    ) -> bool:
        now = time.time() if now is None else now
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM rollout_leases WHERE environment = ? AND application = ? AND expires_at <= ?",
            (environment, application, now),
        )
        cur.execute(
            """
            INSERT OR IGNORE INTO rollout_leases (environment, application, holder, expires_at)
            VALUES (?, ?, ?, ?)
            """,
            (environment, application, holder, now + ttl_seconds),
        )
        acquired = cur.rowcount == 1
        conn.commit()
        conn.close()
        return acquired

    def release_lease(self, environment: str, application: str, holder: str) -> None:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "DELETE FROM rollout_leases WHERE environment = ? AND application = ? AND holder = ?",
            (environment, application, holder),
        )
        conn.commit()
        conn.close()

    def lease_holder(self, environment: str, application: str) -> Optional[str]:
        conn = self._connect()
        cur = conn.cursor()
        cur.execute(
            "SELECT holder, expires_at FROM rollout_leases WHERE environment = ? AND application = ?",
            (environment, application),
        )
        row = cur.fetchone()
        conn.close()
        if not row or row["expires_at"] <= time.time():
            return None
        return row["holder"]
