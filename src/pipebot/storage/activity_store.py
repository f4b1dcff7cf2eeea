from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
from pathlib import Path
import sqlite3
from typing import List, Optional

from sanic.log import logger

from pipebot.activity.model import ActivityRecord
from pipebot.metric import activity_pruned_total
from pipebot.reconcile.thread import get_pull_request_number


SCHEMA = """
CREATE TABLE IF NOT EXISTS pipeline_activities (
    name TEXT PRIMARY KEY,
    owner TEXT NOT NULL,
    repo TEXT NOT NULL,
    branch TEXT NOT NULL,
    build TEXT NOT NULL,
    pr_number INTEGER NOT NULL,
    status TEXT NOT NULL,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    payload_json TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_pipeline_activities_owner_repo_pr
    ON pipeline_activities (owner, repo, pr_number);
CREATE INDEX IF NOT EXISTS idx_pipeline_activities_last_seen_at
    ON pipeline_activities (last_seen_at);
"""


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


@dataclass(frozen=True)
class UpsertResult:
    inserted: bool
    pruned_rows: int = 0


class ActivityStore:
    """sqlite record of the pipeline activities the bot has been sent.

    Serves as the activity provider for pull request threads and keeps the
    Slack message annotations written back after a successful post.
    """

    def __init__(self, db_path: str, retention_days: int = 30, prune_every: int = 500):
        self.db_path = Path(db_path)
        self.retention_days = retention_days
        self.prune_every = max(1, prune_every)
        self._upserted_since_prune = 0

    def initialize(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self._connect() as conn:
            conn.executescript(SCHEMA)

    def upsert_activity(self, activity: ActivityRecord) -> UpsertResult:
        if not activity.name:
            raise ValueError("Missing activity name")

        now = utcnow_iso()
        pr_number = get_pull_request_number(activity)

        with self._connect() as conn:
            # annotations are owned by the bot, keep the ones written earlier
            row = conn.execute(
                "SELECT payload_json FROM pipeline_activities WHERE name = ?",
                (activity.name,),
            ).fetchone()
            annotations = dict(activity.annotations)
            if row is not None:
                annotations = {
                    **json.loads(row[0]).get("annotations", {}),
                    **annotations,
                }
            payload = activity.model_dump(mode="json")
            payload["annotations"] = annotations

            conn.execute(
                """
                INSERT INTO pipeline_activities (
                    name,
                    owner,
                    repo,
                    branch,
                    build,
                    pr_number,
                    status,
                    first_seen_at,
                    last_seen_at,
                    payload_json
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(name) DO UPDATE SET
                    owner = excluded.owner,
                    repo = excluded.repo,
                    branch = excluded.branch,
                    build = excluded.build,
                    pr_number = excluded.pr_number,
                    status = excluded.status,
                    last_seen_at = excluded.last_seen_at,
                    payload_json = excluded.payload_json
                """,
                (
                    activity.name,
                    activity.owner,
                    activity.repo,
                    activity.branch,
                    activity.build,
                    pr_number,
                    activity.status.value,
                    now,
                    now,
                    self.payload_to_json(payload),
                ),
            )

        logger.debug(
            "Stored activity=%s pr=%d status=%s",
            activity.name,
            pr_number,
            activity.status.value,
        )

        pruned_rows = 0
        if self._should_prune():
            pruned_rows = self.prune_old_activities()
        return UpsertResult(inserted=row is None, pruned_rows=pruned_rows)

    def get_activity(self, name: str) -> Optional[ActivityRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM pipeline_activities WHERE name = ?",
                (name,),
            ).fetchone()
        if row is None:
            return None
        return ActivityRecord.model_validate_json(row[0])

    def activities_for_pull_request(
        self, owner: str, repo: str, pr_number: int
    ) -> List[ActivityRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT payload_json FROM pipeline_activities
                WHERE owner = ? AND repo = ? AND pr_number = ?
                ORDER BY first_seen_at
                """,
                (owner, repo, pr_number),
            ).fetchall()
        return [ActivityRecord.model_validate_json(row[0]) for row in rows]

    async def list_activities(
        self, owner: str, repo: str, pr_number: int
    ) -> List[ActivityRecord]:
        return self.activities_for_pull_request(owner, repo, pr_number)

    def annotate_activity(self, name: str, key: str, value: str) -> None:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT payload_json FROM pipeline_activities WHERE name = ?",
                (name,),
            ).fetchone()
            if row is None:
                logger.debug("Annotation skip activity=%s reason=unknown", name)
                return
            payload = json.loads(row[0])
            annotations = payload.setdefault("annotations", {})
            if annotations.get(key) == value:
                return
            annotations[key] = value
            conn.execute(
                "UPDATE pipeline_activities SET payload_json = ? WHERE name = ?",
                (self.payload_to_json(payload), name),
            )
        logger.debug("Annotated activity=%s %s=%s", name, key, value)

    def prune_old_activities(self) -> int:
        cutoff = (
            datetime.now(timezone.utc) - timedelta(days=self.retention_days)
        ).strftime("%Y-%m-%dT%H:%M:%S.%fZ")

        with self._connect() as conn:
            cursor = conn.execute(
                "DELETE FROM pipeline_activities WHERE last_seen_at < ?",
                (cutoff,),
            )
            count = cursor.rowcount

        if count > 0:
            activity_pruned_total.inc(count)
        return count

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), timeout=10.0)
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA synchronous=NORMAL")
        conn.execute("PRAGMA busy_timeout=10000")
        return conn

    def _should_prune(self) -> bool:
        self._upserted_since_prune += 1
        if self._upserted_since_prune < self.prune_every:
            return False
        self._upserted_since_prune = 0
        return True

    @staticmethod
    def payload_to_json(payload) -> str:
        return json.dumps(payload, separators=(",", ":"), sort_keys=True)
