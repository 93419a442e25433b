"""Run checkpoint persistence implementations."""
from __future__ import annotations

import json
import logging
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional, Tuple

from .workflow_engine.steps import ExecutionStage, ExecutionState

logger = logging.getLogger(__name__)

_TERMINAL_STAGES = (ExecutionStage.COMPLETE.value, ExecutionStage.FAILED.value)


class WorkflowStateManager(ABC):
    """Abstract base class for run checkpoint persistence."""

    @abstractmethod
    def save_state(
        self, run_id: str, state: ExecutionState, context: Optional[Dict[str, Any]] = None
    ) -> bool:
        """Save a run checkpoint.

        Args:
            run_id: Run identifier
            state: Snapshot to save
            context: What is needed to restart the run (workflow id, inputs);
                kept from the previous save when omitted

        Returns:
            True if successful
        """
        pass

    @abstractmethod
    def load_state(self, run_id: str) -> Optional[ExecutionState]:
        """Load a run checkpoint.

        Args:
            run_id: Run identifier

        Returns:
            Saved snapshot or None
        """
        pass

    @abstractmethod
    def load_context(self, run_id: str) -> Dict[str, Any]:
        """Load the restart context saved alongside a checkpoint."""
        pass

    @abstractmethod
    def delete_state(self, run_id: str) -> bool:
        """Delete a run checkpoint.

        Args:
            run_id: Run identifier

        Returns:
            True if something was deleted
        """
        pass

    @abstractmethod
    def list_states(self) -> Dict[str, ExecutionStage]:
        """List all saved runs.

        Returns:
            Dictionary of run ID to stage
        """
        pass

    @abstractmethod
    def cleanup_old_states(self, days: int = 30) -> int:
        """Clean up old finished runs.

        Args:
            days: Age threshold in days

        Returns:
            Number of checkpoints cleaned up
        """
        pass


class InMemoryStateManager(WorkflowStateManager):
    """In-memory state manager for development/testing."""

    def __init__(self):
        """Initialize in-memory state manager."""
        self._states: Dict[str, Tuple[ExecutionState, Dict[str, Any]]] = {}
        self._lock = Lock()

    def save_state(
        self, run_id: str, state: ExecutionState, context: Optional[Dict[str, Any]] = None
    ) -> bool:
        with self._lock:
            if context is None and run_id in self._states:
                context = self._states[run_id][1]
            self._states[run_id] = (state, dict(context or {}))
            logger.debug(f"Saved state for run {run_id} in memory")
            return True

    def load_state(self, run_id: str) -> Optional[ExecutionState]:
        with self._lock:
            entry = self._states.get(run_id)
            return entry[0] if entry else None

    def load_context(self, run_id: str) -> Dict[str, Any]:
        with self._lock:
            entry = self._states.get(run_id)
            return dict(entry[1]) if entry else {}

    def delete_state(self, run_id: str) -> bool:
        with self._lock:
            if run_id in self._states:
                del self._states[run_id]
                logger.debug(f"Deleted state for run {run_id}")
                return True
            return False

    def list_states(self) -> Dict[str, ExecutionStage]:
        with self._lock:
            return {run_id: entry[0].stage for run_id, entry in self._states.items()}

    def cleanup_old_states(self, days: int = 30) -> int:
        """Drop finished runs whose last update is older than ``days``."""
        cutoff = datetime.now() - timedelta(days=days)
        with self._lock:
            stale = [
                run_id
                for run_id, (state, _) in self._states.items()
                if state.is_terminal() and state.updated_at and state.updated_at < cutoff
            ]
            for run_id in stale:
                del self._states[run_id]
        if stale:
            logger.info(f"Cleaned up {len(stale)} old run states")
        return len(stale)


class PersistentStateManager(WorkflowStateManager):
    """Persistent state manager using SQLite."""

    def __init__(self, db_path: Optional[Path] = None):
        """Initialize persistent state manager.

        Args:
            db_path: Path to SQLite database
        """
        self.db_path = Path(db_path) if db_path else Path.home() / ".genflow" / "workflows.db"
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._init_database()

    def _init_database(self):
        """Initialize database schema."""
        with sqlite3.connect(str(self.db_path)) as conn:
            cursor = conn.cursor()

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS runs (
                    run_id TEXT PRIMARY KEY,
                    workflow_id TEXT,
                    stage TEXT NOT NULL,
                    current_node TEXT,
                    total_cost REAL DEFAULT 0,
                    start_time TIMESTAMP,
                    created_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                )
            """
            )

            cursor.execute(
                """
                CREATE TABLE IF NOT EXISTS run_states (
                    run_id TEXT PRIMARY KEY,
                    state_data BLOB NOT NULL,
                    context_data BLOB,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (run_id) REFERENCES runs(run_id)
                )
            """
            )

            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_runs_stage
                ON runs(stage)
            """
            )
            cursor.execute(
                """
                CREATE INDEX IF NOT EXISTS idx_runs_updated
                ON runs(updated_at)
            """
            )

            conn.commit()
            logger.debug(f"Initialized run database at {self.db_path}")

    def save_state(
        self, run_id: str, state: ExecutionState, context: Optional[Dict[str, Any]] = None
    ) -> bool:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()

                    state_data = self._serialize(state.to_dict())
                    if context is None:
                        cursor.execute(
                            "SELECT context_data FROM run_states WHERE run_id = ?", (run_id,)
                        )
                        row = cursor.fetchone()
                        context_data = row[0] if row else self._serialize({})
                    else:
                        context_data = self._serialize(context)
                    workflow_id = json.loads(context_data.decode("utf-8")).get("workflow_id")

                    cursor.execute(
                        """
                        INSERT OR REPLACE INTO runs
                        (run_id, workflow_id, stage, current_node, total_cost, start_time, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                        (
                            run_id,
                            workflow_id,
                            state.stage.value,
                            state.current_node_id,
                            state.total_cost,
                            state.started_at.isoformat() if state.started_at else None,
                        ),
                    )

                    cursor.execute(
                        """
                        INSERT OR REPLACE INTO run_states
                        (run_id, state_data, context_data, updated_at)
                        VALUES (?, ?, ?, CURRENT_TIMESTAMP)
                    """,
                        (run_id, state_data, context_data),
                    )

                    conn.commit()
                    logger.debug(f"Persisted state for run {run_id}")
                    return True

        except sqlite3.Error as e:
            logger.error(f"Failed to save run state: {e}")
            return False

    def load_state(self, run_id: str) -> Optional[ExecutionState]:
        row = self._fetch_state_row(run_id)
        if row is None:
            return None
        return ExecutionState.from_dict(json.loads(row[0].decode("utf-8")))

    def load_context(self, run_id: str) -> Dict[str, Any]:
        row = self._fetch_state_row(run_id)
        if row is None or row[1] is None:
            return {}
        return json.loads(row[1].decode("utf-8"))

    def _fetch_state_row(self, run_id: str) -> Optional[tuple]:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()
                    cursor.execute(
                        """
                        SELECT state_data, context_data FROM run_states
                        WHERE run_id = ?
                    """,
                        (run_id,),
                    )
                    return cursor.fetchone()

        except sqlite3.Error as e:
            logger.error(f"Failed to load run state: {e}")
            return None

    def delete_state(self, run_id: str) -> bool:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()

                    cursor.execute("DELETE FROM run_states WHERE run_id = ?", (run_id,))
                    cursor.execute("DELETE FROM runs WHERE run_id = ?", (run_id,))

                    conn.commit()

                    if cursor.rowcount > 0:
                        logger.debug(f"Deleted state for run {run_id}")
                        return True

                    return False

        except sqlite3.Error as e:
            logger.error(f"Failed to delete run state: {e}")
            return False

    def list_states(self) -> Dict[str, ExecutionStage]:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()
                    cursor.execute("SELECT run_id, stage FROM runs ORDER BY updated_at DESC")
                    return {row[0]: ExecutionStage(row[1]) for row in cursor.fetchall()}

        except sqlite3.Error as e:
            logger.error(f"Failed to list run states: {e}")
            return {}

    def cleanup_old_states(self, days: int = 30) -> int:
        try:
            with self._lock:
                with sqlite3.connect(str(self.db_path)) as conn:
                    cursor = conn.cursor()

                    cursor.execute(
                        """
                        DELETE FROM run_states
                        WHERE run_id IN (
                            SELECT run_id FROM runs
                            WHERE stage IN (?, ?)
                            AND updated_at < datetime('now', '-' || ? || ' days')
                        )
                    """,
                        (*_TERMINAL_STAGES, days),
                    )

                    states_deleted = cursor.rowcount

                    cursor.execute(
                        """
                        DELETE FROM runs
                        WHERE stage IN (?, ?)
                        AND updated_at < datetime('now', '-' || ? || ' days')
                    """,
                        (*_TERMINAL_STAGES, days),
                    )

                    conn.commit()

                    logger.info(f"Cleaned up {states_deleted} old run states")
                    return states_deleted

        except sqlite3.Error as e:
            logger.error(f"Failed to cleanup old states: {e}")
            return 0

    @staticmethod
    def _serialize(data: Dict[str, Any]) -> bytes:
        return json.dumps(data, default=str).encode("utf-8")
