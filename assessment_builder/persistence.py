"""
Edit session snapshots.

Append-only JSON files, one per successful save, so an interrupted
session can be resumed and a save history inspected.
"""

import json
import logging
from pathlib import Path
from typing import Optional

from assessment_builder.commands import SessionState

logger = logging.getLogger(__name__)


class SessionPersistence:
    """
    Writes numbered session snapshots per assessment.

    Layout:
        outputs/sessions/ASSESS-<assessment_id>/
            ASSESS-<assessment_id>_SNAP-001.json
            ASSESS-<assessment_id>_SNAP-002.json
            ...

    Files are never overwritten; the next number is one past the highest
    existing snapshot.
    """

    def __init__(self, base_dir: str = "outputs/sessions"):
        self.base_dir = Path(base_dir)
        self.base_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"SessionPersistence initialized: {self.base_dir}")

    def _dir(self, assessment_id: str) -> Path:
        return self.base_dir / f"ASSESS-{assessment_id}"

    def _snapshot_files(self, assessment_id: str):
        folder = self._dir(assessment_id)
        if not folder.exists():
            return []
        return sorted(folder.glob(f"ASSESS-{assessment_id}_SNAP-*.json"), key=lambda p: p.name)

    def save_snapshot(self, state: SessionState) -> str:
        """
        Append a snapshot of state.

        Args:
            state: Session state with an assessment_id

        Returns:
            str: Absolute path of the written file

        Raises:
            ValueError: If the state has no assessment
            FileExistsError: If the target file already exists
        """
        assessment_id = state.assessment_id
        if not assessment_id:
            raise ValueError("Cannot snapshot a session without an assessment")

        folder = self._dir(assessment_id)
        folder.mkdir(exist_ok=True)
        number = self.snapshot_count(assessment_id) + 1
        filepath = folder / f"ASSESS-{assessment_id}_SNAP-{number:03d}.json"

        if filepath.exists():
            raise FileExistsError(f"Snapshot file already exists: {filepath}")

        with open(filepath, 'w') as f:
            json.dump(state.to_json(), f, indent=2, ensure_ascii=False)

        logger.info(f"Saved snapshot {number} for assessment {assessment_id}: {filepath.name}")
        return str(filepath.absolute())

    def load_latest(self, assessment_id: str) -> Optional[SessionState]:
        """
        Latest snapshot for an assessment, or None if there is none.
        """
        files = self._snapshot_files(assessment_id)
        if not files:
            logger.warning(f"No snapshots found for assessment {assessment_id}")
            return None

        latest = files[-1]
        logger.info(f"Loading snapshot for {assessment_id}: {latest.name}")
        with open(latest, 'r') as f:
            data = json.load(f)
        return SessionState.from_json(data)

    def snapshot_count(self, assessment_id: str) -> int:
        return len(self._snapshot_files(assessment_id))
