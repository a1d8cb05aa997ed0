"""
Stage checkpoints.

Each completed stage writes one immutable JSON artifact
(01_normalize.json, 02_dedupe.json, ...) plus manifest.json recording the
completed stages, the input fingerprint and the configuration. Files are
written to a temp name and moved into place, so a crash never leaves a
half-written artifact behind.
"""

import os
import json
import hashlib
import logging
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..errors import CheckpointError

logger = logging.getLogger(__name__)

STAGES = ("normalize", "dedupe", "seniority", "embed", "cluster", "tag")
MANIFEST = "manifest.json"


def input_fingerprint(raw_records: List[Dict[str, Any]]) -> str:
    """Stable hash of the raw input batch."""
    payload = json.dumps(raw_records, sort_keys=True, ensure_ascii=False, default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def atomic_write_json(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


class CheckpointManager:
    """Reads and writes per-stage artifacts for one run directory."""

    def __init__(self, run_dir):
        self.run_dir = Path(run_dir)
        self.run_dir.mkdir(parents=True, exist_ok=True)
        logger.info(f"Checkpoint manager initialized: {self.run_dir}")

    @staticmethod
    def artifact_name(stage: str) -> str:
        if stage not in STAGES:
            raise CheckpointError(f"Unknown stage: {stage}")
        return f"{STAGES.index(stage) + 1:02d}_{stage}.json"

    @property
    def manifest_path(self) -> Path:
        return self.run_dir / MANIFEST

    def manifest(self) -> Optional[Dict[str, Any]]:
        if not self.manifest_path.exists():
            return None
        try:
            with open(self.manifest_path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Corrupt checkpoint manifest {self.manifest_path}: {e}")

    def start(self, fingerprint: str, config: Dict[str, Any]) -> None:
        """Begin a fresh run: drop old artifacts and write an empty manifest."""
        self.clear()
        atomic_write_json(self.manifest_path, {
            "input_fingerprint": fingerprint,
            "config": config,
            "completed": [],
            "updated_at": datetime.now(timezone.utc).isoformat(),
        })

    def matches(self, fingerprint: str) -> bool:
        manifest = self.manifest()
        return bool(manifest) and manifest.get("input_fingerprint") == fingerprint

    def save(self, stage: str, payload: Dict[str, Any]) -> Path:
        """Write a stage artifact, then mark the stage complete."""
        manifest = self.manifest()
        if manifest is None:
            raise CheckpointError("Checkpoint run was not started (no manifest)")

        path = self.run_dir / self.artifact_name(stage)
        atomic_write_json(path, {"stage": stage, "payload": payload})

        completed = [s for s in manifest.get("completed", []) if s != stage]
        completed.append(stage)
        manifest["completed"] = sorted(completed, key=STAGES.index)
        manifest["updated_at"] = datetime.now(timezone.utc).isoformat()
        atomic_write_json(self.manifest_path, manifest)

        logger.debug(f"Saved checkpoint {path.name}")
        return path

    def load(self, stage: str) -> Dict[str, Any]:
        path = self.run_dir / self.artifact_name(stage)
        try:
            with open(path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise CheckpointError(f"Cannot read checkpoint {path}: {e}")
        if data.get("stage") != stage or "payload" not in data:
            raise CheckpointError(f"Checkpoint {path} does not belong to stage {stage}")
        return data["payload"]

    def completed(self) -> List[str]:
        manifest = self.manifest()
        return list(manifest.get("completed", [])) if manifest else []

    def latest(self) -> Optional[Tuple[str, Dict[str, Any]]]:
        """Last completed stage and its payload, or None."""
        completed = self.completed()
        if not completed:
            return None
        stage = max(completed, key=STAGES.index)
        return stage, self.load(stage)

    def clear(self) -> None:
        for stage in STAGES:
            path = self.run_dir / self.artifact_name(stage)
            if path.exists():
                path.unlink()
        if self.manifest_path.exists():
            self.manifest_path.unlink()
