"""JSON artifacts for plans and drift reports, written next to the audit database."""

from __future__ import annotations

import json
from pathlib import Path
from uuid import uuid4

from stackgate.audit.models import ArtifactRecord
from stackgate.utils.hashing import sha256_bytes
from stackgate.utils.serialization import json_default
from stackgate.utils.time import utc_now_iso


class ArtifactStore:
    def __init__(self, base_path: str) -> None:
        self._base = Path(base_path)
        self._base.mkdir(parents=True, exist_ok=True)

    def write_json(
        self,
        kind: str,
        payload: dict,
        *,
        run_id: str | None = None,
        unit: str | None = None,
    ) -> ArtifactRecord:
        data = json.dumps(
            payload, ensure_ascii=True, indent=2, sort_keys=True, default=json_default
        ).encode("utf-8")
        artifact_id = uuid4().hex
        prefix = f"{run_id}-" if run_id else ""
        path = self._base / f"{prefix}{kind}-{artifact_id}.json"
        path.write_bytes(data)
        return ArtifactRecord(
            artifact_id=artifact_id,
            kind=kind,
            location=str(path),
            checksum=sha256_bytes(data),
            created_at=utc_now_iso(),
            run_id=run_id,
            unit=unit,
        )

    def read_json(self, location: str) -> dict:
        path = Path(location).resolve()
        if not path.is_relative_to(self._base.resolve()):
            raise ValueError(f"Path is outside base directory: {location}")
        with path.open("r", encoding="utf-8") as handle:
            return json.load(handle)
