from __future__ import annotations

from pathlib import Path
from typing import Any, Callable
import json
import logging

from kubernetes import client

logger = logging.getLogger(__name__)

Serializer = Callable[[Any], Any]


class ManifestStore:
    """Audit copies of every manifest the migration creates or replaces, one directory per cluster."""

    def __init__(self, directory: Path, *, serializer: Serializer | None = None) -> None:
        self.directory = directory
        self._serialize = serializer or client.ApiClient().sanitize_for_serialization

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def volume_manifest_path(self, pv_name: str) -> Path:
        # Keyed by the old volume name so operators can find it from the volume being replaced.
        return self.directory / f"{pv_name}.json"

    def original_claim_path(self, namespace: str, claim_name: str) -> Path:
        return self.directory / f"original-pvc.{claim_name}.{namespace}.json"

    def new_claim_path(self, namespace: str, claim_name: str) -> Path:
        return self.directory / f"new-pvc.{claim_name}.{namespace}.json"

    def write_volume_manifest(self, pv_name: str, volume: client.V1PersistentVolume) -> Path:
        return self._write(self.volume_manifest_path(pv_name), volume)

    def write_original_claim(self, claim: client.V1PersistentVolumeClaim) -> Path:
        return self._write(self.original_claim_path(claim.metadata.namespace, claim.metadata.name), claim)

    def write_new_claim(self, claim: client.V1PersistentVolumeClaim) -> Path:
        return self._write(self.new_claim_path(claim.metadata.namespace, claim.metadata.name), claim)

    def _write(self, path: Path, manifest: Any) -> Path:
        payload = json.dumps(self._serialize(manifest), indent=2, sort_keys=True)
        path.write_text(f"{payload}\n", encoding="utf-8")
        logger.info("saved manifest: %s", path)
        return path
