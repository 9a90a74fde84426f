from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

SOURCE_PROVISIONER_ANNOTATION = "volumehelper.VolumeDynamicallyCreatedByKey"
PROVISIONED_BY_ANNOTATION = "pv.kubernetes.io/provisioned-by"
BIND_COMPLETED_ANNOTATION = "pv.kubernetes.io/bind-completed"
MIGRATION_NODE_SELECTOR_KEY = "storage-migration"
MIGRATION_NODE_SELECTOR_VALUE = "in-progress"
RETAIN_RECLAIM_POLICY = "Retain"


def _optional_float(raw: str | None) -> float | None:
    if raw is None or not raw.strip():
        return None
    return float(raw)


@dataclass(frozen=True)
class MigrationConfig:
    poll_interval_seconds: float = float(os.getenv("NKVM_POLL_INTERVAL_SECONDS", "1"))
    deletion_timeout_seconds: float | None = _optional_float(os.getenv("NKVM_DELETION_TIMEOUT_SECONDS"))
    request_timeout_seconds: int = int(os.getenv("NKVM_REQUEST_TIMEOUT_SECONDS", "20"))
    volume_name_suffix: str = os.getenv("NKVM_VOLUME_NAME_SUFFIX", "-csi")
    csi_driver: str = os.getenv("NKVM_CSI_DRIVER", "disk.csi.azure.com")
    source_provisioner: str = os.getenv("NKVM_SOURCE_PROVISIONER", "azure-disk-dynamic-provisioner")
    sku_parameter: str = os.getenv("NKVM_SKU_PARAMETER", "skuname")


@dataclass(frozen=True)
class MigrationOptions:
    existing_storage_class: str
    new_storage_class: str
    cluster_name: str
    delete_migrated: bool = False

    @property
    def output_dir(self) -> Path:
        return Path(self.cluster_name)