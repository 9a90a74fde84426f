"""Derive CSI PersistentVolume and replacement claim manifests from in-tree Azure disk volumes."""

from __future__ import annotations

from dataclasses import asdict

from kubernetes import client

from .config import (
    BIND_COMPLETED_ANNOTATION,
    PROVISIONED_BY_ANNOTATION,
    SOURCE_PROVISIONER_ANNOTATION,
    MigrationConfig,
)
from .models import MigratableVolume


class IneligibleVolumeError(ValueError):
    def __init__(self, *, pv_name: str, reason: str, expected: bool = False) -> None:
        super().__init__(f"pv {pv_name or '<unnamed>'} is not eligible for migration: {reason}")
        self.pv_name = pv_name
        # True for volumes outside the source provisioner; logged at debug level.
        self.expected = expected


def new_volume_name(pv_name: str, config: MigrationConfig) -> str:
    return f"{pv_name}{config.volume_name_suffix}"


def inspect_volume(
    pv: client.V1PersistentVolume,
    *,
    source_storage_class: str,
    config: MigrationConfig,
) -> MigratableVolume:
    metadata = pv.metadata
    pv_name = metadata.name if metadata and metadata.name else ""
    annotations = metadata.annotations if metadata and metadata.annotations else {}

    if annotations.get(SOURCE_PROVISIONER_ANNOTATION) != config.source_provisioner:
        raise IneligibleVolumeError(
            pv_name=pv_name,
            reason=f"not provisioned by {config.source_provisioner}",
            expected=True,
        )

    spec = pv.spec
    storage_class = spec.storage_class_name if spec and spec.storage_class_name else ""
    if storage_class.lower() != source_storage_class.lower():
        raise IneligibleVolumeError(
            pv_name=pv_name,
            reason=f"wrong StorageClass {storage_class or '<none>'} (expected {source_storage_class})",
        )

    claim_ref = spec.claim_ref if spec else None
    azure_disk = spec.azure_disk if spec else None
    capacity = (spec.capacity or {}).get("storage") if spec else None
    volume = MigratableVolume(
        name=pv_name,
        disk_uri=(azure_disk.disk_uri if azure_disk else None) or "",
        capacity=str(capacity) if capacity else "",
        reclaim_policy=(spec.persistent_volume_reclaim_policy if spec else None) or "",
        storage_class=storage_class,
        claim_namespace=(claim_ref.namespace if claim_ref else None) or "",
        claim_name=(claim_ref.name if claim_ref else None) or "",
    )

    missing = [field for field, value in asdict(volume).items() if not value]
    if missing:
        raise IneligibleVolumeError(
            pv_name=pv_name,
            reason=f"required field(s) empty: {', '.join(missing)}",
        )
    return volume


def build_csi_volume(
    volume: MigratableVolume,
    *,
    new_storage_class: str,
    sku_name: str,
    config: MigrationConfig,
) -> client.V1PersistentVolume:
    name = new_volume_name(volume.name, config)
    return client.V1PersistentVolume(
        api_version="v1",
        kind="PersistentVolume",
        metadata=client.V1ObjectMeta(
            name=name,
            annotations={PROVISIONED_BY_ANNOTATION: config.csi_driver},
        ),
        spec=client.V1PersistentVolumeSpec(
            access_modes=["ReadWriteOnce"],
            capacity={"storage": volume.capacity},
            csi=client.V1CSIPersistentVolumeSource(
                driver=config.csi_driver,
                volume_handle=volume.disk_uri,
                volume_attributes={
                    "csi.storage.k8s.io/pv/name": name,
                    "csi.storage.k8s.io/pvc/name": volume.claim_name,
                    "csi.storage.k8s.io/pvc/namespace": volume.claim_namespace,
                    "requestedsizegib": volume.capacity,
                    config.sku_parameter: sku_name,
                },
            ),
            claim_ref=client.V1ObjectReference(
                api_version="v1",
                kind="PersistentVolumeClaim",
                name=volume.claim_name,
                namespace=volume.claim_namespace,
            ),
            persistent_volume_reclaim_policy=volume.reclaim_policy,
            storage_class_name=new_storage_class,
        ),
    )


def build_replacement_claim(
    existing_claim: client.V1PersistentVolumeClaim,
    *,
    new_volume_name: str,
    capacity: str,
    new_storage_class: str,
) -> client.V1PersistentVolumeClaim:
    metadata = existing_claim.metadata
    annotations = dict(metadata.annotations or {})
    annotations.pop(BIND_COMPLETED_ANNOTATION, None)
    access_modes = list(existing_claim.spec.access_modes or []) if existing_claim.spec else []

    return client.V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=client.V1ObjectMeta(
            name=metadata.name,
            namespace=metadata.namespace,
            labels=dict(metadata.labels) if metadata.labels else None,
            annotations=annotations or None,
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=access_modes,
            resources=client.V1VolumeResourceRequirements(requests={"storage": capacity}),
            storage_class_name=new_storage_class,
            volume_name=new_volume_name,
        ),
    )
