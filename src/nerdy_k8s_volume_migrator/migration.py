from __future__ import annotations

import logging
import time

from kubernetes import client

from .config import RETAIN_RECLAIM_POLICY, MigrationConfig, MigrationOptions
from .k8s import (
    KubernetesClients,
    error_message,
    is_not_found,
    list_persistent_volumes,
    read_storage_class_parameter,
)
from .manifests import ManifestStore
from .models import MigratableVolume, MigrationRun, RestorationAction, VolumeMigrationResult
from .transform import (
    IneligibleVolumeError,
    build_csi_volume,
    build_replacement_claim,
    inspect_volume,
    new_volume_name,
)
from .workloads import WorkloadController

logger = logging.getLogger(__name__)

STATUS_DONE = "done"
STATUS_SKIPPED = "skipped"
PERSISTENT_VOLUME_KIND = "PersistentVolume"
FOREGROUND_PROPAGATION = "Foreground"


class MigrationPreflightError(RuntimeError):
    """Raised when the run cannot start; no volume has been touched yet."""


class MigrationStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


class VolumeMigrator:
    """Moves one volume from the in-tree provisioner to its CSI replacement.

    Stages run strictly in order: validate, retain, pause, create, snapshot,
    cutover, wait, recreate. A failing stage abandons the volume; nothing is
    rolled back because every stage before ``cutover`` is non-destructive.
    """

    def __init__(
        self,
        *,
        core_api: client.CoreV1Api,
        workloads: WorkloadController,
        manifest_store: ManifestStore,
        options: MigrationOptions,
        config: MigrationConfig,
        sku_name: str,
    ) -> None:
        self.core_api = core_api
        self.workloads = workloads
        self.manifest_store = manifest_store
        self.options = options
        self.config = config
        self.sku_name = sku_name

    def migrate(self, run: MigrationRun, pv: client.V1PersistentVolume) -> VolumeMigrationResult:
        pv_name = pv.metadata.name if pv.metadata and pv.metadata.name else ""
        try:
            volume = inspect_volume(
                pv,
                source_storage_class=self.options.existing_storage_class,
                config=self.config,
            )
        except IneligibleVolumeError as error:
            if error.expected:
                logger.debug("%s", error)
            else:
                logger.warning("%s", error)
            return VolumeMigrationResult(pv_name=pv_name, status=STATUS_SKIPPED, stage="validate", message=str(error))

        new_name = new_volume_name(volume.name, self.config)
        try:
            policy_changed = self._retain(pv, volume)
            self._pause_consumers(run, volume)
            self._create_volume(volume)
            existing_claim = self._snapshot_claim(volume)
            replacement_claim = self._cut_over(volume, existing_claim, new_name)
            self._wait_for_claim_deletion(namespace=volume.claim_namespace, claim_name=volume.claim_name)
            self._recreate_claim(replacement_claim)
        except MigrationStageError as error:
            logger.error("migration of pv %s abandoned: %s", volume.name, error)
            return self._result(volume, status=STATUS_SKIPPED, stage=error.stage, message=str(error))
        except Exception as error:  # pylint: disable=broad-except
            message = f"unexpected migration failure: {error_message(error)}"
            logger.exception("migration of pv %s abandoned: %s", volume.name, message)
            return self._result(volume, status=STATUS_SKIPPED, stage="unexpected", message=message)

        logger.info("PVC successfully recreated: %s/%s -> %s", volume.claim_namespace, volume.claim_name, new_name)
        if policy_changed and self.options.delete_migrated:
            # Only PVs switched to Retain by this run; the disk itself stays.
            run.register_restoration(
                RestorationAction(kind=PERSISTENT_VOLUME_KIND, namespace="", name=volume.name)
            )
        return self._result(volume, status=STATUS_DONE, stage="recreate")

    def _retain(self, pv: client.V1PersistentVolume, volume: MigratableVolume) -> bool:
        """Switch the PV to Retain; returns whether the policy had to change."""
        if volume.reclaim_policy == RETAIN_RECLAIM_POLICY:
            return False

        logger.info("updating ReclaimPolicy for %s to %s", volume.name, RETAIN_RECLAIM_POLICY)
        pv.spec.persistent_volume_reclaim_policy = RETAIN_RECLAIM_POLICY
        try:
            self.core_api.replace_persistent_volume(name=volume.name, body=pv)
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="retain", reason=error_message(error)) from error
        return True

    def _pause_consumers(self, run: MigrationRun, volume: MigratableVolume) -> None:
        try:
            self.workloads.pause_claim_consumers(
                run,
                namespace=volume.claim_namespace,
                claim_name=volume.claim_name,
            )
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(
                stage="pause",
                reason=f"failed to list pods in namespace {volume.claim_namespace}: {error_message(error)}",
            ) from error

    def _create_volume(self, volume: MigratableVolume) -> None:
        try:
            new_volume = build_csi_volume(
                volume,
                new_storage_class=self.options.new_storage_class,
                sku_name=self.sku_name,
                config=self.config,
            )
            self.manifest_store.write_volume_manifest(volume.name, new_volume)
            self.core_api.create_persistent_volume(body=new_volume)
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="create", reason=error_message(error)) from error
        logger.info("pv created successfully: %s", new_volume.metadata.name)

    def _snapshot_claim(self, volume: MigratableVolume) -> client.V1PersistentVolumeClaim:
        try:
            existing_claim = self.core_api.read_namespaced_persistent_volume_claim(
                name=volume.claim_name,
                namespace=volume.claim_namespace,
            )
            self.manifest_store.write_original_claim(existing_claim)
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="snapshot", reason=error_message(error)) from error
        return existing_claim

    def _cut_over(
        self,
        volume: MigratableVolume,
        existing_claim: client.V1PersistentVolumeClaim,
        new_name: str,
    ) -> client.V1PersistentVolumeClaim:
        try:
            replacement_claim = build_replacement_claim(
                existing_claim,
                new_volume_name=new_name,
                capacity=volume.capacity,
                new_storage_class=self.options.new_storage_class,
            )
            self.manifest_store.write_new_claim(replacement_claim)
            self.core_api.delete_namespaced_persistent_volume_claim(
                name=volume.claim_name,
                namespace=volume.claim_namespace,
                body=client.V1DeleteOptions(propagation_policy=FOREGROUND_PROPAGATION),
            )
        except Exception as error:  # pylint: disable=broad-except
            raise MigrationStageError(stage="cutover", reason=error_message(error)) from error
        return replacement_claim

    def _wait_for_claim_deletion(self, *, namespace: str, claim_name: str, timeout_seconds: float | None = None) -> None:
        """Block until the claim is gone.

        ``timeout_seconds`` falls back to the configured deletion timeout; with neither set the wait is unbounded.
        """
        if timeout_seconds is None:
            timeout_seconds = self.config.deletion_timeout_seconds
        deadline = None if timeout_seconds is None else time.monotonic() + timeout_seconds

        while True:
            try:
                self.core_api.read_namespaced_persistent_volume_claim(name=claim_name, namespace=namespace)
            except Exception as error:  # pylint: disable=broad-except
                if is_not_found(error):
                    return
                logger.error(
                    "failed to get old pvc %s in namespace %s: %s",
                    claim_name,
                    namespace,
                    error_message(error),
                )
            else:
                logger.info("waiting for old pvc %s in namespace %s to be deleted", claim_name, namespace)

            if deadline is not None and time.monotonic() >= deadline:
                raise MigrationStageError(
                    stage="wait",
                    reason=f"pvc {namespace}/{claim_name} still present after {timeout_seconds:g}s",
                )
            time.sleep(self.config.poll_interval_seconds)

    def _recreate_claim(self, replacement_claim: client.V1PersistentVolumeClaim) -> None:
        try:
            self.core_api.create_namespaced_persistent_volume_claim(
                namespace=replacement_claim.metadata.namespace,
                body=replacement_claim,
            )
        except Exception as error:  # pylint: disable=broad-except
            # The old claim is already gone; the saved new-pvc manifest is the way back.
            raise MigrationStageError(stage="recreate", reason=error_message(error)) from error

    def _result(self, volume: MigratableVolume, *, status: str, stage: str, message: str = "") -> VolumeMigrationResult:
        return VolumeMigrationResult(
            pv_name=volume.name,
            status=status,
            stage=stage,
            new_pv_name=new_volume_name(volume.name, self.config),
            claim_namespace=volume.claim_namespace,
            claim_name=volume.claim_name,
            message=message,
        )


class MigrationOrchestrator:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        options: MigrationOptions,
        config: MigrationConfig | None = None,
        workloads: WorkloadController | None = None,
        manifest_store: ManifestStore | None = None,
    ) -> None:
        self.clients = clients
        self.options = options
        self.config = config or MigrationConfig()
        self.workloads = workloads or WorkloadController(core_api=clients.core_api, apps_api=clients.apps_api)
        self.manifest_store = manifest_store or ManifestStore(
            options.output_dir,
            serializer=clients.api_client.sanitize_for_serialization,
        )

    def resolve_target_sku(self) -> str:
        sku_name = read_storage_class_parameter(
            self.clients,
            storage_class_name=self.options.new_storage_class,
            parameter=self.config.sku_parameter,
            request_timeout_seconds=self.config.request_timeout_seconds,
        )
        if not sku_name:
            raise MigrationPreflightError(
                f"the new storage class {self.options.new_storage_class} does not have a "
                f"'{self.config.sku_parameter}' parameter"
            )
        return sku_name

    def run(self) -> list[VolumeMigrationResult]:
        sku_name = self.resolve_target_sku()
        volumes = list_persistent_volumes(
            self.clients,
            request_timeout_seconds=self.config.request_timeout_seconds,
        )
        self.manifest_store.ensure_directory()

        migrator = VolumeMigrator(
            core_api=self.clients.core_api,
            workloads=self.workloads,
            manifest_store=self.manifest_store,
            options=self.options,
            config=self.config,
            sku_name=sku_name,
        )
        run = MigrationRun()
        results: list[VolumeMigrationResult] = []
        try:
            for pv in volumes:
                results.append(migrator.migrate(run, pv))
        finally:
            self._run_restorations(run)

        migrated = sum(1 for result in results if result.status == STATUS_DONE)
        abandoned = sum(1 for result in results if result.status == STATUS_SKIPPED and result.stage != "validate")
        logger.info(
            "scanned %d volumes: %d migrated, %d abandoned mid-migration",
            len(results),
            migrated,
            abandoned,
        )
        return results

    def _run_restorations(self, run: MigrationRun) -> None:
        for action in run.drain_restorations():
            if action.kind == PERSISTENT_VOLUME_KIND:
                try:
                    self.clients.core_api.delete_persistent_volume(name=action.name)
                except Exception as error:  # pylint: disable=broad-except
                    logger.error("failed to delete old pv %s: %s", action.name, error_message(error))
                else:
                    logger.info("deleted old pv %s", action.name)
                continue

            try:
                self.workloads.restore(action)
            except Exception as error:  # pylint: disable=broad-except
                logger.error("failed to restore %s: %s", action.ref, error_message(error))
