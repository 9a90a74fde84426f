"""Quiesce and restore the workload controllers whose pods mount a claim being migrated.

DaemonSets cannot be scaled, so they are fenced with a node selector that no node
carries; running pods keep going until the claim swap but no new ones get scheduled.
StatefulSets, Deployments and bare ReplicaSets are scaled to zero. Pods owned by a
Deployment-managed ReplicaSet pause the Deployment itself.
"""

from __future__ import annotations

from typing import Any
import logging

from kubernetes import client
from kubernetes.client import ApiException

from .config import MIGRATION_NODE_SELECTOR_KEY, MIGRATION_NODE_SELECTOR_VALUE
from .k8s import controller_reference, error_message
from .models import ControllerRef, MigrationRun, RestorationAction

logger = logging.getLogger(__name__)

MAX_OWNER_RESOLUTION_DEPTH = 2
SCALABLE_KINDS = ("StatefulSet", "Deployment", "ReplicaSet")
SUPPORTED_KINDS = ("DaemonSet",) + SCALABLE_KINDS

_APPS_METHODS = {
    "DaemonSet": ("read_namespaced_daemon_set", "replace_namespaced_daemon_set"),
    "StatefulSet": ("read_namespaced_stateful_set", "replace_namespaced_stateful_set"),
    "ReplicaSet": ("read_namespaced_replica_set", "replace_namespaced_replica_set"),
    "Deployment": ("read_namespaced_deployment", "replace_namespaced_deployment"),
}


class WorkloadPauseError(RuntimeError):
    """Raised when a single controller cannot be paused or restored."""


class WorkloadController:
    def __init__(self, *, core_api: client.CoreV1Api, apps_api: client.AppsV1Api) -> None:
        self.core_api = core_api
        self.apps_api = apps_api

    def pause_claim_consumers(self, run: MigrationRun, *, namespace: str, claim_name: str) -> list[ControllerRef]:
        """Pause every controller owning a pod that mounts the claim.

        Listing pods may raise ``ApiException``; per-controller failures are logged and skipped.
        """
        pods = self.core_api.list_namespaced_pod(namespace=namespace).items or []
        paused: list[ControllerRef] = []

        for pod in pods:
            if not _mounts_claim(pod, claim_name):
                continue

            pod_name = pod.metadata.name if pod.metadata else "<unknown>"
            owner = _pod_owner(pod, namespace)
            if owner is None:
                logger.error(
                    "pod %s/%s has no usable owner reference; unmanaged pods are not paused",
                    namespace,
                    pod_name,
                )
                continue
            if run.is_paused(owner):
                continue

            try:
                target = self._resolve_pause_target(owner, depth=0)
                if run.is_paused(target):
                    run.mark_paused(owner)
                    continue
                action = self._pause(target)
            except (ApiException, WorkloadPauseError) as error:
                logger.error("failed to pause %s for pod %s/%s: %s", owner, namespace, pod_name, error_message(error))
                continue

            run.mark_paused(owner)
            run.mark_paused(target)
            run.register_restoration(action)
            paused.append(target)

        return paused

    def restore(self, action: RestorationAction) -> None:
        ref = action.ref
        workload = self._read(ref)
        if ref.kind == "DaemonSet":
            pod_spec = workload.spec.template.spec
            node_selector = dict(pod_spec.node_selector or {})
            node_selector.pop(action.original_state.get("node_selector_key", MIGRATION_NODE_SELECTOR_KEY), None)
            pod_spec.node_selector = node_selector or None
            self._replace(ref, workload)
            logger.info("restored DaemonSet %s/%s scheduling", ref.namespace, ref.name)
            return

        replicas = action.original_state.get("replicas")
        workload.spec.replicas = replicas
        self._replace(ref, workload)
        logger.info("restored %s %s/%s to %s replicas", ref.kind, ref.namespace, ref.name, replicas)

    def _resolve_pause_target(self, ref: ControllerRef, *, depth: int) -> ControllerRef:
        if depth >= MAX_OWNER_RESOLUTION_DEPTH:
            raise WorkloadPauseError(f"owner chain of {ref} is deeper than {MAX_OWNER_RESOLUTION_DEPTH} levels")
        if ref.kind not in SUPPORTED_KINDS:
            raise WorkloadPauseError(f"unsupported controller kind {ref.kind}")
        if ref.kind != "ReplicaSet":
            return ref

        replica_set = self._read(ref)
        owner_refs = replica_set.metadata.owner_references if replica_set.metadata else None
        owner = controller_reference(owner_refs or [])
        if owner is None:
            return ref
        if not owner.kind or not owner.name:
            raise WorkloadPauseError(f"owner reference of ReplicaSet {ref.namespace}/{ref.name} is incomplete")
        return self._resolve_pause_target(
            ControllerRef(kind=owner.kind, namespace=ref.namespace, name=owner.name),
            depth=depth + 1,
        )

    def _pause(self, ref: ControllerRef) -> RestorationAction:
        workload = self._read(ref)
        if ref.kind == "DaemonSet":
            pod_spec = workload.spec.template.spec
            node_selector = dict(pod_spec.node_selector or {})
            node_selector[MIGRATION_NODE_SELECTOR_KEY] = MIGRATION_NODE_SELECTOR_VALUE
            pod_spec.node_selector = node_selector
            self._replace(ref, workload)
            logger.info(
                "fenced DaemonSet %s/%s with node selector %s=%s",
                ref.namespace,
                ref.name,
                MIGRATION_NODE_SELECTOR_KEY,
                MIGRATION_NODE_SELECTOR_VALUE,
            )
            return RestorationAction(
                kind=ref.kind,
                namespace=ref.namespace,
                name=ref.name,
                original_state={"node_selector_key": MIGRATION_NODE_SELECTOR_KEY},
            )

        original_replicas = workload.spec.replicas
        workload.spec.replicas = 0
        self._replace(ref, workload)
        logger.info("successfully scaled %s %s/%s to 0 replicas", ref.kind, ref.namespace, ref.name)
        return RestorationAction(
            kind=ref.kind,
            namespace=ref.namespace,
            name=ref.name,
            original_state={"replicas": original_replicas},
        )

    def _read(self, ref: ControllerRef) -> Any:
        read_method, _ = _apps_methods(ref.kind)
        return getattr(self.apps_api, read_method)(name=ref.name, namespace=ref.namespace)

    def _replace(self, ref: ControllerRef, body: Any) -> Any:
        _, replace_method = _apps_methods(ref.kind)
        return getattr(self.apps_api, replace_method)(name=ref.name, namespace=ref.namespace, body=body)


def _apps_methods(kind: str) -> tuple[str, str]:
    try:
        return _APPS_METHODS[kind]
    except KeyError as error:
        raise WorkloadPauseError(f"unsupported controller kind {kind}") from error


def _mounts_claim(pod: client.V1Pod, claim_name: str) -> bool:
    volumes = pod.spec.volumes if pod.spec and pod.spec.volumes else []
    for volume in volumes:
        pvc_source = volume.persistent_volume_claim
        if pvc_source and pvc_source.claim_name and pvc_source.claim_name.lower() == claim_name.lower():
            return True
    return False


def _pod_owner(pod: client.V1Pod, namespace: str) -> ControllerRef | None:
    refs = pod.metadata.owner_references if pod.metadata and pod.metadata.owner_references else []
    owner_ref = controller_reference(refs)
    if owner_ref is None or not owner_ref.kind or not owner_ref.name:
        return None
    return ControllerRef(kind=owner_ref.kind, namespace=namespace, name=owner_ref.name)
