from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

import yaml
from kubernetes import client, config
from kubernetes.client import ApiException

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    storage_api: client.StorageV1Api


class KubernetesDiscoveryError(RuntimeError):
    """Raised when the cluster cannot be inspected safely before migrating."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    """Authenticate once and build the typed API clients used for the whole run.

    ``kubeconfig_path`` and ``context`` are ignored when ``in_cluster`` is set; a
    blank path falls back to the client's default search path.
    """
    stripped_path = (kubeconfig_path or "").strip()
    config_file = str(Path(stripped_path).expanduser()) if stripped_path else None
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=config_file, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _authentication_error(in_cluster=in_cluster, kubeconfig_path=config_file, context=context, error=error)
        ) from error

    api_client = client.ApiClient()
    core_api, apps_api, storage_api = (
        api_class(api_client) for api_class in (client.CoreV1Api, client.AppsV1Api, client.StorageV1Api)
    )
    return KubernetesClients(api_client=api_client, core_api=core_api, apps_api=apps_api, storage_api=storage_api)


def validate_kubeconfig_file(kubeconfig_path: str) -> str | None:
    """Return a human readable problem with the kubeconfig file, or None when it looks usable."""
    path_value = kubeconfig_path.strip()
    if not path_value:
        return "Kubeconfig path is required unless --in-cluster is used."

    expanded_path = Path(path_value).expanduser()
    if not expanded_path.exists():
        return f"Kubeconfig path does not exist: {expanded_path}"
    if not expanded_path.is_file():
        return f"Kubeconfig path must point to a file: {expanded_path}"

    try:
        kubeconfig_content = expanded_path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        return f"Kubeconfig path must reference a UTF-8 text file: {expanded_path}"
    except OSError as error:
        return f"Unable to read kubeconfig path {expanded_path}: {error}"

    source_label = f"Kubeconfig file '{expanded_path}'"
    try:
        parsed = yaml.safe_load(kubeconfig_content)
    except yaml.YAMLError as error:
        return f"{source_label} must be valid YAML: {error.__class__.__name__}."

    if not isinstance(parsed, dict):
        return f"{source_label} must be a YAML mapping."

    for list_field in ("clusters", "contexts", "users"):
        values = parsed.get(list_field)
        if not isinstance(values, list) or not values:
            return f"{source_label} must include at least one '{list_field}' entry."

    return None


def list_persistent_volumes(
    clients: KubernetesClients,
    *,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> list[client.V1PersistentVolume]:
    if request_timeout_seconds <= 0:
        raise ValueError("request_timeout_seconds must be positive")

    volumes = _discover(
        operation="list PersistentVolumes",
        hint="Confirm cluster connectivity and RBAC verbs for persistentvolumes.",
        func=lambda: clients.core_api.list_persistent_volume(_request_timeout=request_timeout_seconds).items,
    )
    return list(volumes or [])


def read_storage_class_parameter(
    clients: KubernetesClients,
    *,
    storage_class_name: str,
    parameter: str,
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
) -> str:
    storage_class = _discover(
        operation=f"read StorageClass '{storage_class_name}'",
        hint="Check the StorageClass name and RBAC verbs for storageclasses.",
        func=lambda: clients.storage_api.read_storage_class(
            name=storage_class_name,
            _request_timeout=request_timeout_seconds,
        ),
    )
    parameters = storage_class.parameters or {}
    return (parameters.get(parameter) or "").strip()


def is_not_found(error: Exception) -> bool:
    return isinstance(error, ApiException) and error.status == 404


def controller_reference(owner_refs: list[client.V1OwnerReference]) -> client.V1OwnerReference | None:
    for owner_ref in owner_refs:
        if owner_ref.controller:
            return owner_ref
    return owner_refs[0] if owner_refs else None


def error_message(error: Exception) -> str:
    if isinstance(error, ApiException):
        status = error.status if error.status is not None else "unknown"
        reason = error.reason or "no reason provided"
        return f"API status {status} ({reason})"
    message = str(error).strip()
    return message or error.__class__.__name__


def _discover(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesDiscoveryError(f"could not {operation}: {error_message(error)}. {hint}") from error


def _authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = error_message(error)
    if in_cluster:
        return f"in-cluster service account credentials could not be loaded: {reason}"

    source = kubeconfig_path or "the default kubeconfig search path"
    if context:
        source = f"{source} (context '{context}')"
    return f"kubeconfig from {source} could not be loaded: {reason}"
