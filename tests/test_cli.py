from __future__ import annotations

from pathlib import Path
from unittest.mock import Mock

import pytest

from nerdy_k8s_volume_migrator.cli import build_parser, main
from nerdy_k8s_volume_migrator.k8s import KubernetesAuthenticationError
from nerdy_k8s_volume_migrator.migration import MigrationPreflightError
from nerdy_k8s_volume_migrator.models import VolumeMigrationResult

_KUBECONFIG = """apiVersion: v1
clusters:
- name: aks
  cluster:
    server: https://aks.example.invalid
contexts:
- name: aks
  context:
    cluster: aks
    user: admin
users:
- name: admin
  user: {}
"""


def _kubeconfig(tmp_path: Path) -> str:
    path = tmp_path / "config"
    path.write_text(_KUBECONFIG, encoding="utf-8")
    return str(path)


def _args(tmp_path: Path, *extra: str) -> list[str]:
    return [
        "--existing-storageclass",
        "managed-premium",
        "--new-storageclass",
        "managed-csi-premium",
        "--clustername",
        str(tmp_path / "aks-prod"),
        "--kubeconfig",
        _kubeconfig(tmp_path),
        *extra,
    ]


@pytest.mark.parametrize(
    "missing_flag",
    ["--existing-storageclass", "--new-storageclass", "--clustername"],
)
def test_main_with_missing_required_flag_exits_with_usage_error(
    missing_flag: str,
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_clients = Mock()
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.load_kubernetes_clients", load_clients)
    argv = _args(tmp_path)
    index = argv.index(missing_flag)
    del argv[index : index + 2]

    with pytest.raises(SystemExit) as exit_info:
        main(argv)

    assert exit_info.value.code == 2
    load_clients.assert_not_called()


def test_main_with_blank_required_flag_exits_with_usage_error(tmp_path: Path) -> None:
    argv = _args(tmp_path)
    argv[argv.index("--clustername") + 1] = "  "

    with pytest.raises(SystemExit) as exit_info:
        main(argv)

    assert exit_info.value.code == 2


def test_main_with_missing_kubeconfig_returns_one_before_loading_clients(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_clients = Mock()
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.load_kubernetes_clients", load_clients)
    argv = _args(tmp_path)
    argv[argv.index("--kubeconfig") + 1] = str(tmp_path / "absent")

    assert main(argv) == 1
    load_clients.assert_not_called()


def test_main_with_successful_run_returns_zero_even_when_volumes_were_skipped(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    orchestrator = Mock()
    orchestrator.run.return_value = [VolumeMigrationResult(pv_name="pv-1", status="skipped", stage="create")]
    orchestrator_class = Mock(return_value=orchestrator)
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.load_kubernetes_clients", Mock(return_value=Mock()))
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.MigrationOrchestrator", orchestrator_class)

    assert main(_args(tmp_path, "--delete-migrated", "--deletion-timeout-seconds", "30")) == 0

    options = orchestrator_class.call_args.kwargs["options"]
    config = orchestrator_class.call_args.kwargs["config"]
    assert options.existing_storage_class == "managed-premium"
    assert options.new_storage_class == "managed-csi-premium"
    assert options.delete_migrated is True
    assert config.deletion_timeout_seconds == 30


def test_main_with_preflight_error_returns_one(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    orchestrator = Mock()
    orchestrator.run.side_effect = MigrationPreflightError("the new storage class has no 'skuname' parameter")
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.load_kubernetes_clients", Mock(return_value=Mock()))
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.MigrationOrchestrator", Mock(return_value=orchestrator))

    assert main(_args(tmp_path)) == 1


def test_main_with_authentication_error_returns_one(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(
        "nerdy_k8s_volume_migrator.cli.load_kubernetes_clients",
        Mock(side_effect=KubernetesAuthenticationError("bad context")),
    )

    assert main(_args(tmp_path)) == 1


def test_main_with_in_cluster_skips_kubeconfig_validation(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    load_clients = Mock(return_value=Mock())
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.load_kubernetes_clients", load_clients)
    monkeypatch.setattr("nerdy_k8s_volume_migrator.cli.MigrationOrchestrator", Mock())
    argv = _args(tmp_path, "--in-cluster")
    argv[argv.index("--kubeconfig") + 1] = str(tmp_path / "absent")

    assert main(argv) == 0
    load_clients.assert_called_once_with(kubeconfig_path=None, context=None, in_cluster=True)


def test_build_parser_defaults_kubeconfig_to_home_directory() -> None:
    args = build_parser().parse_args(
        ["--existing-storageclass", "a", "--new-storageclass", "b", "--clustername", "c"]
    )

    assert args.kubeconfig.endswith(str(Path(".kube") / "config"))
    assert args.delete_migrated is False
    assert args.deletion_timeout_seconds is None
