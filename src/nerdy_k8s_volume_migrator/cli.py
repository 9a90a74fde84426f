from __future__ import annotations

from pathlib import Path
import argparse
import logging
import sys

from nerdy_k8s_volume_migrator.config import MigrationConfig, MigrationOptions
from nerdy_k8s_volume_migrator.k8s import (
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    load_kubernetes_clients,
    validate_kubeconfig_file,
)
from nerdy_k8s_volume_migrator.migration import MigrationOrchestrator, MigrationPreflightError

logger = logging.getLogger("nerdy_k8s_volume_migrator")

_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_DEFAULT_KUBECONFIG = str(Path("~/.kube/config").expanduser())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="nerdy-k8s-volume-migrator",
        description=(
            "Migrate in-tree Azure disk PersistentVolumes to the Azure Disk CSI driver by re-pointing "
            "each claim at a pre-created CSI volume."
        ),
    )
    parser.add_argument("--existing-storageclass", required=True, help="The name of the existing storage class")
    parser.add_argument("--new-storageclass", required=True, help="The name of the new storage class to be used")
    parser.add_argument(
        "--clustername",
        required=True,
        help="The name of the Kubernetes cluster; manifests are saved in a directory with this name",
    )
    parser.add_argument(
        "--delete-migrated",
        action="store_true",
        help="Delete the migrated PV objects after the migration is complete (backing disks are retained)",
    )
    parser.add_argument("--kubeconfig", default=_DEFAULT_KUBECONFIG, help="Absolute path to the kubeconfig file")
    parser.add_argument("--context", default=None, help="Kubeconfig context to use")
    parser.add_argument(
        "--in-cluster",
        action="store_true",
        help="Use the mounted service account instead of a kubeconfig",
    )
    parser.add_argument(
        "--deletion-timeout-seconds",
        type=float,
        default=None,
        help="Give up on a claim that is not deleted within this many seconds (default: wait forever)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=("DEBUG", "INFO", "WARNING", "ERROR"),
        help="Logging verbosity",
    )
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format=_LOG_FORMAT, stream=sys.stderr)


def _build_config(args: argparse.Namespace) -> MigrationConfig:
    if args.deletion_timeout_seconds is None:
        return MigrationConfig()
    return MigrationConfig(deletion_timeout_seconds=args.deletion_timeout_seconds)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level)

    options = MigrationOptions(
        existing_storage_class=args.existing_storageclass.strip(),
        new_storage_class=args.new_storageclass.strip(),
        cluster_name=args.clustername.strip(),
        delete_migrated=args.delete_migrated,
    )
    if not options.existing_storage_class or not options.new_storage_class or not options.cluster_name:
        parser.error("please provide all the required flags: --existing-storageclass, --new-storageclass, --clustername")
    if args.deletion_timeout_seconds is not None and args.deletion_timeout_seconds <= 0:
        parser.error("--deletion-timeout-seconds must be positive")

    if not args.in_cluster:
        kubeconfig_problem = validate_kubeconfig_file(args.kubeconfig)
        if kubeconfig_problem:
            logger.error("%s", kubeconfig_problem)
            return 1

    try:
        clients = load_kubernetes_clients(
            kubeconfig_path=None if args.in_cluster else args.kubeconfig,
            context=args.context,
            in_cluster=args.in_cluster,
        )
        orchestrator = MigrationOrchestrator(clients=clients, options=options, config=_build_config(args))
        orchestrator.run()
    except (KubernetesAuthenticationError, KubernetesDiscoveryError, MigrationPreflightError) as error:
        logger.error("%s", error)
        return 1

    logger.info("done")
    return 0


if __name__ == "__main__":
    sys.exit(main())
