"""kubeship: build, apply and manage applications on Kubernetes and OpenShift.

Subcommands:

1. ``apply``: create or update the resources of generated manifests
2. ``undeploy``: delete them again, including OpenShift build leftovers
3. ``build``: build an image with an OpenShift binary build
4. ``debug``: enable JVM remote debugging and forward the debug port
5. ``log``: tail the logs of the application's pods
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from .apply_service import ApplyService
from .cluster_util import resolve_fallback_namespace
from .debug_service import DebugService
from .kubernetes_controller import KubernetesController
from .models import (
    DEFAULT_APPLY_TIMEOUT_SECONDS,
    DEFAULT_DEBUG_PORT,
    DEFAULT_PULL_SECRET,
    BuildConfiguration,
    BuildOutputKind,
    BuildServiceConfig,
    BuildStrategy,
    ImageConfiguration,
    RecreateMode,
    Resource,
    ResourceConfig,
)
from .openshift_build_service import OpenshiftBuildService
from .pod_log_service import OPERATION_STOP, OPERATION_UNDEPLOY, PodLogService
from .resources import load_resources
from .undeploy_service import KubernetesUndeployService, OpenshiftUndeployService

logger = logging.getLogger(__name__)


def _setup_logging(verbose: bool = False) -> None:
    """Configure logging for CLI usage. Only called from main()."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s : %(name)-13s : %(levelname)s :: %(message)s",
    )


def _key_value(raw: str) -> tuple[str, str]:
    key, sep, value = raw.partition("=")
    if not sep or not key:
        raise argparse.ArgumentTypeError(f"Expected KEY=VALUE, got '{raw}'")
    return key, value


def _recreate_mode(raw: str) -> RecreateMode:
    try:
        return RecreateMode.from_value(raw)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _load_manifests(manifests: list[str]) -> list[Resource]:
    resources: list[Resource] = []
    for manifest in manifests:
        loaded = load_resources(manifest)
        if not loaded:
            logger.warning(f"No resources found in {manifest}")
        resources.extend(loaded)
    return resources


# ---------------------------------------------------------------------------
# Argument parsing
# ---------------------------------------------------------------------------


def parse_args(args: list[str] | None = None) -> argparse.Namespace:
    """Parse command line arguments.

    Args:
        args: Optional list of argument strings (defaults to ``sys.argv``).

    Returns:
        Parsed ``argparse.Namespace``.
    """
    parser = argparse.ArgumentParser(
        description="kubeship: build, apply and manage applications on Kubernetes and OpenShift",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--context", help="Kubeconfig context name to use for cluster connection")
    parser.add_argument("--insecure", action="store_true", help="Disable TLS certificate verification")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)
    formatter = argparse.ArgumentDefaultsHelpFormatter

    apply_parser = subparsers.add_parser("apply", help="Apply generated manifests", formatter_class=formatter)
    apply_parser.add_argument("manifests", nargs="+", metavar="MANIFEST", help="Manifest files to apply")
    apply_parser.add_argument("--namespace", help="Namespace forced onto every namespaced resource")
    apply_parser.add_argument(
        "--create",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Create resources that do not exist yet",
    )
    apply_parser.add_argument("--recreate", action="store_true", help="Delete and recreate existing resources")
    apply_parser.add_argument("--services-only", action="store_true", help="Only apply Services")
    apply_parser.add_argument(
        "--ignore-bound-pvcs", action="store_true", help="Leave changed bound PersistentVolumeClaims alone",
    )
    apply_parser.add_argument(
        "--timeout",
        type=int,
        default=DEFAULT_APPLY_TIMEOUT_SECONDS,
        help="Seconds to wait for the URL of each exposed Service",
    )

    undeploy_parser = subparsers.add_parser("undeploy", help="Delete applied resources", formatter_class=formatter)
    undeploy_parser.add_argument("manifests", nargs="+", metavar="MANIFEST", help="Manifest files to undeploy")
    undeploy_parser.add_argument("--namespace", help="Namespace used when the manifests declare none")
    undeploy_parser.add_argument(
        "--openshift",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also delete Builds and BuildConfigs of ImageStreams (default: detect OpenShift)",
    )

    build_parser = subparsers.add_parser("build", help="Build an image on OpenShift", formatter_class=formatter)
    build_parser.add_argument("--image", required=True, help="Image name, e.g. 'acme/app:1.0'")
    build_parser.add_argument("--build-dir", required=True, help="Directory for the build archive and ImageStream file")
    build_parser.add_argument("--artifact-id", required=True, help="Name prefix of the generated '<id>-is.yml' file")
    build_parser.add_argument("--namespace", help="Namespace of the build (default: current namespace)")
    build_parser.add_argument("--from", dest="from_image", help="Base image for non-Dockerfile builds")
    build_parser.add_argument(
        "--strategy",
        choices=[BuildStrategy.DOCKER.value, BuildStrategy.S2I.value],
        default=BuildStrategy.DOCKER.value,
        help="OpenShift build strategy",
    )
    build_parser.add_argument("--dockerfile", help="Dockerfile to build")
    build_parser.add_argument("--context-dir", help="Build context directory (default: the Dockerfile's directory)")
    build_parser.add_argument("--tag", action="append", default=[], dest="tags", help="Additional tag (repeatable)")
    build_parser.add_argument(
        "--build-arg", action="append", default=[], type=_key_value, dest="build_args", help="Build argument KEY=VALUE",
    )
    build_parser.add_argument(
        "--env", action="append", default=[], type=_key_value, help="S2I environment variable KEY=VALUE",
    )
    build_parser.add_argument(
        "--recreate",
        type=_recreate_mode,
        default=RecreateMode.NONE,
        help="Recreate mode: none, buildconfig (bc), imagestream (is) or all",
    )
    build_parser.add_argument(
        "--output-kind",
        choices=[kind.value for kind in BuildOutputKind],
        default=BuildOutputKind.IMAGE_STREAM_TAG.value,
        help="Push to an ImageStreamTag or directly to a registry",
    )
    build_parser.add_argument("--pull-secret", default=DEFAULT_PULL_SECRET, help="Secret used to pull the base image")
    build_parser.add_argument("--push-secret", help="Secret used to push the image")
    build_parser.add_argument("--s2i-suffix", help="Suffix of the BuildConfig name")
    build_parser.add_argument("--no-cache", action="store_true", help="Disable the Docker build cache")
    build_parser.add_argument("--force-pull", action="store_true", help="Always pull the S2I builder image")

    debug_parser = subparsers.add_parser("debug", help="Debug a Java application", formatter_class=formatter)
    debug_parser.add_argument("manifests", nargs="+", metavar="MANIFEST", help="Manifest files of the application")
    debug_parser.add_argument("--namespace", help="Namespace of the application (default: current namespace)")
    debug_parser.add_argument("--port", type=int, default=DEFAULT_DEBUG_PORT, help="Local debug port")
    debug_parser.add_argument("--suspend", action="store_true", help="Suspend the JVM until a debugger attaches")

    log_parser = subparsers.add_parser("log", help="Tail application logs", formatter_class=formatter)
    log_parser.add_argument("manifests", nargs="+", metavar="MANIFEST", help="Manifest files of the application")
    log_parser.add_argument("--namespace", help="Namespace of the application (default: current namespace)")
    log_parser.add_argument(
        "--follow",
        action=argparse.BooleanOptionalAction,
        default=True,
        help="Follow the log of the newest pod",
    )
    log_parser.add_argument("--container", help="Container to tail in multi-container pods")
    log_parser.add_argument("--pod", help="Tail this pod instead of the application's pods")
    log_parser.add_argument(
        "--on-exit",
        choices=[OPERATION_UNDEPLOY, OPERATION_STOP],
        help="Undeploy or scale down the application when tailing stops",
    )
    log_parser.add_argument("--s2i-suffix", help="Suffix of S2I BuildConfigs deleted on undeploy")
    return parser.parse_args(args)


# ---------------------------------------------------------------------------
# Subcommands
# ---------------------------------------------------------------------------


def _run_apply(controller: KubernetesController, args: argparse.Namespace) -> int:
    service = ApplyService(
        controller,
        namespace=args.namespace,
        fallback_namespace=resolve_fallback_namespace(None, controller),
        allow_create=args.create,
        recreate_mode=args.recreate,
        services_only_mode=args.services_only,
        ignore_bound_pvcs=args.ignore_bound_pvcs,
    )
    results = []
    for manifest in args.manifests:
        results.extend(service.apply_entities(args.namespace, load_resources(manifest), manifest, args.timeout))
    print(json.dumps(
        [
            {"kind": r.kind, "name": r.name, "namespace": r.namespace, "outcome": r.outcome.value}
            for r in results
        ],
        indent=2,
    ))
    return 0


def _run_undeploy(controller: KubernetesController, args: argparse.Namespace) -> int:
    openshift = args.openshift if args.openshift is not None else controller.is_openshift()
    service_class = OpenshiftUndeployService if openshift else KubernetesUndeployService
    service_class(controller).undeploy(None, ResourceConfig(namespace=args.namespace), *args.manifests)
    return 0


def _run_build(controller: KubernetesController, args: argparse.Namespace) -> int:
    image_config = ImageConfiguration(
        name=args.image,
        build=BuildConfiguration(
            from_image=args.from_image,
            args=dict(args.build_args),
            env=dict(args.env),
            tags=args.tags,
            no_cache=args.no_cache,
            context_dir=args.context_dir,
            dockerfile=args.dockerfile,
        ),
    )
    config = BuildServiceConfig(
        build_directory=args.build_dir,
        artifact_id=args.artifact_id,
        build_strategy=BuildStrategy(args.strategy),
        recreate_mode=args.recreate,
        output_kind=BuildOutputKind(args.output_kind),
        s2i_build_name_suffix=args.s2i_suffix,
        openshift_pull_secret=args.pull_secret,
        openshift_push_secret=args.push_secret,
        force_pull=args.force_pull,
        resource_config=ResourceConfig(namespace=args.namespace),
    )
    build_run = OpenshiftBuildService(controller, config).build(image_config)
    print(json.dumps({"build": build_run.build_name, "namespace": build_run.namespace, "phase": build_run.phase}, indent=2))
    return 0


def _run_debug(controller: KubernetesController, args: argparse.Namespace) -> int:
    namespace = args.namespace or controller.namespace
    apply_service = ApplyService(controller, namespace=namespace)
    forward = DebugService(controller, apply_service).debug(
        namespace, ",".join(args.manifests), _load_manifests(args.manifests), args.port, args.suspend,
    )
    if forward is None:
        logger.warning("No Deployment, ReplicaSet, ReplicationController or DeploymentConfig found to debug")
        return 1
    try:
        forward.wait()
    except KeyboardInterrupt:
        logger.info("Stopping port forwarding")
    finally:
        forward.close()
    return 0


def _run_log(controller: KubernetesController, args: argparse.Namespace) -> int:
    service = PodLogService(
        controller, log_container_name=args.container, pod_name=args.pod, s2i_build_name_suffix=args.s2i_suffix,
    )
    handler = service.tail_app_pods_logs(
        args.namespace or controller.namespace,
        _load_manifests(args.manifests),
        on_exit_operation=args.on_exit,
        follow_log=args.follow,
    )
    return 0 if handler is not None else 1


_COMMANDS = {
    "apply": _run_apply,
    "undeploy": _run_undeploy,
    "build": _run_build,
    "debug": _run_debug,
    "log": _run_log,
}


def run(args: argparse.Namespace) -> int:
    """Run the selected subcommand.

    Args:
        args: Parsed CLI arguments.

    Returns:
        Process exit code (0 = success, 1 = failure).
    """
    try:
        controller = KubernetesController(context=args.context, insecure=args.insecure)
    except Exception as e:
        logger.error(f"Initialization failed: {e}")
        return 1
    return _COMMANDS[args.command](controller, args)


def main() -> None:
    """CLI entry point for kubeship."""
    try:
        parsed_args = parse_args()
        _setup_logging(verbose=parsed_args.verbose)
        sys.exit(run(args=parsed_args))
    except Exception as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
