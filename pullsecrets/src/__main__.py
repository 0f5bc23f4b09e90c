from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading

from kubernetes.client import CoreV1Api

from pullsecrets.src.config import ConfigError, ControllerConfig, load_config
from pullsecrets.src.controller import CacheSyncError, Controller
from pullsecrets.src.events import EventTranslator, key_for_object, namespace_key_for_object
from pullsecrets.src.handlers import NamespaceSync, ServiceAccountSync
from pullsecrets.src.health import start_health_server
from pullsecrets.src.informer import Informer
from pullsecrets.src.kube import build_core_api, build_informers, load_kube_configuration
from pullsecrets.src.metrics import METRICS
from pullsecrets.src.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

RUNTIME_VERSION = "0.1.0"
INFORMER_STOP_TIMEOUT_SECONDS = 5
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
    # Docker config.json credentials, e.g. {"auth": "dXNlcjpwYXNz"}.
    (
        re.compile(r'(?i)("(?:auth|password|identitytoken|registrytoken)"\s*:\s*")([^"]*)'),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    log_handler = logging.StreamHandler()
    log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="pullsecrets-controller",
        description="Controllers that keep registry credentials configured across the cluster.",
    )
    parser.add_argument("--apiserver", default="", help="URL to the Kubernetes API server")
    parser.add_argument("--kubeconfig", default="", help="Path to the kubeconfig file")
    subcommands = parser.add_subparsers(dest="command")
    subcommands.add_parser(
        "image-pull-secrets",
        help="Configure image pull secrets for every namespace and service account",
    )
    args = parser.parse_args(argv)
    if args.command is None:
        args.command = "image-pull-secrets"
    return args


def build_controllers(
    core_api: CoreV1Api,
    cfg: ControllerConfig,
    namespaces: Informer,
    service_accounts: Informer,
    secrets: Informer,
) -> tuple[Controller, Controller]:
    """Build the service account and namespace controllers, each with its own queue."""

    def _queue(name: str) -> RateLimitingQueue:
        return RateLimitingQueue(
            name,
            rate_limiter=ItemExponentialFailureRateLimiter(
                base_delay_seconds=cfg.backoff_base_seconds,
                max_delay_seconds=cfg.backoff_max_seconds,
            ),
        )

    service_account_controller = Controller(
        "serviceaccounts",
        queue=_queue("serviceaccounts"),
        sync_handler=ServiceAccountSync(
            core_api=core_api,
            lister=service_accounts,
            secret_name=cfg.secret_name,
        ),
        key_func=key_for_object,
        max_retries=cfg.max_retries,
    )
    namespace_controller = Controller(
        "namespaces",
        queue=_queue("namespaces"),
        sync_handler=NamespaceSync(
            core_api=core_api,
            namespace_lister=namespaces,
            secret_lister=secrets,
            secret_name=cfg.secret_name,
            payload=cfg.payload,
        ),
        key_func=namespace_key_for_object,
        max_retries=cfg.max_retries,
    )
    return service_account_controller, namespace_controller


def register_event_handlers(
    service_account_controller: Controller,
    namespace_controller: Controller,
    namespaces: Informer,
    service_accounts: Informer,
    secrets: Informer,
) -> None:
    """Route cache notifications to the controllers.

    Secret updates and deletes re-check the owning namespace so a removed or
    edited credential is restored.
    """
    service_accounts.subscribe(
        EventTranslator(service_account_controller.handle_object, on_deleted=False)
    )
    namespaces.subscribe(EventTranslator(namespace_controller.handle_object, on_deleted=False))
    secrets.subscribe(EventTranslator(namespace_controller.handle_object, on_added=False))


def run_image_pull_secrets(args: argparse.Namespace) -> int:
    logger = logging.getLogger(__name__)
    try:
        cfg = load_config()
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    try:
        load_kube_configuration(apiserver=args.apiserver, kubeconfig=args.kubeconfig)
        core_api = build_core_api()
    except Exception:
        logger.exception("Error building Kubernetes client")
        return 1

    namespaces, service_accounts, secrets = build_informers(
        core_api, resync_period_seconds=cfg.resync_period_seconds
    )
    informers = (namespaces, service_accounts, secrets)
    controllers = build_controllers(core_api, cfg, namespaces, service_accounts, secrets)
    register_event_handlers(*controllers, *informers)

    health_server = start_health_server(
        ready={controller.name: controller.ready for controller in controllers},
        port=cfg.health_port,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    for informer in informers:
        informer.start()

    failed = threading.Event()

    def _run_controller(controller: Controller) -> None:
        try:
            controller.run(
                workers=cfg.workers,
                stop_event=shutdown_event,
                cache_synced=[informer.has_synced for informer in informers],
                sync_timeout_seconds=cfg.cache_sync_timeout_seconds,
            )
        except CacheSyncError:
            logger.critical("%s: informer caches did not sync; aborting", controller.name)
            failed.set()
            shutdown_event.set()
        except Exception:
            logger.exception("%s: controller crashed", controller.name)
            failed.set()
            shutdown_event.set()

    controller_threads = [
        threading.Thread(target=_run_controller, args=(controller,), name=controller.name)
        for controller in controllers
    ]
    for thread in controller_threads:
        thread.start()
    # Short joins keep the main thread responsive to signals.
    for thread in controller_threads:
        while thread.is_alive():
            thread.join(timeout=1)

    for informer in informers:
        informer.stop(join_timeout_seconds=INFORMER_STOP_TIMEOUT_SECONDS)
    health_server.shutdown()
    logger.info("Controllers stopped")
    return 1 if failed.is_set() else 0


def main(argv: list[str] | None = None) -> int:
    """Controller entrypoint: configure logging, build the caches and run both controllers."""
    args = parse_args(argv)
    configure_logging()
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )
    return run_image_pull_secrets(args)


if __name__ == "__main__":
    sys.exit(main())
