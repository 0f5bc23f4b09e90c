from __future__ import annotations

import logging

from kubernetes import client, config
from kubernetes.client import CoreV1Api
from kubernetes.config.config_exception import ConfigException

from pullsecrets.src.informer import Informer

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(apiserver: str | None = None, kubeconfig: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* path always wins.  Otherwise in-cluster config is
    tried first (running inside a pod), falling back to the local kubeconfig
    for development.  A non-empty *apiserver* overrides the host from
    whichever configuration was loaded.
    """
    if kubeconfig:
        config.load_kube_config(config_file=kubeconfig)
        LOGGER.info("Loaded kubeconfig from %s", kubeconfig)
    else:
        try:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            LOGGER.info("Loaded local kubeconfig")

    if apiserver:
        configuration = client.Configuration.get_default_copy()
        configuration.host = apiserver
        client.Configuration.set_default(configuration)
        LOGGER.info("Using API server %s", apiserver)


def build_core_api() -> CoreV1Api:
    """Return a CoreV1 API client using the active kube configuration."""
    return client.CoreV1Api()


def build_informers(
    core_api: CoreV1Api, resync_period_seconds: float
) -> tuple[Informer, Informer, Informer]:
    """Return the namespace, service account and secret informers."""
    namespaces = Informer(
        "namespaces",
        core_api.list_namespace,
        resync_period_seconds=resync_period_seconds,
    )
    service_accounts = Informer(
        "serviceaccounts",
        core_api.list_service_account_for_all_namespaces,
        resync_period_seconds=resync_period_seconds,
    )
    secrets = Informer(
        "secrets",
        core_api.list_secret_for_all_namespaces,
        resync_period_seconds=resync_period_seconds,
    )
    return namespaces, service_accounts, secrets
