from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiextensionsV1Api,
    AppsV1Api,
    CoreV1Api,
    RbacAuthorizationV1Api,
    V1ClusterRole,
    V1ClusterRoleBinding,
    V1ConfigMap,
    V1CustomResourceDefinition,
    V1Deployment,
    V1Role,
    V1RoleBinding,
    V1Secret,
    V1Service,
    V1ServiceAccount,
)
from kubernetes.config.config_exception import ConfigException

from labeller.src.labelling import ApplyLabelWriter, LabelWriter, PatchLabelWriter
from labeller.src.ownership import has_olm_label, has_olm_owner_ref

LOGGER = logging.getLogger(__name__)

APPLY_PATCH_CONTENT_TYPE = "application/apply-patch+yaml"


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


@dataclass(frozen=True)
class KubeClients:
    core: CoreV1Api
    apps: AppsV1Api
    rbac: RbacAuthorizationV1Api
    apiextensions: ApiextensionsV1Api


def build_clients() -> KubeClients:
    """Return the typed API clients for every labelled kind using the active kube configuration."""
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        rbac=client.RbacAuthorizationV1Api(),
        apiextensions=client.ApiextensionsV1Api(),
    )


def apply_config_for(api_version: str, kind: str) -> Callable[[str, str], dict[str, Any]]:
    """Return a builder for minimal server-side apply bodies of one kind."""

    def build(name: str, namespace: str) -> dict[str, Any]:
        metadata: dict[str, Any] = {"name": name}
        if namespace:
            metadata["namespace"] = namespace
        return {"apiVersion": api_version, "kind": kind, "metadata": metadata}

    return build


def namespaced_apply(patch_fn: Callable[..., Any]) -> Callable[[str, dict[str, Any], str], Any]:
    """Adapt a ``patch_namespaced_*`` client method to a server-side apply call.

    The body stays a dict. The client encodes it as JSON, which the API server
    accepts under the apply-patch YAML content type.
    """

    def apply(namespace: str, body: dict[str, Any], field_manager: str) -> Any:
        return patch_fn(
            name=body["metadata"]["name"],
            namespace=namespace,
            body=body,
            field_manager=field_manager,
            _content_type=APPLY_PATCH_CONTENT_TYPE,
        )

    return apply


def cluster_apply(patch_fn: Callable[..., Any]) -> Callable[[str, dict[str, Any], str], Any]:
    """Adapt a cluster-scoped ``patch_*`` client method to a server-side apply call."""

    def apply(namespace: str, body: dict[str, Any], field_manager: str) -> Any:
        return patch_fn(
            name=body["metadata"]["name"],
            body=body,
            field_manager=field_manager,
            _content_type=APPLY_PATCH_CONTENT_TYPE,
        )

    return apply


def merge_patch(patch_fn: Callable[..., Any]) -> Callable[[str, dict[str, Any], str, str], Any]:
    """Adapt a cluster-scoped ``patch_*`` client method to an explicit content-type patch."""

    def submit(name: str, body: dict[str, Any], content_type: str, field_manager: str) -> Any:
        return patch_fn(
            name=name,
            body=body,
            field_manager=field_manager,
            _content_type=content_type,
        )

    return submit


def owned_or_component_labelled(obj: Any) -> bool:
    return has_olm_owner_ref(obj) or has_olm_label(obj)


@dataclass(frozen=True)
class ResourceKind:
    """Everything needed to list, watch and label one resource kind."""

    name: str
    model: type
    list_fn: Callable[..., Any]
    eligible: Callable[[Any], bool]
    writer: LabelWriter


def _applied_kind(
    name: str,
    api_version: str,
    kind: str,
    model: type,
    list_fn: Callable[..., Any],
    apply: Callable[[str, dict[str, Any], str], Any],
    eligible: Callable[[Any], bool] = has_olm_owner_ref,
) -> ResourceKind:
    return ResourceKind(
        name=name,
        model=model,
        list_fn=list_fn,
        eligible=eligible,
        writer=ApplyLabelWriter(
            apply_config_for=apply_config_for(api_version, kind),
            apply=apply,
        ),
    )


def build_resource_kinds(clients: KubeClients) -> dict[str, ResourceKind]:
    """Return every kind the labeller knows how to handle, keyed by plural name.

    Namespaced kinds are listed and watched across all namespaces.
    CustomResourceDefinitions go through a merge patch because the client has
    no apply configuration for them.
    """
    core, apps, rbac = clients.core, clients.apps, clients.rbac
    extensions = clients.apiextensions

    kinds = [
        _applied_kind(
            "deployments",
            "apps/v1",
            "Deployment",
            V1Deployment,
            apps.list_deployment_for_all_namespaces,
            namespaced_apply(apps.patch_namespaced_deployment),
        ),
        _applied_kind(
            "services",
            "v1",
            "Service",
            V1Service,
            core.list_service_for_all_namespaces,
            namespaced_apply(core.patch_namespaced_service),
        ),
        _applied_kind(
            "serviceaccounts",
            "v1",
            "ServiceAccount",
            V1ServiceAccount,
            core.list_service_account_for_all_namespaces,
            namespaced_apply(core.patch_namespaced_service_account),
        ),
        _applied_kind(
            "secrets",
            "v1",
            "Secret",
            V1Secret,
            core.list_secret_for_all_namespaces,
            namespaced_apply(core.patch_namespaced_secret),
        ),
        _applied_kind(
            "configmaps",
            "v1",
            "ConfigMap",
            V1ConfigMap,
            core.list_config_map_for_all_namespaces,
            namespaced_apply(core.patch_namespaced_config_map),
        ),
        _applied_kind(
            "roles",
            "rbac.authorization.k8s.io/v1",
            "Role",
            V1Role,
            rbac.list_role_for_all_namespaces,
            namespaced_apply(rbac.patch_namespaced_role),
        ),
        _applied_kind(
            "rolebindings",
            "rbac.authorization.k8s.io/v1",
            "RoleBinding",
            V1RoleBinding,
            rbac.list_role_binding_for_all_namespaces,
            namespaced_apply(rbac.patch_namespaced_role_binding),
        ),
        _applied_kind(
            "clusterroles",
            "rbac.authorization.k8s.io/v1",
            "ClusterRole",
            V1ClusterRole,
            rbac.list_cluster_role,
            cluster_apply(rbac.patch_cluster_role),
            eligible=owned_or_component_labelled,
        ),
        _applied_kind(
            "clusterrolebindings",
            "rbac.authorization.k8s.io/v1",
            "ClusterRoleBinding",
            V1ClusterRoleBinding,
            rbac.list_cluster_role_binding,
            cluster_apply(rbac.patch_cluster_role_binding),
            eligible=owned_or_component_labelled,
        ),
        ResourceKind(
            name="customresourcedefinitions",
            model=V1CustomResourceDefinition,
            list_fn=extensions.list_custom_resource_definition,
            eligible=owned_or_component_labelled,
            writer=PatchLabelWriter(
                patch=merge_patch(extensions.patch_custom_resource_definition),
                serialize=extensions.api_client.sanitize_for_serialization,
            ),
        ),
    ]
    return {kind.name: kind for kind in kinds}


KNOWN_KINDS: tuple[str, ...] = (
    "deployments",
    "services",
    "serviceaccounts",
    "secrets",
    "configmaps",
    "roles",
    "rolebindings",
    "clusterroles",
    "clusterrolebindings",
    "customresourcedefinitions",
)
