from __future__ import annotations

from typing import Any

OWNER_KEY = "olm.owner"
OWNER_NAMESPACE_KEY = "olm.owner.namespace"
OWNER_KIND_KEY = "olm.owner.kind"
OWNER_LABEL_KEYS: tuple[str, ...] = (OWNER_KEY, OWNER_NAMESPACE_KEY, OWNER_KIND_KEY)

COMPONENT_LABEL_KEY_PREFIX = "operators.coreos.com/"

OLM_GROUP_VERSIONS: frozenset[str] = frozenset(
    {
        "operators.coreos.com/v1",
        "operators.coreos.com/v1alpha1",
        "operators.coreos.com/v1alpha2",
    }
)


def object_labels(obj: Any) -> dict[str, str]:
    """Return the label map of a Kubernetes object, or an empty dict."""
    metadata = getattr(obj, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, dict):
        return {}
    return labels


def has_olm_owner_ref(obj: Any) -> bool:
    """Return True if *obj* is owned by an object in the OLM API groups.

    Classical ownerReferences are checked first.  Cluster-scoped resources
    cannot point at a namespaced owner, so OLM records ownership on them with
    the ``olm.owner*`` labels instead; all three must be present, their values
    are not inspected.
    """
    metadata = getattr(obj, "metadata", None)
    for ref in getattr(metadata, "owner_references", None) or []:
        if getattr(ref, "api_version", None) in OLM_GROUP_VERSIONS:
            return True

    labels = object_labels(obj)
    return all(key in labels for key in OWNER_LABEL_KEYS)


def has_olm_label(obj: Any) -> bool:
    """Return True if any label key carries the OLM component prefix."""
    return any(key.startswith(COMPONENT_LABEL_KEY_PREFIX) for key in object_labels(obj))
