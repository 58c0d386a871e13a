from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

import json_merge_patch
from kubernetes.client import ApiClient

from labeller.src.metrics import METRICS
from labeller.src.ownership import object_labels

OLM_MANAGED_LABEL_KEY = "olm.managed"
OLM_MANAGED_LABEL_VALUE = "true"
FIELD_MANAGER = "olm-ownership-labeller"
MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"

# An empty label selector matches every object.
EVERYTHING = ""


class ObjectTypeError(TypeError):
    """Raised when a reconcile is dispatched with an object of the wrong model type."""


class LabelPatchError(RuntimeError):
    """Raised when the ownership label merge patch cannot be synthesized."""


class LabelWriter(Protocol):
    """Strategy that submits the ownership label mutation for one object."""

    action: str

    def write(self, obj: Any) -> Any: ...


class CompletionArbiter(Protocol):
    """Decides whether every tracked kind, not just the caller's, is fully labelled."""

    def all_complete(self) -> bool: ...


@dataclass(frozen=True)
class ReconcileResult:
    """Outcome of a single :meth:`ObjectLabeller.reconcile` call.

    ``termination_requested`` is only ever set when this kind was found fully
    labelled *and* the arbiter confirmed that every tracked kind is done.  The
    caller owns the actual process exit.
    """

    namespace: str
    name: str
    labelled: bool
    kind_complete: bool = False
    termination_requested: bool = False


def has_label(obj: Any) -> bool:
    """Return True if *obj* carries the exact ownership marker key and value."""
    return object_labels(obj).get(OLM_MANAGED_LABEL_KEY) == OLM_MANAGED_LABEL_VALUE


def object_identity(obj: Any) -> tuple[str, str]:
    """Return ``(namespace, name)`` with ``""`` for cluster-scoped objects."""
    metadata = getattr(obj, "metadata", None)
    return (
        getattr(metadata, "namespace", None) or "",
        getattr(metadata, "name", None) or "",
    )


class ApplyLabelWriter:
    """Label objects with server-side apply.

    ``apply_config_for(name, namespace)`` must return a minimal apply body
    (``apiVersion``, ``kind`` and identity metadata).  Only the marker label is
    added to it, so the field manager owns that single label and the API server
    leaves every other label in place.
    """

    action = "applying"

    def __init__(
        self,
        apply_config_for: Callable[[str, str], dict[str, Any]],
        apply: Callable[[str, dict[str, Any], str], Any],
        field_manager: str = FIELD_MANAGER,
    ) -> None:
        self.apply_config_for = apply_config_for
        self.apply = apply
        self.field_manager = field_manager

    def write(self, obj: Any) -> Any:
        namespace, name = object_identity(obj)
        body = self.apply_config_for(name, namespace)
        body.setdefault("metadata", {})["labels"] = {
            OLM_MANAGED_LABEL_KEY: OLM_MANAGED_LABEL_VALUE,
        }
        return self.apply(namespace, body, self.field_manager)


def create_merge_patch(original: str | bytes, modified: str | bytes) -> dict[str, Any]:
    """Return the RFC 7386 JSON merge patch turning *original* into *modified*.

    Both documents must be JSON objects.
    """
    try:
        source = json.loads(original)
        target = json.loads(modified)
    except json.JSONDecodeError as exc:
        raise ValueError(f"invalid JSON document: {exc}") from exc
    if not isinstance(source, dict) or not isinstance(target, dict):
        raise ValueError("merge patches can only be created between JSON objects")
    return json_merge_patch.create_patch(source, target)


class PatchLabelWriter:
    """Label objects with a JSON merge patch of their metadata.

    Used for CustomResourceDefinitions, which have no generated apply
    configuration.  ``uid`` and ``resourceVersion`` are stripped from the
    "before" snapshot only, so the patch carries them as preconditions and the
    API server rejects it if the object changed since it was observed.
    """

    action = "patching"

    def __init__(
        self,
        patch: Callable[[str, dict[str, Any], str, str], Any],
        serialize: Callable[[Any], Any] | None = None,
        field_manager: str = FIELD_MANAGER,
    ) -> None:
        self.patch = patch
        self.serialize = serialize or ApiClient().sanitize_for_serialization
        self.field_manager = field_manager

    def _snapshot(self, obj: Any, *, preconditions: bool, labelled: bool) -> str:
        metadata = dict(self.serialize(obj.metadata) or {})
        if not preconditions:
            metadata.pop("uid", None)
            metadata.pop("resourceVersion", None)
        if labelled:
            labels = dict(metadata.get("labels") or {})
            labels[OLM_MANAGED_LABEL_KEY] = OLM_MANAGED_LABEL_VALUE
            metadata["labels"] = labels
        return json.dumps({"metadata": metadata})

    def merge_patch_for(self, obj: Any) -> dict[str, Any]:
        """Return the merge patch that adds the ownership label to *obj*."""
        namespace, name = object_identity(obj)
        if getattr(obj, "metadata", None) is None:
            raise LabelPatchError(f"object {namespace}/{name} has no metadata")

        try:
            old_data = self._snapshot(obj, preconditions=False, labelled=False)
        except (TypeError, ValueError) as exc:
            raise LabelPatchError(
                f"failed to serialize old data for {namespace}/{name}: {exc}"
            ) from exc

        try:
            new_data = self._snapshot(obj, preconditions=True, labelled=True)
        except (TypeError, ValueError) as exc:
            raise LabelPatchError(
                f"failed to serialize new data for {namespace}/{name}: {exc}"
            ) from exc

        try:
            return create_merge_patch(old_data, new_data)
        except (TypeError, ValueError) as exc:
            raise LabelPatchError(f"failed to create patch for {namespace}/{name}: {exc}") from exc

    def write(self, obj: Any) -> Any:
        _, name = object_identity(obj)
        body = self.merge_patch_for(obj)
        return self.patch(name, body, MERGE_PATCH_CONTENT_TYPE, self.field_manager)


class ObjectLabeller:
    """Stamp the ``olm.managed=true`` label onto eligible objects of one kind.

    :meth:`reconcile` is called once per observed object event.  Eligible
    objects without the marker are handed to the writer strategy.  Every other
    object triggers a completion check: the full listing is re-read and, if no
    eligible object is missing the marker, the arbiter is asked whether every
    tracked kind is done.  A positive answer is reported back to the caller as
    ``termination_requested`` so the process can be restarted with narrower
    watches.

    Nothing is cached between calls; the decision is always recomputed from
    the object's current labels, which makes redelivery of the same event
    harmless.
    """

    def __init__(
        self,
        kind: str,
        expected_type: type,
        eligible: Callable[[Any], bool],
        list_all: Callable[[str], list[Any]],
        writer: LabelWriter,
        arbiter: CompletionArbiter,
        logger: logging.Logger | None = None,
    ) -> None:
        self.kind = kind
        self.expected_type = expected_type
        self.eligible = eligible
        self.list_all = list_all
        self.writer = writer
        self.arbiter = arbiter
        self.logger = logger or logging.getLogger(__name__)

    def needs_label(self, obj: Any) -> bool:
        return self.eligible(obj) and not has_label(obj)

    def is_kind_complete(self, items: list[Any]) -> bool:
        """Return True if no eligible object in *items* is missing the marker."""
        return not any(self.needs_label(item) for item in items)

    def _check_completion(self, namespace: str, name: str) -> ReconcileResult:
        try:
            items = self.list_all(EVERYTHING)
        except Exception:
            self.logger.warning(
                "Failed to list all %s to check for labelling completion",
                self.kind,
                exc_info=True,
            )
            METRICS.list_failures_total.labels(kind=self.kind).inc()
            return ReconcileResult(namespace=namespace, name=name, labelled=False)

        complete = self.is_kind_complete(items)
        METRICS.completion_checks_total.labels(
            kind=self.kind, complete=str(complete).lower()
        ).inc()
        if not complete:
            return ReconcileResult(namespace=namespace, name=name, labelled=False)

        all_complete = self.arbiter.all_complete()
        if all_complete:
            self.logger.info("Every eligible %s object is labelled and all kinds are done", self.kind)
        return ReconcileResult(
            namespace=namespace,
            name=name,
            labelled=False,
            kind_complete=True,
            termination_requested=all_complete,
        )

    def reconcile(self, obj: Any) -> ReconcileResult:
        if not isinstance(obj, self.expected_type):
            error = ObjectTypeError(
                f"wrong type {type(obj).__name__}, expected "
                f"{self.expected_type.__name__}: {obj!r}"
            )
            self.logger.error("Casting failed for %s event: %s", self.kind, error)
            raise error

        namespace, name = object_identity(obj)
        if not self.needs_label(obj):
            return self._check_completion(namespace, name)

        self.logger.info(
            "%s ownership label on %s %s/%s",
            self.writer.action.capitalize(),
            self.kind,
            namespace,
            name,
        )
        self.writer.write(obj)
        METRICS.labels_applied_total.labels(kind=self.kind).inc()
        return ReconcileResult(namespace=namespace, name=name, labelled=True)
