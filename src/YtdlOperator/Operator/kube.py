# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Operator.kube",
#   "purpose": "Cluster access layer over the Kubernetes API for custom and core objects",
#   "sections": [
#     {
#       "id": "cluster",
#       "name": "Cluster",
#       "anchor": "class-cluster",
#       "kind": "class"
#     },
#     {
#       "id": "kubernetescluster",
#       "name": "KubernetesCluster",
#       "anchor": "class-kubernetescluster",
#       "kind": "class"
#     },
#     {
#       "id": "label-selector",
#       "name": "label_selector",
#       "anchor": "function-label-selector",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""
Cluster access layer.

Reconcilers, the garbage-collection pass and the worker entrypoints talk to
Kubernetes through the small ``Cluster`` protocol: objects are plain
dictionaries in their wire (camelCase) shape, keyed by ``kind``. Custom kinds
go through ``CustomObjectsApi``; ``Pod``, ``ConfigMap`` and ``Secret`` go
through ``CoreV1Api``.

**Error mapping:**

- 404 on read/delete → ``None`` / ``False``
- 409 on create → ``AlreadyExistsError``; on update → ``ConflictError``
- 429/5xx and dropped connections → retried with the CLUSTER_API tenacity
  policy, then ``TransientClusterError``
- anything else → ``ClusterError``

Tests substitute an in-memory implementation of the same protocol.
"""

from __future__ import annotations

import base64
import logging
import threading
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Protocol, Tuple

from kubernetes import client, config, watch
from kubernetes.client.exceptions import ApiException

from ..errors import (
    AlreadyExistsError,
    ClusterError,
    ConflictError,
    OperationType,
    TransientClusterError,
    create_contextual_retry_policy,
    is_transient_api_error,
)
from ..types import API_GROUP, API_VERSION, RESOURCE_TYPES

__all__ = ["Cluster", "KubernetesCluster", "label_selector", "CORE_KINDS"]

logger = logging.getLogger(__name__)

CORE_KINDS = ("Pod", "ConfigMap", "Secret")

_CORE_SUFFIX = {"Pod": "pod", "ConfigMap": "config_map", "Secret": "secret"}


def label_selector(labels: Optional[Mapping[str, str]]) -> Optional[str]:
    """Render ``{"a": "b"}`` as the ``a=b`` selector string the API expects."""
    if not labels:
        return None
    return ",".join(f"{key}={value}" for key, value in sorted(labels.items()))


class Cluster(Protocol):
    """Operations the operator needs from the cluster."""

    def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]: ...

    def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]: ...

    def create(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]: ...

    def patch_status(
        self, kind: str, namespace: str, name: str, status: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]: ...

    def patch_metadata(
        self, kind: str, namespace: str, name: str, metadata: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]: ...

    def delete(self, kind: str, namespace: str, name: str) -> bool: ...

    def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]: ...

    def read_log(
        self, namespace: str, pod: str, container: Optional[str] = None, tail_lines: int = 20
    ) -> str: ...

    def watch(
        self, kind: str, namespace: Optional[str], stop: threading.Event
    ) -> Iterator[Tuple[str, Dict[str, Any]]]: ...


class KubernetesCluster:
    """``Cluster`` backed by the official ``kubernetes`` client.

    Example:
        >>> cluster = KubernetesCluster.from_environment()  # doctest: +SKIP
        >>> cluster.get("Download", "default", "my-playlist")  # doctest: +SKIP
    """

    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        *,
        watch_timeout_s: int = 300,
    ) -> None:
        self._api_client = api_client or client.ApiClient()
        self._custom = client.CustomObjectsApi(self._api_client)
        self._core = client.CoreV1Api(self._api_client)
        self._watch_timeout_s = watch_timeout_s

    @classmethod
    def from_environment(cls, **kwargs: Any) -> "KubernetesCluster":
        """Load in-cluster credentials, falling back to the local kubeconfig."""
        try:
            config.load_incluster_config()
        except config.ConfigException:
            config.load_kube_config()
        return cls(**kwargs)

    # ------------------------------------------------------------------ helpers

    def _call(self, fn: Callable[..., Any], *args: Any, missing_ok: bool = False, **kwargs: Any):
        policy = create_contextual_retry_policy(OperationType.CLUSTER_API)
        try:
            for attempt in policy:
                with attempt:
                    return fn(*args, **kwargs)
        except ApiException as exc:
            if exc.status == 404 and missing_ok:
                return None
            raise self._map_error(exc, fn) from exc
        except Exception as exc:
            if is_transient_api_error(exc):
                raise TransientClusterError(f"{fn.__name__}: {exc}") from exc
            raise

    @staticmethod
    def _map_error(exc: ApiException, fn: Callable[..., Any]) -> ClusterError:
        message = f"{fn.__name__} failed: {exc.status} {exc.reason}"
        if exc.status == 409:
            if fn.__name__.startswith("create_"):
                return AlreadyExistsError(message, status=409)
            return ConflictError(message, status=409)
        if is_transient_api_error(exc):
            return TransientClusterError(message, status=exc.status)
        return ClusterError(message, status=exc.status)

    def _plural(self, kind: str) -> str:
        try:
            return RESOURCE_TYPES[kind].plural
        except KeyError:
            raise ClusterError(f"unknown kind {kind!r}") from None

    def _core_fn(self, verb: str, kind: str, scope: str = "namespaced") -> Callable[..., Any]:
        return getattr(self._core, f"{verb}_{scope}_{_CORE_SUFFIX[kind]}")

    def _serialize(self, obj: Any) -> Dict[str, Any]:
        if isinstance(obj, dict):
            return obj
        return self._api_client.sanitize_for_serialization(obj)

    # --------------------------------------------------------------- protocol

    def get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        if kind in CORE_KINDS:
            obj = self._call(self._core_fn("read", kind), name, namespace, missing_ok=True)
        else:
            obj = self._call(
                self._custom.get_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                namespace,
                self._plural(kind),
                name,
                missing_ok=True,
            )
        return None if obj is None else self._serialize(obj)

    def list(
        self,
        kind: str,
        namespace: Optional[str] = None,
        labels: Optional[Mapping[str, str]] = None,
    ) -> List[Dict[str, Any]]:
        selector = label_selector(labels)
        if kind in CORE_KINDS:
            if namespace:
                result = self._call(
                    self._core_fn("list", kind), namespace, label_selector=selector
                )
            else:
                result = self._call(
                    getattr(self._core, f"list_{_CORE_SUFFIX[kind]}_for_all_namespaces"),
                    label_selector=selector,
                )
            return [self._serialize(item) for item in result.items]
        if namespace:
            result = self._call(
                self._custom.list_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                namespace,
                self._plural(kind),
                label_selector=selector,
            )
        else:
            result = self._call(
                self._custom.list_cluster_custom_object,
                API_GROUP,
                API_VERSION,
                self._plural(kind),
                label_selector=selector,
            )
        return list(result.get("items", []))

    def create(self, kind: str, namespace: str, body: Dict[str, Any]) -> Dict[str, Any]:
        if kind in CORE_KINDS:
            obj = self._call(self._core_fn("create", kind), namespace, body)
        else:
            obj = self._call(
                self._custom.create_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                namespace,
                self._plural(kind),
                body,
            )
        logger.debug(f"Created {kind} {namespace}/{body.get('metadata', {}).get('name')}")
        return self._serialize(obj)

    def patch_status(
        self, kind: str, namespace: str, name: str, status: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        obj = self._call(
            self._custom.patch_namespaced_custom_object_status,
            API_GROUP,
            API_VERSION,
            namespace,
            self._plural(kind),
            name,
            {"status": status},
            missing_ok=True,
        )
        return obj

    def patch_metadata(
        self, kind: str, namespace: str, name: str, metadata: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        body = {"metadata": metadata}
        if kind in CORE_KINDS:
            obj = self._call(self._core_fn("patch", kind), name, namespace, body, missing_ok=True)
        else:
            obj = self._call(
                self._custom.patch_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                namespace,
                self._plural(kind),
                name,
                body,
                missing_ok=True,
            )
        return None if obj is None else self._serialize(obj)

    def delete(self, kind: str, namespace: str, name: str) -> bool:
        if kind in CORE_KINDS:
            result = self._call(
                self._core_fn("delete", kind),
                name,
                namespace,
                propagation_policy="Background",
                missing_ok=True,
            )
        else:
            result = self._call(
                self._custom.delete_namespaced_custom_object,
                API_GROUP,
                API_VERSION,
                namespace,
                self._plural(kind),
                name,
                propagation_policy="Background",
                missing_ok=True,
            )
        return result is not None

    def read_secret(self, namespace: str, name: str) -> Optional[Dict[str, str]]:
        secret = self._call(self._core.read_namespaced_secret, name, namespace, missing_ok=True)
        if secret is None:
            return None
        data = secret.data or {}
        return {key: base64.b64decode(value).decode("utf-8") for key, value in data.items()}

    def read_log(
        self, namespace: str, pod: str, container: Optional[str] = None, tail_lines: int = 20
    ) -> str:
        text = self._call(
            self._core.read_namespaced_pod_log,
            pod,
            namespace,
            container=container,
            tail_lines=tail_lines,
            missing_ok=True,
        )
        return text or ""

    def watch(
        self, kind: str, namespace: Optional[str], stop: threading.Event
    ) -> Iterator[Tuple[str, Dict[str, Any]]]:
        """Stream ``(event_type, object)`` pairs until the server closes the watch or ``stop`` is set."""
        if kind in CORE_KINDS:
            if namespace:
                fn, args = self._core_fn("list", kind), (namespace,)
            else:
                fn, args = getattr(self._core, f"list_{_CORE_SUFFIX[kind]}_for_all_namespaces"), ()
        elif namespace:
            fn = self._custom.list_namespaced_custom_object
            args = (API_GROUP, API_VERSION, namespace, self._plural(kind))
        else:
            fn = self._custom.list_cluster_custom_object
            args = (API_GROUP, API_VERSION, self._plural(kind))

        stream = watch.Watch()
        try:
            for event in stream.stream(fn, *args, timeout_seconds=self._watch_timeout_s):
                if stop.is_set():
                    break
                yield event["type"], self._serialize(event["object"])
        finally:
            stream.stop()
