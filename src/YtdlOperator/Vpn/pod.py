# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Vpn.pod",
#   "purpose": "Masked worker pod manifest: IP probe init container, VPN sidecar, readiness watcher",
#   "sections": [
#     {
#       "id": "vpn-sidecar",
#       "name": "vpn_sidecar",
#       "anchor": "function-vpn-sidecar",
#       "kind": "function"
#     },
#     {
#       "id": "masked-pod",
#       "name": "masked_pod",
#       "anchor": "function-masked-pod",
#       "kind": "function"
#     }
#   ]
# }
# === /NAVMAP ===

"""Masked pod template.

Every container in a pod shares one network namespace, so a VPN connected in
a sidecar masks the worker as well. The template wires four pieces together
through an in-memory ``shared`` volume:

- ``init`` records the unmasked public IP in ``<shared>/ip`` before anything
  else runs.
- ``vpn`` is the stock VPN client image (gluetun by default) holding
  ``NET_ADMIN`` and reading its login from the credentials secret.
- ``vpn-ready`` runs ``ytdl-vpn run`` from the worker image: it waits until the
  public IP differs from ``<shared>/ip`` and only then writes
  ``<shared>/ready``. An unchanged IP makes it exit non-zero.
- the worker container blocks on ``<shared>/ready`` before fetching anything.

With the VPN disabled the pod carries only the worker container.
"""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

from ..Operator.config.models import ExecutorPodConfig, VpnConfig
from ..types.common import LABEL_APP

__all__ = [
    "SHARED_VOLUME_NAME",
    "WORKER_CONTAINER_NAME",
    "init_container",
    "vpn_sidecar",
    "readiness_container",
    "masked_pod",
]

SHARED_VOLUME_NAME = "shared"
WORKER_CONTAINER_NAME = "executor"
VPN_CONTAINER_NAME = "vpn"


def _shared_mount(vpn: VpnConfig) -> Dict[str, Any]:
    return {"name": SHARED_VOLUME_NAME, "mountPath": vpn.shared_path}


def _secret_env(name: str, secret: str, key: str) -> Dict[str, Any]:
    return {"name": name, "valueFrom": {"secretKeyRef": {"name": secret, "key": key}}}


def vpn_env(vpn: VpnConfig) -> List[Dict[str, Any]]:
    """Environment that points ``ytdl-vpn``/``ytdl-executor`` at the shared volume."""
    return [
        {"name": "YTDL_VPN__ENABLED", "value": "true" if vpn.enabled else "false"},
        {"name": "YTDL_VPN__SHARED_PATH", "value": vpn.shared_path},
        {"name": "YTDL_VPN__IP_SERVICE", "value": vpn.ip_service},
        {"name": "YTDL_VPN__READY_TIMEOUT_S", "value": str(vpn.ready_timeout_s)},
    ]


def init_container(vpn: VpnConfig) -> Dict[str, Any]:
    return {
        "name": "init",
        "image": vpn.init_image,
        "imagePullPolicy": "IfNotPresent",
        "command": ["curl", "-o", vpn.ip_path, "-s", vpn.ip_service],
        "volumeMounts": [_shared_mount(vpn)],
    }


def vpn_sidecar(vpn: VpnConfig) -> Dict[str, Any]:
    """The VPN client container; its connection masks every container in the pod."""
    return {
        "name": VPN_CONTAINER_NAME,
        "image": vpn.image,
        "imagePullPolicy": "IfNotPresent",
        "securityContext": {"capabilities": {"add": ["NET_ADMIN"]}},
        "env": [
            {"name": "VPN_SERVICE_PROVIDER", "value": vpn.provider},
            {"name": "IP_SERVICE", "value": vpn.ip_service},
            _secret_env("OPENVPN_USER", vpn.credentials_secret, "username"),
            _secret_env("OPENVPN_PASSWORD", vpn.credentials_secret, "password"),
        ],
        "volumeMounts": [_shared_mount(vpn)],
    }


def readiness_container(vpn: VpnConfig, image: str, pull_policy: str) -> Dict[str, Any]:
    return {
        "name": "vpn-ready",
        "image": image,
        "imagePullPolicy": pull_policy,
        "command": ["ytdl-vpn", "run"],
        "env": vpn_env(vpn),
        "volumeMounts": [_shared_mount(vpn)],
    }


def masked_pod(
    *,
    name: str,
    namespace: str,
    worker: Mapping[str, Any],
    executor: ExecutorPodConfig,
    vpn: VpnConfig,
    image: Optional[str] = None,
    labels: Optional[Mapping[str, str]] = None,
    owner_references: Optional[List[Dict[str, Any]]] = None,
) -> Dict[str, Any]:
    """Build the pod manifest wrapping ``worker`` with the VPN machinery.

    Args:
        name: Pod name, equal to the owning Executor's name
        namespace: Pod namespace
        worker: Container spec (``command``/``env``) for the worker; name,
            image and mounts are filled in here
        executor: Pod template settings
        vpn: VPN settings
        image: Worker image override from the Executor spec
        labels: Extra labels merged over ``app=ytdl``
        owner_references: Owner references, normally the Executor

    Returns:
        Pod manifest as a plain dict ready for the API server.
    """
    worker_image = image or executor.image
    container: Dict[str, Any] = {
        "name": WORKER_CONTAINER_NAME,
        "image": worker_image,
        "imagePullPolicy": executor.image_pull_policy,
        **dict(worker),
    }
    container["env"] = [*worker.get("env", []), *vpn_env(vpn)]

    spec: Dict[str, Any] = {"restartPolicy": executor.restart_policy}
    if executor.service_account_name:
        spec["serviceAccountName"] = executor.service_account_name

    if vpn.enabled:
        container["volumeMounts"] = [*worker.get("volumeMounts", []), _shared_mount(vpn)]
        spec["initContainers"] = [init_container(vpn)]
        # The VPN client is listed first so kubelet starts it first.
        spec["containers"] = [
            vpn_sidecar(vpn),
            readiness_container(vpn, worker_image, executor.image_pull_policy),
            container,
        ]
        spec["volumes"] = [{"name": SHARED_VOLUME_NAME, "emptyDir": {"medium": "Memory"}}]
    else:
        spec["containers"] = [container]

    metadata: Dict[str, Any] = {
        "name": name,
        "namespace": namespace,
        "labels": {LABEL_APP: "ytdl", **dict(labels or {})},
    }
    if owner_references:
        metadata["ownerReferences"] = list(owner_references)
    return {"apiVersion": "v1", "kind": "Pod", "metadata": metadata, "spec": spec}
