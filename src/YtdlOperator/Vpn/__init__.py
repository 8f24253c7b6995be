"""VPN masking: pod template, worker-side readiness gate and the readiness sidecar."""

from __future__ import annotations

from .gate import is_ready, wait_for_vpn
from .pod import masked_pod
from .sidecar import PublicIpClient, VpnSidecar

__all__ = ["PublicIpClient", "VpnSidecar", "is_ready", "masked_pod", "wait_for_vpn"]
