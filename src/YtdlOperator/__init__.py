"""Kubernetes operator that downloads media with yt-dlp behind a VPN.

Subpackages:

- ``types``: resource models, phases and naming rules
- ``Operator``: the controller processes (reconcilers, admission, orchestration)
- ``Executor``: worker entrypoints running inside masked pods
- ``Storage``: credential verification and artifact fan-out to storage backends
- ``Vpn``: masked pod template, readiness gate and readiness sidecar
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
