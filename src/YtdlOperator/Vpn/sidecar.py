# === NAVMAP v1 ===
# {
#   "module": "YtdlOperator.Vpn.sidecar",
#   "purpose": "VPN readiness sidecar: capture pre-connect IP, connect, confirm masking, signal ready",
#   "sections": [
#     {
#       "id": "publicipclient",
#       "name": "PublicIpClient",
#       "anchor": "class-publicipclient",
#       "kind": "class"
#     },
#     {
#       "id": "vpnsidecar",
#       "name": "VpnSidecar",
#       "anchor": "class-vpnsidecar",
#       "kind": "class"
#     }
#   ]
# }
# === /NAVMAP ===

"""VPN readiness sidecar.

The sidecar publishes the readiness file only once the pod's public IP has
provably changed:

1. Read the pre-connect IP recorded by the init container (or fetch and record
   it when the file is missing).
2. Run ``connect_command`` and ``killswitch_command`` when configured. With no
   connect command the VPN is managed by another container in the pod.
3. Poll the IP echo service until it reports a different address. An address
   that is still unchanged when the wait ends is a configuration error:
   ``VpnMaskingError`` is raised and nothing is written.
4. Write ``<shared>/ready`` atomically.

When the sidecar owns the connection, a single post-connect check decides: the
connect command has returned, so an unchanged IP will not fix itself.
"""

from __future__ import annotations

import logging
import os
import subprocess
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import httpx

from ..errors import VpnMaskingError, VpnNotReadyError
from ..Operator.config.models import VpnConfig

__all__ = ["PublicIpClient", "VpnSidecar"]

logger = logging.getLogger(__name__)


class PublicIpClient:
    """Asks an echo service (``https://api.ipify.org`` style) for the public IP."""

    def __init__(self, url: str, client: Optional[httpx.Client] = None, timeout: float = 10.0) -> None:
        self.url = url
        self._client = client or httpx.Client(timeout=timeout)

    def current(self) -> str:
        response = self._client.get(self.url)
        response.raise_for_status()
        address = response.text.strip()
        if not address:
            raise VpnNotReadyError(f"IP service {self.url} returned an empty body")
        return address

    def close(self) -> None:
        self._client.close()


class VpnSidecar:
    def __init__(
        self,
        config: VpnConfig,
        ip_client: Optional[PublicIpClient] = None,
        *,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.ip = ip_client or PublicIpClient(config.ip_service)
        self._runner = runner
        self._clock = clock
        self._sleep = sleep

    @property
    def manages_connection(self) -> bool:
        return bool(self.config.connect_command)

    def pre_connect_ip(self) -> str:
        """Return the unmasked IP, recording it in the shared volume if absent."""
        path = Path(self.config.ip_path)
        if path.is_file():
            recorded = path.read_text(encoding="utf-8").strip()
            if recorded:
                return recorded
        address = self.ip.current()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(address + "\n", encoding="utf-8")
        return address

    def _run(self, label: str, command: Sequence[str]) -> None:
        logger.info(f"Running VPN {label} command: {command[0]}")
        try:
            self._runner(list(command), check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip().splitlines()[-1:] or [""]
            raise VpnNotReadyError(
                f"VPN {label} command exited with {e.returncode}: {stderr[0]}",
                command=list(command),
            ) from e
        except OSError as e:
            raise VpnNotReadyError(f"VPN {label} command could not start: {e}") from e

    def connect(self) -> None:
        if self.config.connect_command:
            self._run("connect", self.config.connect_command)
        if self.config.killswitch_command:
            self._run("killswitch", self.config.killswitch_command)

    def _probe(self) -> Optional[str]:
        try:
            return self.ip.current()
        except httpx.HTTPError as e:
            # Egress is expected to drop while the tunnel comes up.
            logger.debug(f"Public IP lookup failed: {e}")
            return None

    def await_masked(self, pre_ip: str) -> str:
        """Wait for the public IP to differ from ``pre_ip`` and return it.

        Raises:
            VpnMaskingError: If the IP is still ``pre_ip`` when the wait ends.
            VpnNotReadyError: If the IP could never be determined.
        """
        deadline = self._clock() + self.config.ready_timeout_s
        last: Optional[str] = None
        while True:
            last = self._probe() or last
            if last is not None and last != pre_ip:
                return last
            if last == pre_ip and self.manages_connection:
                break
            if self._clock() >= deadline:
                break
            self._sleep(self.config.poll_interval_s)
        if last is None:
            raise VpnNotReadyError(
                f"public IP could not be determined within {self.config.ready_timeout_s:.0f}s"
            )
        raise VpnMaskingError(
            f"public IP {pre_ip} unchanged after connecting; refusing to signal readiness",
            ip=pre_ip,
        )

    def signal_ready(self, masked_ip: str) -> Path:
        path = Path(self.config.ready_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_text(masked_ip + "\n", encoding="utf-8")
        os.replace(tmp, path)
        return path

    def run(self) -> str:
        """Execute the full readiness sequence and return the masked IP."""
        pre_ip = self.pre_connect_ip()
        logger.info(f"Unmasked public IP is {pre_ip}")
        self.connect()
        masked = self.await_masked(pre_ip)
        self.signal_ready(masked)
        logger.info(f"VPN connected, public IP is now {masked}")
        return masked


def command_summary(commands: List[Sequence[str]]) -> str:
    return ", ".join(" ".join(command) for command in commands if command) or "external"
