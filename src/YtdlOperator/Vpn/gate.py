"""Worker-side VPN readiness gate.

The worker never issues a fetch request before the readiness file exists.
Waiting is bounded; running out of time is fatal for the pod.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Union

from ..errors import VpnNotReadyError

__all__ = ["is_ready", "wait_for_vpn"]

logger = logging.getLogger(__name__)


def is_ready(ready_path: Union[str, Path]) -> bool:
    return Path(ready_path).is_file()


def wait_for_vpn(
    ready_path: Union[str, Path],
    *,
    timeout: float = 120.0,
    poll_interval: float = 1.0,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> float:
    """Block until ``ready_path`` exists.

    Returns:
        Seconds spent waiting.

    Raises:
        VpnNotReadyError: If the file does not appear within ``timeout``.
    """
    path = Path(ready_path)
    started = clock()
    while not is_ready(path):
        elapsed = clock() - started
        if elapsed >= timeout:
            raise VpnNotReadyError(
                f"VPN readiness file {path} did not appear within {timeout:.0f}s",
                ready_path=str(path),
            )
        logger.debug(f"Waiting for VPN readiness file {path} ({elapsed:.0f}s)")
        sleep(poll_interval)
    waited = clock() - started
    logger.info(f"VPN ready after {waited:.1f}s")
    return waited
