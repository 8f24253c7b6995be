"""Tests for VPN masking: readiness gate, sidecar and pod template.

Tests cover:
- The worker gate waiting for, and timing out on, the readiness file
- The sidecar refusing to signal readiness when the IP is unchanged
- Atomic readiness file once the IP changed
- Connect command failures
- Pod manifests with and without the VPN
"""

from __future__ import annotations

import subprocess
from typing import List

import httpx
import pytest

from YtdlOperator.errors import VpnMaskingError, VpnNotReadyError
from YtdlOperator.Operator.config.models import ExecutorPodConfig, VpnConfig
from YtdlOperator.Vpn.gate import wait_for_vpn
from YtdlOperator.Vpn.pod import masked_pod
from YtdlOperator.Vpn.sidecar import VpnSidecar


class Ticker:
    """Monotonic clock advanced by the fake ``sleep``."""

    def __init__(self) -> None:
        self.now = 0.0

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.now += seconds


class ScriptedIp:
    def __init__(self, answers: List[object]) -> None:
        self.answers = list(answers)
        self.calls = 0

    def current(self) -> str:
        self.calls += 1
        answer = self.answers.pop(0) if len(self.answers) > 1 else self.answers[0]
        if isinstance(answer, Exception):
            raise answer
        return answer

    def close(self) -> None:
        return None


def _vpn(tmp_path, **kwargs) -> VpnConfig:
    return VpnConfig(shared_path=str(tmp_path), ready_timeout_s=10.0, poll_interval_s=1.0, **kwargs)


def test_gate_returns_once_ready(tmp_path) -> None:
    """Test that the gate polls until the readiness file appears."""
    ready = tmp_path / "ready"
    ticker = Ticker()

    def sleep(seconds: float) -> None:
        ticker.sleep(seconds)
        if ticker.now >= 3:
            ready.write_text("10.8.0.1\n")

    waited = wait_for_vpn(ready, timeout=10, poll_interval=1, clock=ticker, sleep=sleep)
    assert waited == 3


def test_gate_times_out(tmp_path) -> None:
    """Test that a missing readiness file is fatal after the timeout."""
    ticker = Ticker()
    with pytest.raises(VpnNotReadyError, match="did not appear within 5s"):
        wait_for_vpn(tmp_path / "ready", timeout=5, poll_interval=1, clock=ticker, sleep=ticker.sleep)


def test_sidecar_signals_ready_after_ip_changes(tmp_path) -> None:
    """Test that the masked IP is written to the readiness file."""
    (tmp_path / "ip").write_text("1.2.3.4\n")
    ticker = Ticker()
    ip = ScriptedIp(["1.2.3.4", httpx.ConnectError("tunnel coming up"), "10.8.0.1"])
    sidecar = VpnSidecar(_vpn(tmp_path), ip, clock=ticker, sleep=ticker.sleep)

    assert sidecar.run() == "10.8.0.1"
    assert (tmp_path / "ready").read_text() == "10.8.0.1\n"
    assert not (tmp_path / "ready.tmp").exists()


def test_sidecar_records_missing_pre_connect_ip(tmp_path) -> None:
    """Test that the unmasked IP is fetched and recorded when the init file is absent."""
    sidecar = VpnSidecar(_vpn(tmp_path), ScriptedIp(["1.2.3.4"]))
    assert sidecar.pre_connect_ip() == "1.2.3.4"
    assert (tmp_path / "ip").read_text() == "1.2.3.4\n"


def test_sidecar_refuses_unchanged_ip(tmp_path) -> None:
    """Test that an IP that never changes raises and writes no readiness file."""
    (tmp_path / "ip").write_text("1.2.3.4\n")
    ticker = Ticker()
    sidecar = VpnSidecar(_vpn(tmp_path), ScriptedIp(["1.2.3.4"]), clock=ticker, sleep=ticker.sleep)

    with pytest.raises(VpnMaskingError, match="unchanged"):
        sidecar.run()
    assert not (tmp_path / "ready").exists()
    assert ticker.now >= 10


def test_sidecar_owned_connection_checks_once(tmp_path) -> None:
    """Test that after its own connect command one unchanged answer is decisive."""
    (tmp_path / "ip").write_text("1.2.3.4\n")
    ran: List[List[str]] = []
    ip = ScriptedIp(["1.2.3.4"])
    sidecar = VpnSidecar(
        _vpn(tmp_path, connect_command=["openvpn", "--daemon"], killswitch_command=["killswitch"]),
        ip,
        runner=lambda args, **kwargs: ran.append(args),
        sleep=lambda seconds: pytest.fail("should not poll"),
    )

    with pytest.raises(VpnMaskingError):
        sidecar.run()
    assert ran == [["openvpn", "--daemon"], ["killswitch"]]
    assert ip.calls == 1


def test_sidecar_connect_failure(tmp_path) -> None:
    """Test that a failing connect command surfaces its stderr."""

    def runner(args, **kwargs):
        raise subprocess.CalledProcessError(1, args, stderr="AUTH_FAILED\n")

    sidecar = VpnSidecar(_vpn(tmp_path, connect_command=["openvpn"]), ScriptedIp(["1.2.3.4"]), runner=runner)
    with pytest.raises(VpnNotReadyError, match="exited with 1: AUTH_FAILED"):
        sidecar.connect()


def _worker() -> dict:
    return {"command": ["ytdl-executor", "download"], "env": [{"name": "RESOURCE", "value": "{}"}]}


def test_masked_pod_with_vpn() -> None:
    """Test the containers, shared volume and env of a masked pod."""
    vpn = VpnConfig()
    pod = masked_pod(
        name="clip",
        namespace="media",
        worker=_worker(),
        executor=ExecutorPodConfig(service_account_name="ytdl-executor"),
        vpn=vpn,
        image="custom/executor:1",
        labels={"ytdl.beebs.dev/parent": "playlist"},
        owner_references=[{"kind": "Executor", "name": "clip"}],
    )

    spec = pod["spec"]
    assert [c["name"] for c in spec["initContainers"]] == ["init"]
    assert [c["name"] for c in spec["containers"]] == ["vpn", "vpn-ready", "executor"]
    assert spec["serviceAccountName"] == "ytdl-executor"
    assert spec["volumes"] == [{"name": "shared", "emptyDir": {"medium": "Memory"}}]
    vpn_container, ready, worker = spec["containers"]
    assert vpn_container["securityContext"]["capabilities"]["add"] == ["NET_ADMIN"]
    assert ready["image"] == worker["image"] == "custom/executor:1"
    assert ready["command"] == ["ytdl-vpn", "run"]
    env = {e["name"]: e.get("value") for e in worker["env"]}
    assert env["RESOURCE"] == "{}"
    assert env["YTDL_VPN__SHARED_PATH"] == "/shared"
    assert {"name": "shared", "mountPath": "/shared"} in worker["volumeMounts"]
    assert pod["metadata"]["labels"] == {"app": "ytdl", "ytdl.beebs.dev/parent": "playlist"}
    assert pod["metadata"]["ownerReferences"][0]["name"] == "clip"


def test_unmasked_pod_has_only_the_worker() -> None:
    """Test that disabling the VPN leaves a single container and no volume."""
    pod = masked_pod(
        name="clip",
        namespace="media",
        worker=_worker(),
        executor=ExecutorPodConfig(),
        vpn=VpnConfig(enabled=False),
    )

    spec = pod["spec"]
    assert [c["name"] for c in spec["containers"]] == ["executor"]
    assert "initContainers" not in spec
    assert "volumes" not in spec
    assert "serviceAccountName" not in spec
    env = {e["name"]: e.get("value") for e in spec["containers"][0]["env"]}
    assert env["YTDL_VPN__ENABLED"] == "false"
