"""Phase enums and monotonic transition tables for every managed kind.

Phases only move forward. ``advance_phase`` checks a requested transition
against the table for the kind and raises when it is not allowed, which helps
catch reconciler logic bugs before they are written to the cluster.

State Machine Diagram (Download):
  Pending
    ├─(storage not ready / admission denied)→ Waiting
    └─(query executor created)→ Querying
        ├─(query failed)→ ErrQueryFailed
        └─(children created)→ Downloading
            ├─(child failed, ignoreErrors=false)→ ErrDownloadFailed
            └─(all children terminal)→ Succeeded
                └─(queryInterval elapsed)→ Querying

Error phases are absorbing. Editing the resource (a new ``metadata.generation``)
resets it to Pending, which is the only other way backwards.
"""

from __future__ import annotations

from enum import Enum
from typing import Mapping, Optional, Tuple

from ..errors import PhaseTransitionError

__all__ = [
    "DownloadPhase",
    "ChildProcessPhase",
    "ExecutorPhase",
    "StoragePhase",
    "DOWNLOAD_TRANSITIONS",
    "CHILD_PROCESS_TRANSITIONS",
    "EXECUTOR_TRANSITIONS",
    "STORAGE_TRANSITIONS",
    "advance_phase",
]


class DownloadPhase(str, Enum):
    PENDING = "Pending"
    WAITING = "Waiting"
    QUERYING = "Querying"
    DOWNLOADING = "Downloading"
    SUCCEEDED = "Succeeded"
    ERR_QUERY_FAILED = "ErrQueryFailed"
    ERR_DOWNLOAD_FAILED = "ErrDownloadFailed"

    def is_error(self) -> bool:
        return self in (DownloadPhase.ERR_QUERY_FAILED, DownloadPhase.ERR_DOWNLOAD_FAILED)


class ChildProcessPhase(str, Enum):
    PENDING = "Pending"
    WAITING = "Waiting"
    STARTING = "Starting"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    def is_terminal(self) -> bool:
        return self in (ChildProcessPhase.SUCCEEDED, ChildProcessPhase.FAILED)


class ExecutorPhase(str, Enum):
    PENDING = "Pending"
    STARTING = "Starting"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"

    def is_terminal(self) -> bool:
        return self in (ExecutorPhase.SUCCEEDED, ExecutorPhase.FAILED)


class StoragePhase(str, Enum):
    """Verification phase shared by ContentStorage and MetadataTarget.

    ``Verified`` means the last handshake pass succeeded and a re-verify
    interval is pending. ``Ready`` means no further checks are scheduled
    (interval unset or every backend skipped). Both are usable.
    """

    PENDING = "Pending"
    VERIFYING = "Verifying"
    VERIFIED = "Verified"
    READY = "Ready"
    ERR_VERIFY_FAILED = "ErrVerifyFailed"

    def is_usable(self) -> bool:
        return self in (StoragePhase.VERIFIED, StoragePhase.READY)


_D = DownloadPhase
DOWNLOAD_TRANSITIONS: Mapping[DownloadPhase, Tuple[DownloadPhase, ...]] = {
    _D.PENDING: (),
    _D.WAITING: (_D.PENDING, _D.WAITING),
    _D.QUERYING: (_D.PENDING, _D.WAITING, _D.QUERYING, _D.SUCCEEDED),
    _D.DOWNLOADING: (_D.QUERYING, _D.DOWNLOADING),
    _D.SUCCEEDED: (_D.DOWNLOADING, _D.SUCCEEDED),
    _D.ERR_QUERY_FAILED: (_D.QUERYING,),
    _D.ERR_DOWNLOAD_FAILED: (_D.DOWNLOADING,),
}

_C = ChildProcessPhase
CHILD_PROCESS_TRANSITIONS: Mapping[ChildProcessPhase, Tuple[ChildProcessPhase, ...]] = {
    _C.PENDING: (),
    _C.WAITING: (_C.PENDING, _C.WAITING),
    _C.STARTING: (_C.PENDING, _C.WAITING, _C.STARTING),
    _C.RUNNING: (_C.STARTING, _C.RUNNING),
    _C.SUCCEEDED: (_C.STARTING, _C.RUNNING),
    _C.FAILED: (_C.PENDING, _C.WAITING, _C.STARTING, _C.RUNNING),
}

_E = ExecutorPhase
EXECUTOR_TRANSITIONS: Mapping[ExecutorPhase, Tuple[ExecutorPhase, ...]] = {
    _E.PENDING: (),
    _E.STARTING: (_E.PENDING, _E.STARTING),
    _E.RUNNING: (_E.PENDING, _E.STARTING, _E.RUNNING),
    _E.SUCCEEDED: (_E.PENDING, _E.STARTING, _E.RUNNING),
    _E.FAILED: (_E.PENDING, _E.STARTING, _E.RUNNING),
}

# Verification is repeated on every interval and every edit.
_S = StoragePhase
STORAGE_TRANSITIONS: Mapping[StoragePhase, Tuple[StoragePhase, ...]] = {
    _S.PENDING: (),
    _S.VERIFYING: (_S.PENDING, _S.VERIFYING, _S.VERIFIED, _S.READY, _S.ERR_VERIFY_FAILED),
    _S.VERIFIED: (_S.VERIFYING, _S.VERIFIED, _S.READY, _S.ERR_VERIFY_FAILED),
    _S.READY: (_S.VERIFYING, _S.VERIFIED, _S.READY, _S.ERR_VERIFY_FAILED),
    _S.ERR_VERIFY_FAILED: (_S.VERIFYING, _S.VERIFIED, _S.READY, _S.ERR_VERIFY_FAILED),
}


def advance_phase(
    *,
    kind: str,
    name: str,
    current: Optional[Enum],
    target: Enum,
    transitions: Mapping,
) -> Enum:
    """Validate a phase transition and return the target phase.

    Parameters
    ----------
    kind : str
        Resource kind, used in the error message.
    name : str
        Resource name, used in the error message.
    current : Enum or None
        Phase currently recorded on the resource; ``None`` when unset.
    target : Enum
        Requested phase.
    transitions : Mapping
        Table mapping each target phase to the phases it may be entered from.

    Raises
    ------
    PhaseTransitionError
        If ``target`` may not be entered from ``current``.

    Notes
    -----
    An unset phase may move to any phase whose allowed predecessors include
    ``Pending``, and ``Pending`` itself is always valid from an unset phase.
    """
    allowed_from = transitions[target]
    if current is None:
        first = next(iter(transitions))
        if target == first or first in allowed_from:
            return target
    elif current in allowed_from:
        return target
    raise PhaseTransitionError(
        f"phase_transition_denied {kind}={name} wants={target.value} "
        f"from={tuple(p.value for p in allowed_from)} have={getattr(current, 'value', None)}",
        kind=kind,
        name=name,
    )
