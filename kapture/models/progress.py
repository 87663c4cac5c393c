"""Progress snapshot models shown to UI consumers."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from kapture.models.job import JobStatus, utcnow

PHASE_NAMES = ("Queue", "Extract Info", "Download", "Process", "Complete")

# Upper percentage bound (exclusive) of each working phase
_PHASE_BOUNDS = (("Extract Info", 5), ("Download", 90), ("Process", 100))

_STATE_LABELS = {
    JobStatus.PENDING: "Queued",
    JobStatus.PROCESSING: "Processing",
    JobStatus.COMPLETED: "Completed",
    JobStatus.FAILED: "Failed",
}


class PhaseState(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PhaseStatus:
    name: str
    status: PhaseState

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "status": self.status.value}


@dataclass(frozen=True)
class ProgressSnapshot:
    """Percentage, current phase label and per-phase status of one job."""

    percentage: int
    current_phase: str
    phases: List[PhaseStatus] = field(default_factory=list)
    speed: Optional[str] = None
    eta: Optional[str] = None
    observed_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "percentage": self.percentage,
            "current_phase": self.current_phase,
            "phases": [p.to_dict() for p in self.phases],
            "speed": self.speed,
            "eta": self.eta,
            "observed_at": self.observed_at.isoformat(),
        }


def state_label(status: JobStatus) -> str:
    return _STATE_LABELS[status]


def fallback_snapshot(status: JobStatus) -> ProgressSnapshot:
    """Synthesize the default five-phase structure for a job with no samples yet."""
    states = [PhaseState.PENDING] * len(PHASE_NAMES)
    states[0] = PhaseState.ACTIVE if status is JobStatus.PENDING else PhaseState.COMPLETED

    if status is JobStatus.COMPLETED:
        states = [PhaseState.COMPLETED] * len(PHASE_NAMES)
    elif status is JobStatus.FAILED:
        states[0] = PhaseState.COMPLETED
        states[1] = PhaseState.FAILED

    return ProgressSnapshot(
        percentage=100 if status is JobStatus.COMPLETED else 0,
        current_phase=state_label(status),
        phases=[PhaseStatus(name, state) for name, state in zip(PHASE_NAMES, states)],
    )


def snapshot_from_sample(
    percentage: int,
    phase: Optional[str] = None,
    speed: Optional[str] = None,
    eta: Optional[str] = None,
) -> ProgressSnapshot:
    """Build a snapshot from one worker progress sample.

    The active phase is the worker-reported one when it names a known phase,
    otherwise it is derived from the percentage.
    """
    percentage = max(0, min(100, int(percentage)))

    if percentage >= 100:
        return ProgressSnapshot(
            percentage=100,
            current_phase=PHASE_NAMES[-1],
            phases=[PhaseStatus(name, PhaseState.COMPLETED) for name in PHASE_NAMES],
            speed=speed,
            eta=eta,
        )

    active = phase if phase in PHASE_NAMES else None
    if active is None:
        active = next(name for name, bound in _PHASE_BOUNDS if percentage < bound)

    active_index = PHASE_NAMES.index(active)
    phases = []
    for index, name in enumerate(PHASE_NAMES):
        if index < active_index:
            state = PhaseState.COMPLETED
        elif index == active_index:
            state = PhaseState.ACTIVE
        else:
            state = PhaseState.PENDING
        phases.append(PhaseStatus(name, state))

    return ProgressSnapshot(
        percentage=percentage,
        current_phase=active,
        phases=phases,
        speed=speed,
        eta=eta,
    )
