"""Pipeline execution and run supervision."""

from .models import ProcessState, RunHandle, RunSnapshot, RunSummary
from .runner import ProcessRunner
from .supervisor import ProcessSupervisor

__all__ = [
    "ProcessRunner",
    "ProcessState",
    "ProcessSupervisor",
    "RunHandle",
    "RunSnapshot",
    "RunSummary",
]
