"""Continuous trust monitoring."""

from .continuous import ContinuousMonitor, Phase, SubjectState, phase_for

__all__ = ["ContinuousMonitor", "Phase", "SubjectState", "phase_for"]
