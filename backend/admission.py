"""
Admission gate for NodeReplacements.

Only one replacement may drain a node at a time, and a replacement waits
while a more urgent one is pending. The decision is re-derived from a fresh
listing on every pass; nothing is held in memory between calls.
"""
from typing import Iterable, List, Tuple

from kube_types import PHASE_IN_PROGRESS, TERMINAL_PHASES, Replacement


def should_proceed(candidate: Replacement, replacements: Iterable[Replacement]) -> Tuple[bool, str]:
    """
    Decide whether ``candidate`` may start draining now.

    Args:
        candidate: Replacement asking to proceed
        replacements: Every replacement currently in the cluster

    Returns:
        (proceed, reason); reason is empty when proceeding
    """
    others: List[Replacement] = [
        r for r in replacements
        if r.name != candidate.name and r.status.phase not in TERMINAL_PHASES
    ]

    in_progress = sorted(r.name for r in others if r.status.phase == PHASE_IN_PROGRESS)
    if in_progress:
        return False, f"NodeReplacement \"{in_progress[0]}\" is already in-progress"

    higher = [r for r in others if r.spec.priority > candidate.spec.priority]
    if higher:
        # Most urgent first, then by name
        blocker = min(higher, key=lambda r: (-r.spec.priority, r.name))
        return False, f"NodeReplacement \"{blocker.name}\" has a higher priority"

    return True, ""
