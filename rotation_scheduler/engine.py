"""Greedy auto-assign engine for the master calendar draft.

A single deterministic sweep over unstaffed cells: weeks ascending, rotations by
sort order. Each cell gets the best-ranked eligible physician or stays empty.
Filled cells are never revisited.
"""
import logging
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from .domain import DEFAULT_AVAILABILITY, Candidate, CellWarning
from .validate import would_exceed_max_consecutive_weeks

logger = logging.getLogger(__name__)


def _round(value: float) -> float:
    return round(value, 4)


def solve(
    open_cells: List[dict],
    filled_cells: List[dict],
    physicians: List[dict],
    availability: Dict[Tuple[int, int], str],
    rotation_modes: Dict[Tuple[int, int], Tuple[str, Optional[int]]],
    totals: Dict[int, float],
    targets: Dict[int, Optional[float]],
    consecutive_limits: Optional[Dict[Tuple[int, int], int]] = None,
) -> Tuple[List[Tuple[int, int]], int, List[CellWarning]]:
    """
    open_cells: [{cell_id, week_id, week_number, rotation_id, rotation_name, sort_order,
                  max_consecutive_weeks, cfte_per_week}]
    filled_cells: [{week_id, week_number, rotation_id, physician_id, active}]; every filled cell
                  blocks its week, only active rotations count toward streaks and load
    physicians: [{id, name}] already filtered to active and approved-for-mapping
    availability: {(physician_id, week_id): green|yellow|red}; missing means yellow
    rotation_modes: {(physician_id, rotation_id): (mode, rank)}; missing means willing
    totals: {physician_id: current total cFTE}
    targets: {physician_id: target cFTE}
    consecutive_limits: {(physician_id, rotation_id): max weeks} overriding the rotation limit
    Returns (assignments [(cell_id, physician_id)], remaining_unstaffed, warnings).
    """
    busy_weeks = defaultdict(set)           # physician -> week ids held
    held = defaultdict(list)                # (physician, rotation) -> week numbers
    cell_counts = defaultdict(int)          # physician -> cells held this cycle
    totals = dict(totals)
    consecutive_limits = consecutive_limits or {}

    for cell in filled_cells:
        pid = cell["physician_id"]
        busy_weeks[pid].add(cell["week_id"])
        if not cell.get("active", True):
            continue
        held[(pid, cell["rotation_id"])].append(cell["week_number"])
        cell_counts[pid] += 1

    assignments = []
    warnings = []
    unstaffed = 0
    ordered = sorted(open_cells, key=lambda c: (c["week_number"], c["sort_order"], c["rotation_id"]))

    for cell in ordered:
        week_id = cell["week_id"]
        rotation_id = cell["rotation_id"]
        candidates = []
        for physician in physicians:
            pid = physician["id"]
            if week_id in busy_weeks[pid]:
                continue
            status = availability.get((pid, week_id), DEFAULT_AVAILABILITY)
            if status == "red":
                continue
            mode, rank = rotation_modes.get((pid, rotation_id), ("willing", None))
            if mode == "avoid":
                continue
            target = targets.get(pid)
            headroom = _round(target - totals.get(pid, 0.0)) if target is not None else None
            candidates.append(Candidate(
                physician_id=pid,
                availability=status,
                rotation_mode=mode,
                preference_rank=rank,
                headroom=headroom,
                assigned_cells=cell_counts[pid],
            ))

        chosen = None
        for candidate in sorted(candidates, key=lambda c: c.sort_key):
            key = (candidate.physician_id, rotation_id)
            limit = consecutive_limits.get(key, cell["max_consecutive_weeks"])
            if would_exceed_max_consecutive_weeks(held[key], cell["week_number"], limit):
                logger.debug("Skip physician %s for %s week %s: max consecutive weeks",
                             candidate.physician_id, cell["rotation_name"], cell["week_number"])
                continue
            chosen = candidate
            break

        if chosen is None:
            unstaffed += 1
            warnings.append(CellWarning(
                code="no_candidate",
                message=f"No eligible physician for {cell['rotation_name']} in week {cell['week_number']}",
                week_id=week_id,
                rotation_id=rotation_id,
            ))
            continue

        pid = chosen.physician_id
        assignments.append((cell["cell_id"], pid))
        busy_weeks[pid].add(week_id)
        held[(pid, rotation_id)].append(cell["week_number"])
        cell_counts[pid] += 1
        totals[pid] = _round(totals.get(pid, 0.0) + (cell["cfte_per_week"] or 0.0))

        target = targets.get(pid)
        if target is not None and totals[pid] > target:
            warnings.append(CellWarning(
                code="over_target",
                message=(f"Physician {pid} exceeds cFTE target ({totals[pid]:.4f} > {target:.4f}) "
                         f"after {cell['rotation_name']} week {cell['week_number']}"),
                week_id=week_id,
                rotation_id=rotation_id,
                physician_id=pid,
            ))

    return assignments, unstaffed, warnings
