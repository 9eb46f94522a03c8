"""
Grid validation: double-bookings and consecutive-week overruns.
"""

from collections import defaultdict
from typing import Dict, Iterable, List, Optional, Tuple


def longest_streak(week_numbers: Iterable[int]) -> int:
    ordered = sorted(set(week_numbers))
    best = 0
    run = 0
    previous = None
    for n in ordered:
        run = run + 1 if previous is not None and n == previous + 1 else 1
        best = max(best, run)
        previous = n
    return best


def would_exceed_max_consecutive_weeks(
    held_week_numbers: Iterable[int], candidate_week_number: int, max_consecutive: Optional[int],
) -> bool:
    """True when adding candidate_week_number makes a run longer than max_consecutive."""
    if not max_consecutive or max_consecutive < 1:
        return False
    return longest_streak(list(held_week_numbers) + [candidate_week_number]) > max_consecutive


def validate_grid(
    cells: List[dict],
    week_numbers: Dict[int, int],
    rotations: Dict[int, dict],
    limits: Optional[Dict[Tuple[int, int], int]] = None,
) -> Tuple[bool, List[str]]:
    """
    Validate a calendar grid against the hard staffing rules.
    cells: [{week_id, rotation_id, physician_id}]
    week_numbers: {week_id: week_number}
    rotations: {rotation_id: {name, max_consecutive_weeks}}
    limits: {(physician_id, rotation_id): max weeks} for physicians with their own limit
    Returns (is_valid, list_of_violation_messages).
    """
    violations = []
    by_physician_week = defaultdict(list)
    by_physician_rotation = defaultdict(list)

    for cell in cells:
        pid = cell.get("physician_id")
        if pid is None:
            continue
        by_physician_week[(pid, cell["week_id"])].append(cell["rotation_id"])
        by_physician_rotation[(pid, cell["rotation_id"])].append(week_numbers.get(cell["week_id"], 0))

    # Double-booking across rotations in one week
    for (pid, week_id), rotation_ids in sorted(by_physician_week.items()):
        if len(rotation_ids) > 1:
            names = ", ".join(rotations.get(r, {}).get("name", str(r)) for r in rotation_ids)
            violations.append(
                f"Physician {pid}: double-booked in week {week_numbers.get(week_id, week_id)} ({names})")

    # Consecutive weeks on the same rotation
    for (pid, rotation_id), numbers in sorted(by_physician_rotation.items()):
        rotation = rotations.get(rotation_id, {})
        limit = (limits or {}).get((pid, rotation_id), rotation.get("max_consecutive_weeks"))
        if not limit:
            continue
        streak = longest_streak(numbers)
        if streak > limit:
            violations.append(
                f"Physician {pid}: {streak} consecutive weeks on {rotation.get('name', rotation_id)} (max {limit})")

    return len(violations) == 0, violations
