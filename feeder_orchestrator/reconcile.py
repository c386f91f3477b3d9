"""
Derived-field math.

Pure functions: given the same inputs they always produce the same patch, so
re-running them on redelivery cannot drift state beyond the new subtraction.
"""

import time
from typing import Optional

from .models import FeederPatch, FeederState
from .schedule import IntervalSchedule


def now_ms() -> int:
    return int(time.time() * 1000)


def remaining_feedings(remaining_food: float, food_per_feeding: float) -> int:
    """Whole feedings left for the given food estimate"""
    if food_per_feeding <= 0:
        raise ValueError("food per feeding must be positive")
    return int(max(remaining_food, 0) // food_per_feeding)


def next_active_after(interval: Optional[str], last_active: int) -> Optional[int]:
    """Next scheduled fire after ``last_active``, or None without a valid interval"""
    if not interval:
        return None
    try:
        schedule = IntervalSchedule.parse(interval)
    except ValueError:
        return None
    return schedule.next_after(last_active)


def activation_patch(
    state: FeederState,
    activated_at: int,
    track_next_active: bool = False,
) -> FeederPatch:
    """
    Fields changed by one genuine actuation.

    Args:
        state: State loaded before the actuation
        activated_at: Actuation time in epoch ms
        track_next_active: Also recompute ``next_active`` from the interval

    Returns:
        Patch with last_active, food and feedings (and next_active if tracked)
    """
    food = max(state.est_remaining_food - state.est_food_per_feeding, 0)
    changes = {
        "last_active": activated_at,
        "est_remaining_food": food,
        "est_remaining_feedings": remaining_feedings(food, state.est_food_per_feeding),
    }
    if track_next_active:
        next_active = next_active_after(state.interval, activated_at)
        if next_active is not None:
            changes["next_active"] = next_active
    return FeederPatch(**changes)


def update_patch(
    state: FeederState,
    patch: FeederPatch,
    track_next_active: bool = False,
) -> FeederPatch:
    """
    Complete a manual update with its derived fields.

    A food field in the patch forces ``est_remaining_feedings`` to be
    recomputed; a feedings value supplied on its own is kept as given.
    """
    changes = patch.changes()
    if "est_remaining_food" in changes or "est_food_per_feeding" in changes:
        food = changes.get("est_remaining_food", state.est_remaining_food)
        per_feeding = changes.get("est_food_per_feeding", state.est_food_per_feeding)
        changes["est_remaining_feedings"] = remaining_feedings(food, per_feeding)
    if track_next_active and "interval" in changes and "next_active" not in changes:
        anchor = changes.get("last_active", state.last_active)
        if anchor is None:
            anchor = now_ms()
        next_active = next_active_after(changes["interval"], anchor)
        if next_active is not None:
            changes["next_active"] = next_active
    return FeederPatch(**changes)
