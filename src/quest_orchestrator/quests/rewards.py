"""Reward arithmetic for the virtual pet."""

from __future__ import annotations

from datetime import datetime

from quest_orchestrator.storage.models import Mood, RewardGrant, RewardState

FOOD_CREDIT_INCREMENT = 3
HAPPINESS_MIN = 0
HAPPINESS_MAX = 100

# Ordered highest threshold first.
MOOD_THRESHOLDS: tuple[tuple[int, Mood], ...] = (
    (80, "happy"),
    (50, "content"),
    (25, "worried"),
)


def clamp_happiness(value: int) -> int:
    return max(HAPPINESS_MIN, min(HAPPINESS_MAX, value))


def mood_for(happiness: int) -> Mood:
    for threshold, mood in MOOD_THRESHOLDS:
        if happiness >= threshold:
            return mood
    return "sad"


def default_reward_state(user_id: str) -> RewardState:
    return RewardState(user_id=user_id)


def apply_reward(state: RewardState, grant: RewardGrant, *, at: datetime) -> RewardState:
    """Return the state after ``grant``; the input state is left untouched."""
    happiness = clamp_happiness(state.happiness + grant.happiness_delta)
    return state.model_copy(
        update={
            "happiness": happiness,
            "mood": mood_for(happiness),
            "food_credits": state.food_credits + FOOD_CREDIT_INCREMENT,
            "last_reward_food": grant.food_type,
            "last_reward_at": at,
            "updated_at": at,
        }
    )
