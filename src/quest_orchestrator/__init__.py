"""Gamified budgeting quests driven by an idempotent workflow engine."""
