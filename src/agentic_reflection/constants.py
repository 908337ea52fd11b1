"""Constants for the reflection runner."""

import os

# Planner model (OpenRouter id). Override with REFLECT_PLANNER_MODEL.
DEFAULT_PLANNER_MODEL = os.getenv("REFLECT_PLANNER_MODEL", "anthropic/claude-sonnet-4.5")

DEFAULT_PLANNER_MAX_TOKENS = 16000
DEFAULT_PLANNER_TIMEOUT_S = float(os.getenv("REFLECT_PLANNER_TIMEOUT_S", "120"))

# Relative to the task workspace
DEFAULT_REPORTS_DIR = "execution/reports"
