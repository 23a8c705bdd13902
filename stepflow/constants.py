"""Shared constants for stepflow."""

# Pseudo step id that resolves to the run's input inside conditions.
TRIGGER_STEP_ID = "trigger"

DEFAULT_CONFIG_FILE = "stepflow.yaml"
DEFAULT_WATCH_BACKLOG_WARNING = 1000
