"""Shared constants for journeyflow."""

JOURNEY_RUNS_QUEUE = "journey.runs"
OUTBOUND_MESSAGES_QUEUE = "outbound.messages"

TRIGGER_JOB_NAME = "journey.trigger"
STEP_JOB_NAME = "journey.step"
OUTBOUND_JOB_NAME = "wa.send"

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_MS = 1000

DEFAULT_SCHEDULER_INTERVAL_MS = 60_000
DEFAULT_WEBHOOK_TIMEOUT_SECONDS = 10.0
