"""Shared defaults for flowguard workflows."""

DEFAULT_EXECUTION_TIMEOUT_MS = 300_000
DEFAULT_MAX_RETRIES = 3

DEFAULT_CONFIDENCE = 0.8
STRUCTURED_RESPONSE_CONFIDENCE = 0.85
UNPARSED_RESPONSE_CONFIDENCE = 0.7
DEGRADED_RESPONSE_CONFIDENCE = 0.1

DEFAULT_COMPLETION_MODEL = "openai:gpt-4o"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4000
DEFAULT_REASONING_EFFORT = "medium"

EXECUTION_EVENTS_TOPIC = "executions"

REJECTION_DECISIONS = frozenset({"reject", "rejected", "deny", "denied"})
