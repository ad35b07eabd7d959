"""Engine-wide defaults."""

DEFAULT_APPROVAL_TIMEOUT_HOURS = 72
MAX_ITERATIONS = 10

DEFAULT_MAX_MEMORIES = 20
DEFAULT_CONFIDENCE_FLOOR = 0.5

# entity keys extracted from task input for memory matching
ENTITY_ROWS_PER_SOURCE = 50
MAX_ENTITY_KEYS = 30
ENTITY_KEY_FIELDS = ("description", "name", "vendor")

STATE_SUMMARY_LIMIT = 500

DEFAULT_WORKER_MAX_ATTEMPTS = 5

TOPIC_WORKFLOW_RUN = "workflow.run"
TOPIC_WORKFLOW_APPROVED = "workflow.approved"
TOPIC_AGENT_RUN = "agent.run"
