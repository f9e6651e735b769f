"""Shared constants for nexusflow."""

QUEUE_WORKFLOWS = "workflows"
QUEUE_SPED = "sped"
QUEUE_EMBEDDINGS = "embeddings"
QUEUE_NOTIFICATIONS = "notifications"

QUEUE_NAMES = (QUEUE_WORKFLOWS, QUEUE_SPED, QUEUE_EMBEDDINGS, QUEUE_NOTIFICATIONS)

JOB_EXECUTE_WORKFLOW = "execute-workflow"
JOB_PROCESS_SPED = "process-sped"
JOB_GENERATE_EMBEDDINGS = "generate-embeddings"

DEFAULT_LIST_LIMIT = 50
MAX_LIST_LIMIT = 50

PRIORITY_ORGANIZATION = 1
PRIORITY_PERSONAL = 2

DEFAULT_TEMPLATE_VERSION = "1.0.0"
