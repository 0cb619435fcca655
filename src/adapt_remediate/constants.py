"""
Default values shared by configuration and pipeline components.
"""

# Concurrency and retry budget
DEFAULT_MAX_CONCURRENT = 5
DEFAULT_MAX_RETRIES = 3

# Timeouts (seconds)
DEFAULT_COMMAND_TIMEOUT_SECONDS = 120
DEFAULT_VALIDATION_TIMEOUT_SECONDS = 60
DEFAULT_APPROVAL_TIMEOUT_SECONDS = 300
DEFAULT_STAGE_PAUSE_SECONDS = 30.0
DEFAULT_CANARY_SOAK_SECONDS = 60.0
DEFAULT_DEPLOY_COMMAND_TIMEOUT_SECONDS = 300

# Deployment
DEFAULT_DEPLOY_STAGES = (10, 50, 100)
VALID_DEPLOY_STRATEGIES = ("immediate", "staged", "canary")

# Backups
DEFAULT_BACKUP_RETENTION = 100
DEFAULT_BACKUP_DIR = ".remediation-backups"

# State and audit
DEFAULT_STATE_DB = ".remediation-state/attempts.db"
DEFAULT_AUDIT_FILE = ".remediation-state/audit.jsonl"

# Fix application
DEFAULT_CONFIG_TARGET = "config.json"
VALID_INSERTION_POLICIES = ("import-aware", "append")
