"""
Configuration
=============
Loads environment variables from .env file using python-dotenv.

Environment Variables:
    GITHUB_TOKEN               — GitHub token (read at lookup time by services/credentials.py)
    GITLAB_TOKEN               — GitLab token (read at lookup time by services/credentials.py)
    GITHUB_API_URL             — GitHub REST base URL (default: https://api.github.com)
    GITLAB_API_URL             — GitLab REST v4 base URL (default: https://gitlab.com/api/v4)
    CICD_POLL_INTERVAL_MS      — Base poll interval in milliseconds (default: 10000)
    CICD_MAX_POLL_DURATION_MS  — Give up on a monitor after this long (default: 1800000)
    CICD_NOTIFICATIONS         — Flag completion events for desktop notification (default: true)
    PIPELINE_MONITORS_FILE     — JSON file holding every monitor record
    MONITOR_RETENTION_HOURS    — Finished monitors older than this are dropped on startup (default: 24)
    HTTP_TIMEOUT_SECONDS       — Per-request timeout for provider calls (default: 20)
    LOG_LEVEL                  — Root log level name (default: INFO)
    LOG_DIR                    — Directory for the daily log file (default: logs)

Poll Interval Philosophy:
    CICD_POLL_INTERVAL_MS is only the starting point. Each monitor backs off
    by 1.5x per poll up to a fixed 30s ceiling, so early polls catch fast
    builds and later polls stay polite to the provider's rate limits.

Max Duration:
    CICD_MAX_POLL_DURATION_MS is a wall-clock ceiling checked at every poll.
    A monitor still polling past it is marked stalled.
"""
import os
from dotenv import load_dotenv

from pipewatch.core.constants import DEFAULT_MAX_DURATION_MS, DEFAULT_POLL_INTERVAL_MS

load_dotenv()

GITHUB_API_URL = os.getenv("GITHUB_API_URL", "https://api.github.com").rstrip("/")
GITLAB_API_URL = os.getenv("GITLAB_API_URL", "https://gitlab.com/api/v4").rstrip("/")

# Polling
CICD_POLL_INTERVAL_MS = int(os.getenv("CICD_POLL_INTERVAL_MS", DEFAULT_POLL_INTERVAL_MS))
CICD_MAX_POLL_DURATION_MS = int(os.getenv("CICD_MAX_POLL_DURATION_MS", DEFAULT_MAX_DURATION_MS))

# Consumed by the broadcast layer only
CICD_NOTIFICATIONS = os.getenv("CICD_NOTIFICATIONS", "true").lower() in ("1", "true", "yes")

# Persistence
PIPELINE_MONITORS_FILE = os.getenv(
    "PIPELINE_MONITORS_FILE",
    os.path.join(os.getcwd(), "config", "pipeline-monitors.json"),
)
MONITOR_RETENTION_HOURS = float(os.getenv("MONITOR_RETENTION_HOURS", 24))

# Provider HTTP
HTTP_TIMEOUT_SECONDS = float(os.getenv("HTTP_TIMEOUT_SECONDS", 20.0))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_DIR = os.getenv("LOG_DIR", "logs")
