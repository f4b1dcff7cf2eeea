import os
import dotenv
import logging

dotenv.load_dotenv()

SLACK_TOKEN = os.environ.get("SLACK_TOKEN")

GITHUB_TOKEN = os.environ.get("GITHUB_TOKEN")
GITHUB_PRIVATE_KEY = os.environ.get("GITHUB_PRIVATE_KEY")
GITHUB_APP_ID = os.environ.get("GITHUB_APP_ID")
if GITHUB_APP_ID is not None:
    GITHUB_APP_ID = int(GITHUB_APP_ID)
GITHUB_INSTALLATION_ID = os.environ.get("GITHUB_INSTALLATION_ID")
if GITHUB_INSTALLATION_ID is not None:
    GITHUB_INSTALLATION_ID = int(GITHUB_INSTALLATION_ID)

BOT_CONFIG = os.environ.get("BOT_CONFIG", "pipebot.yml")

OVERRIDE_LOGGING = logging.getLevelName(os.environ.get("OVERRIDE_LOGGING", "WARNING"))

LOG_SLACK_WEBHOOK = os.environ.get("LOG_SLACK_WEBHOOK")

ACTIVITY_DB_PATH = os.environ.get("ACTIVITY_DB_PATH", "pipebot.sqlite3")
ACTIVITY_RETENTION_DAYS = int(os.environ.get("ACTIVITY_RETENTION_DAYS", 30))

# unset keeps message references in memory only
REFERENCE_CACHE_DIR = os.environ.get("REFERENCE_CACHE_DIR")

PROVIDER_TIMEOUT = float(os.environ.get("PROVIDER_TIMEOUT", 10))
SINK_TIMEOUT = float(os.environ.get("SINK_TIMEOUT", 10))

ACCESS_TOKEN_TTL = float(os.environ.get("ACCESS_TOKEN_TTL", 300))

DRY_RUN = os.environ.get("DRY_RUN", "false") == "true"
