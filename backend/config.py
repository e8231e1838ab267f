"""
Sous Chef Backend Configuration
"""

import os
from pathlib import Path
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

# Base paths
BASE_DIR = Path(__file__).parent
DATA_DIR = BASE_DIR / "data"

# Ensure data directory exists
DATA_DIR.mkdir(exist_ok=True)

# Recipe store (SQLite file, or ":memory:")
DB_PATH = os.getenv("SOUSCHEF_DB_PATH", str(DATA_DIR / "souschef.db"))

# Watson Assistant (conversation) Configuration
CONVERSATION_URL = os.getenv("CONVERSATION_URL", "https://api.us-south.assistant.watson.cloud.ibm.com")
CONVERSATION_API_KEY = os.getenv("CONVERSATION_API_KEY", "")
CONVERSATION_USERNAME = os.getenv("CONVERSATION_USERNAME", "")          # legacy service credentials
CONVERSATION_PASSWORD = os.getenv("CONVERSATION_PASSWORD", "")
CONVERSATION_WORKSPACE_ID = os.getenv("CONVERSATION_WORKSPACE_ID", "")
CONVERSATION_VERSION = os.getenv("CONVERSATION_VERSION", "2018-07-10")

# Spoonacular API Configuration
SPOONACULAR_API_KEY = os.getenv("SPOONACULAR_API_KEY", "")
SPOONACULAR_BASE_URL = os.getenv("SPOONACULAR_BASE_URL", "https://api.spoonacular.com")

# HTTP client settings shared by the remote collaborators
HTTP_TIMEOUT = float(os.getenv("HTTP_TIMEOUT", "30"))
HTTP_MAX_RETRIES = int(os.getenv("HTTP_MAX_RETRIES", "3"))

# Number of recipes offered per list (and the highest valid selection)
MAX_CANDIDATES = 5

# Slack Configuration - the Slack transport is used when a bot token is set
SLACK_BOT_TOKEN = os.getenv("SLACK_BOT_TOKEN", "")
SLACK_SIGNING_SECRET = os.getenv("SLACK_SIGNING_SECRET", "")
SLACK_API_URL = os.getenv("SLACK_API_URL", "https://slack.com/api")

# Sessions
SESSION_IDLE_TIMEOUT = int(os.getenv("SESSION_IDLE_TIMEOUT", "3600"))     # seconds, 0 = never evict
SESSION_SWEEP_INTERVAL = int(os.getenv("SESSION_SWEEP_INTERVAL", "60"))

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_TYPE = os.getenv("LOG_TYPE", "text")

# Server
PORT = int(os.getenv("PORT", "8000"))

# CORS - Frontend URLs
CORS_ORIGINS = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
    os.getenv("FRONTEND_URL", ""),  # Production frontend URL
]
# Filter empty strings
CORS_ORIGINS = [origin for origin in CORS_ORIGINS if origin]
