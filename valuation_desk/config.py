"""
ValuationDesk Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "valuation.db"
_user_default_db = Path.home() / ".valuationdesk" / "valuation.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("VALUATIONDESK_DB"):
    DB_PATH = os.getenv("VALUATIONDESK_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only, this is a desktop tool
HOST = os.getenv("VALUATIONDESK_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("VALUATIONDESK_PORT", config_data.get("PORT", "39800")))

# Agent collaborator
AGENT_MODEL = os.getenv("VALUATIONDESK_AGENT_MODEL", config_data.get("AGENT_MODEL", "")) or None
AGENT_ALLOWED_TOOLS = [
    t.strip()
    for t in os.getenv(
        "VALUATIONDESK_AGENT_TOOLS",
        config_data.get("AGENT_ALLOWED_TOOLS", "Bash,Edit,Read,Write,Grep"),
    ).split(",")
    if t.strip()
]
# default | acceptEdits | bypassPermissions | plan
AGENT_PERMISSION_MODE = os.getenv(
    "VALUATIONDESK_PERMISSION_MODE", config_data.get("AGENT_PERMISSION_MODE", "bypassPermissions")
)

# Seconds to wait for the next agent event before failing the turn (0 = wait forever)
TURN_STALL_TIMEOUT = float(os.getenv("VALUATIONDESK_TURN_STALL_TIMEOUT", config_data.get("TURN_STALL_TIMEOUT", "0")))

# How long fan-out events are kept for the /events stream (seconds)
EVENT_RETENTION_SECONDS = int(os.getenv("VALUATIONDESK_EVENT_RETENTION", "600"))

# Timeout for individual database calls made by the HTTP layer (seconds)
DB_TIMEOUT = 5

APP_VERSION = "0.1.0"


def anthropic_api_key_present() -> bool:
    return bool(os.getenv("ANTHROPIC_API_KEY"))


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "AGENT_MODEL": AGENT_MODEL,
        "AGENT_ALLOWED_TOOLS": ",".join(AGENT_ALLOWED_TOOLS),
        "AGENT_PERMISSION_MODE": AGENT_PERMISSION_MODE,
        "TURN_STALL_TIMEOUT": TURN_STALL_TIMEOUT,
    }


def save_config_dict(new_data: dict):
    config_file = BASE_DIR / "data" / "config.json"
    config_file.parent.mkdir(parents=True, exist_ok=True)

    current = {}
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            current = json.load(f)

    current.update(new_data)
    with open(config_file, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2)
