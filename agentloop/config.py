"""
AgentLoop Configuration
"""
import os
import json
from pathlib import Path

# Project root
BASE_DIR = Path(__file__).resolve().parent.parent

# SQLite database file
_repo_default_db = BASE_DIR / "data" / "loop.db"
_user_default_db = Path.home() / ".agentloop" / "loop.db"

config_data = {}
_config_file = BASE_DIR / "data" / "config.json"
if _config_file.exists():
    try:
        with open(_config_file, "r", encoding="utf-8") as _f:
            config_data = json.load(_f)
    except (OSError, ValueError):
        config_data = {}

if os.getenv("AGENTLOOP_DB"):
    DB_PATH = os.getenv("AGENTLOOP_DB")
elif _repo_default_db.parent.exists():
    DB_PATH = str(_repo_default_db)
else:
    # Installed package mode normally runs outside repository checkout.
    DB_PATH = str(_user_default_db)

# HTTP server - default to localhost only for security
HOST = os.getenv("AGENTLOOP_HOST", config_data.get("HOST", "127.0.0.1"))
PORT = int(os.getenv("AGENTLOOP_PORT", config_data.get("PORT", "39775")))

# Breach scanner interval (seconds). 0 disables the in-process scanner;
# an external scheduler can then run `agentloop scan`.
SCAN_INTERVAL = int(os.getenv("AGENTLOOP_SCAN_INTERVAL", config_data.get("SCAN_INTERVAL", "60")))
SCAN_ENABLED = SCAN_INTERVAL > 0

# Delivered events older than this (seconds) are pruned by the scan loop
EVENT_RETENTION = int(os.getenv("AGENTLOOP_EVENT_RETENTION", config_data.get("EVENT_RETENTION", "600")))

LOOP_VERSION = "0.1.0"


def get_config_dict():
    return {
        "HOST": HOST,
        "PORT": PORT,
        "SCAN_INTERVAL": SCAN_INTERVAL,
        "EVENT_RETENTION": EVENT_RETENTION,
    }
