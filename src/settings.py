"""Static configuration for teleecho.

Secrets and paths come from the environment (optionally a ``.env`` file);
tuning knobs (batching, retries, pairing, logging) live in an optional JSON
file so they can be changed without touching Python.
"""

import json
import os

from dotenv import load_dotenv

load_dotenv()

HOME = os.path.expanduser("~")

# Where to store the SQLite connection database.
DB_PATH = os.getenv("TELEECHO_DB", os.path.join(HOME, ".teleecho.db"))

# Optional JSON config; a missing file means "all defaults".
CONFIG_PATH = os.getenv("TELEECHO_CONFIG", os.path.join(HOME, ".teleecho.json"))


def _load_json_config() -> dict:
    """Load the JSON config, or an empty one when the file does not exist."""

    if not os.path.exists(CONFIG_PATH):
        return {}

    with open(CONFIG_PATH, "r", encoding="utf-8") as handle:
        return json.load(handle)


def _optional_float(value) -> "float | None":
    return None if value is None else float(value)


_CONFIG = _load_json_config()

# Expose the raw config for modules that need structured access.
CONFIG = _CONFIG

# Batching and failure policy for the relay.
# - RELAY_MAX_LINES / RELAY_MAX_BYTES: size thresholds for one message
# - RELAY_MAX_AGE_SECONDS: flush a partial batch this long after its first line (null disables)
# - RELAY_MODE: "best_effort" keeps going after a lost batch, "strict" aborts
_relay = _CONFIG.get("relay", {})
RELAY_MAX_LINES = int(_relay.get("max_lines", 20))
RELAY_MAX_BYTES = int(_relay.get("max_bytes", 4096))
RELAY_MAX_AGE_SECONDS = _optional_float(_relay.get("max_age_seconds", 2.0))
RELAY_MODE = _relay.get("mode", "best_effort")
RELAY_MAX_PENDING_BATCHES = int(_relay.get("max_pending_batches", 16))
RELAY_MIN_SEND_INTERVAL = float(_relay.get("min_send_interval", 1.0))
RELAY_QUEUE_LINES = int(_relay.get("queue_lines", 1000))

# Backoff for failed sends: base_delay * 2^(attempt-1), capped per wait and in total.
_retry = _CONFIG.get("retry", {})
RETRY_ATTEMPTS = int(_retry.get("attempts", 5))
RETRY_BASE_DELAY = float(_retry.get("base_delay", 1.0))
RETRY_MAX_DELAY = float(_retry.get("max_delay", 8.0))
RETRY_MAX_TOTAL_WAIT = float(_retry.get("max_total_wait", 30.0))

# Pairing handshake.
_pairing = _CONFIG.get("pairing", {})
PAIRING_CODE_DIGITS = int(_pairing.get("code_digits", 6))
PAIRING_POLL_INTERVAL = float(_pairing.get("poll_interval", 1.5))
PAIRING_TIMEOUT_SECONDS = float(_pairing.get("timeout_seconds", 300))

# Bot API access.
_transport = _CONFIG.get("transport", {})
API_BASE = _transport.get("api_base", "https://api.telegram.org")
REQUEST_TIMEOUT = float(_transport.get("request_timeout", 10))

# Logging configuration; console output goes to stderr so stdout stays clean.
LOGGING = _CONFIG.get("logging", {"enabled": True, "level": "WARNING"})
