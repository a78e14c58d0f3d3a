import os

DB_FILE = os.environ.get("LEDGERQ_DB", "ledgerq.db")
LEDGER_DB_FILE = os.environ.get("LEDGERQ_LEDGER_DB", "ledger.db")
LOG_LEVEL = os.environ.get("LEDGERQ_LOG_LEVEL", "INFO")

DEFAULT_CONFIG = {
    "max_attempts": "5",
    "backoff_base_ms": "500",
    "backoff_cap_ms": "30000",
    "timeout_seconds": "20",
    "poll_interval_ms": "500",
    # must stay above timeout_seconds or live claims get recovered
    "claim_lease_seconds": "120",
    "job_ttl_seconds": "86400",
}

ALLOWED_CONFIG_KEYS = set(DEFAULT_CONFIG.keys())


def config_int(cfg, key: str) -> int:
    """Read an integer setting, falling back to the default on a bad value."""
    try:
        return int(cfg.get(key, DEFAULT_CONFIG[key]))
    except ValueError:
        return int(DEFAULT_CONFIG[key])
