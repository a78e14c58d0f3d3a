from datetime import datetime, timezone, timedelta

# Fixed width so stored timestamps compare correctly as strings
_ISO_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def now_iso() -> str:
    """UTC timestamp like '2025-11-06T09:12:34.123456Z'."""
    return datetime.now(timezone.utc).strftime(_ISO_FMT)


def iso_in_utc_from_seconds_from_now(seconds: float) -> str:
    """Return UTC ISO time `seconds` from now (negative for the past)."""
    return (datetime.now(timezone.utc) + timedelta(seconds=seconds)).strftime(_ISO_FMT)


def backoff_delay_ms(attempts: int, base_ms: int, cap_ms: int) -> int:
    """
    Delay before a job becomes eligible again after its `attempts`-th failure.
    Doubles per attempt starting from `base_ms`, never above `cap_ms`.
    """
    if attempts < 1:
        return 0
    # avoid huge ints for jobs with many attempts
    exponent = min(attempts - 1, 32)
    return min(cap_ms, base_ms * (2 ** exponent))
