from datetime import datetime, timezone


def utcnow() -> datetime:
    # Naive UTC, matching how every DateTime column is stored
    return datetime.now(timezone.utc).replace(tzinfo=None)
