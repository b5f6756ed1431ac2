"""Common domain types."""
from datetime import datetime, timezone
from uuid import uuid4


def generate_id() -> str:
    """Generate a new UUID string."""
    return str(uuid4())


def utcnow() -> datetime:
    """Naive UTC now, matching the DateTime columns."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
