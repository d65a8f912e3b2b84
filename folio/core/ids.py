"""ID generation utilities."""
import uuid


def new_id(prefix: str) -> str:
    """Generate a UUID4-based ID with prefix."""
    return f"{prefix}{uuid.uuid4().hex}"


def short_id(value: str, length: int = 8) -> str:
    """Return the leading hex characters of an id, skipping any ``xxx_`` prefix."""
    return value.rsplit("_", 1)[-1][:length]
