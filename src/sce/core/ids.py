"""ID generation utilities."""

import uuid


def generate_id(prefix: str) -> str:
    """Generate a unique, prefixed entity ID."""
    return f"{prefix}_{uuid.uuid4().hex[:20]}"
