import uuid


def generate_id() -> str:
    """Opaque string id for domain records."""
    return str(uuid.uuid4())


def short_ref(record_id: str) -> str:
    """Last 8 characters, used in human-readable order references (#1a2b3c4d)."""
    return f"#{record_id[-8:]}"
