"""Entity reference helpers.

Profiles, subscriptions, users and outbox messages are identified by 24-character
hex ObjectId strings, matching the ids other platform services hand us.
"""

from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId


def new_object_id() -> str:
    """Generate a fresh ObjectId string."""
    return str(ObjectId())


def is_valid_object_id(value: Any) -> bool:
    """Check whether value is a 24-hex string or an ObjectId instance.

    12-byte strings are rejected even though bson accepts them as raw ids.
    """
    if isinstance(value, ObjectId):
        return True
    if not isinstance(value, str) or len(value) != 24:
        return False
    return ObjectId.is_valid(value)


def parse_object_id(value: Any) -> Optional[str]:
    """Normalise an entity reference to its lowercase hex form.

    Args:
        value: Candidate id (string or ObjectId)

    Returns:
        Normalised id string, or None if the value is not a valid reference
    """
    if not is_valid_object_id(value):
        return None
    try:
        return str(ObjectId(value))
    except (InvalidId, TypeError):
        return None
