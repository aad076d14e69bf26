"""
Shared validation utilities for the server.
"""

import re

from fastapi import HTTPException

# Opaque ids: uuid hex or short slug-like identifiers
_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')


def validate_identifier(value: str, kind: str = "id") -> str:
    """
    Validate an id taken from the URL path.

    Raises:
        HTTPException: If the id contains unexpected characters
    """
    if not _ID_PATTERN.match(value):
        raise HTTPException(status_code=400, detail=f"Invalid {kind}")
    return value
