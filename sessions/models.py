"""
sessions/models.py -- Domain dataclass for a stored session.

Pattern: Data class (pure data container, zero logic). The store owns
persistence; SessionHandle wraps it for one request.

Layer rule: no imports from api/, web/, or auth/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class Session:
    """One server-side session.

    id is the cookie value: 256 bits from secrets.token_urlsafe, never reused.
    data values must be JSON-serializable -- the store writes them as a JSON
    object. expiry and last_activity are UTC epoch seconds; expiry is always
    last_activity + the store's inactivity window (sliding expiry).
    """

    id: str
    data: dict[str, Any] = field(default_factory=dict)
    expiry: float = 0.0
    last_activity: float = 0.0
