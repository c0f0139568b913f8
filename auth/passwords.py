"""
auth/passwords.py -- Password hashing for the direct (non-OAuth) login path.

Scheme: bcrypt, used directly (no passlib wrapper). bcrypt's cost factor makes
offline brute force of a leaked credentials file expensive, and checkpw()
compares digests in constant time.

The backend takes the verifier as a plain callable (verify_secret) so another
scheme can be dropped in at integration time without touching the backend.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import bcrypt


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Recent bcrypt releases raise ValueError for input over 72 bytes.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed hash or an over-long password counts as a mismatch rather
    than an error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Timing equalization dummy hash.
# Computed once at import so the first login attempt is not measurably slower
# than later ones. The backend verifies against it when the identifier is
# unknown, so response time does not reveal which usernames exist.
DUMMY_HASH: str = hash_password("gatehouse_timing_dummy")
