"""
auth/credentials.py -- Credential sources for the direct login path.

A credential source answers one question: what credential reference (a
password hash) is on record for this identifier? It never verifies anything;
the backend does that.

File format (FileCredentialSource), one entry per line:

    # comment
    alice:$2b$12$Ow...
    bob:$2b$12$9x...

Blank lines and # comments are ignored. The username is everything before the
first colon; the hash is everything after it. Malformed lines are skipped with
a warning naming the line number, never the line itself (it may hold a hash).
`python main.py hash-password alice` prints a ready-made line.

Layer rule: no imports from api/ or web/.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from pathlib import Path
from typing import Optional, Protocol

logger = logging.getLogger("gatehouse.auth.credentials")


class CredentialSource(Protocol):
    def lookup(self, identifier: str) -> Optional[str]:
        """Return the stored credential reference, or None if unknown."""
        ...


class MappingCredentialSource:
    """Credential source backed by an in-memory mapping of username -> hash."""

    def __init__(self, entries: Mapping[str, str] | None = None) -> None:
        self._entries: dict[str, str] = dict(entries or {})

    def lookup(self, identifier: str) -> Optional[str]:
        return self._entries.get(identifier)

    def __len__(self) -> int:
        return len(self._entries)


class FileCredentialSource(MappingCredentialSource):
    """Credential source read once from a username:hash file.

    A missing path yields an empty source (direct login then always fails
    with NotFound) so OAuth-only deployments need no file at all.
    """

    def __init__(self, path: str | Path | None) -> None:
        self.path = Path(path).resolve() if path else None
        super().__init__(self._load())

    def _load(self) -> dict[str, str]:
        if self.path is None:
            return {}
        if not self.path.is_file():
            logger.warning("Credentials file %s not found -- direct login disabled", self.path)
            return {}
        entries: dict[str, str] = {}
        for lineno, raw in enumerate(self.path.read_text(encoding="utf-8").splitlines(), start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            username, sep, hashed = line.partition(":")
            if not sep or not username.strip() or not hashed.strip():
                logger.warning("Skipping malformed credentials entry on line %d", lineno)
                continue
            entries[username.strip()] = hashed.strip()
        logger.info("Loaded %d credential(s) from %s", len(entries), self.path)
        return entries
