"""Salted one-way pseudonyms for user identities.

A pseudonym is the hex SHA-256 digest of ``identity + salt``. The same
identity and salt always give the same pseudonym; a new salt gives unrelated
pseudonyms and there is no migration path between them.
"""

from __future__ import annotations

import hashlib

from insights_pipeline.config import get_settings, validate_salt


class Pseudonymizer:
    """Pseudonymizer bound to one salt.

    Raises:
        ConfigError: at construction when the salt is missing or too short.
    """

    def __init__(self, salt: str) -> None:
        self._salt = validate_salt(salt)

    def __call__(self, raw_identity: str) -> str:
        salted = f"{raw_identity}{self._salt}"
        return hashlib.sha256(salted.encode("utf-8")).hexdigest()

    def __repr__(self) -> str:
        return "Pseudonymizer(salt=<redacted>)"

    @classmethod
    def from_settings(cls) -> "Pseudonymizer":
        return cls(get_settings().anon_salt)


def pseudonymize(raw_identity: str, salt: str | None = None) -> str:
    """Return the pseudonym for `raw_identity`.

    Args:
        raw_identity: The user's real identifier.
        salt: Explicit salt; defaults to the configured `ANON_SALT`.

    Returns:
        64-character lower-case hex digest.

    Raises:
        ConfigError: if no usable salt is configured.
    """
    if salt is None:
        salt = get_settings().anon_salt
    return Pseudonymizer(salt)(raw_identity)
