from __future__ import annotations

import hashlib

import pytest

from insights_pipeline.anonymize.pseudonym import Pseudonymizer, pseudonymize
from insights_pipeline.config import get_settings
from insights_pipeline.errors import ConfigError

OTHER_SALT = "another-salt-fedcba9876543210fedcba9876543210"


def test_pseudonym_is_sha256_of_identity_and_salt(anon_salt: str) -> None:
    expected = hashlib.sha256(f"user-1{anon_salt}".encode("utf-8")).hexdigest()
    assert pseudonymize("user-1") == expected
    assert len(expected) == 64


def test_pseudonym_is_stable_across_instances(anon_salt: str) -> None:
    first = Pseudonymizer(anon_salt)
    second = Pseudonymizer(anon_salt)
    ids = [f"user-{i}" for i in range(50)]
    assert [first(i) for i in ids] == [second(i) for i in ids]
    assert first("user-1") == first("user-1")


def test_changing_salt_changes_every_pseudonym(anon_salt: str) -> None:
    a = Pseudonymizer(anon_salt)
    b = Pseudonymizer(OTHER_SALT)
    ids = [f"user-{i}" for i in range(50)]
    assert all(a(i) != b(i) for i in ids)


def test_distinct_identities_get_distinct_pseudonyms(pseudonymizer: Pseudonymizer) -> None:
    ids = [f"user-{i}" for i in range(500)]
    assert len({pseudonymizer(i) for i in ids}) == len(ids)


def test_pseudonymize_without_configured_salt_fails(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("ANON_SALT", raising=False)
    get_settings.cache_clear()
    with pytest.raises(ConfigError):
        pseudonymize("user-1")


@pytest.mark.parametrize("salt", ["", "short"])
def test_pseudonymizer_rejects_weak_salts(salt: str) -> None:
    with pytest.raises(ConfigError):
        Pseudonymizer(salt)


def test_repr_hides_salt(anon_salt: str) -> None:
    assert anon_salt not in repr(Pseudonymizer(anon_salt))
