"""
Tests for key derivation.
"""

import os

import pytest

from shardvault.keys import (
    KEY_SIZE,
    SALT_SIZE,
    KeyDerivation,
    derive_master_secret,
    generate_salt,
)


TEST_MASTER_SECRET = bytes(range(32))


def test_derive_is_deterministic():
    """Same master, owner, service and salt always give the same key."""
    salt = generate_salt()
    first = KeyDerivation(TEST_MASTER_SECRET).derive("1", "openai", salt)
    # A fresh instance simulates a process restart
    second = KeyDerivation(TEST_MASTER_SECRET).derive("1", "openai", salt)
    assert first == second
    assert len(first) == KEY_SIZE


def test_derive_depends_on_every_input():
    """Changing any input changes the base key."""
    kd = KeyDerivation(TEST_MASTER_SECRET)
    salt = generate_salt()
    base = kd.derive("1", "openai", salt)

    assert kd.derive("2", "openai", salt) != base
    assert kd.derive("1", "anthropic", salt) != base
    assert kd.derive("1", "openai", generate_salt()) != base
    assert KeyDerivation(os.urandom(32)).derive("1", "openai", salt) != base


def test_derive_keeps_owner_and_service_apart():
    """Shifting characters between owner and service must not collide."""
    kd = KeyDerivation(TEST_MASTER_SECRET)
    salt = generate_salt()
    assert kd.derive("ab", "c", salt) != kd.derive("a", "bc", salt)


def test_derive_rejects_bad_salt_length():
    """A salt of the wrong length is rejected, never padded or truncated."""
    kd = KeyDerivation(TEST_MASTER_SECRET)
    for bad in (b"", b"x" * (SALT_SIZE - 1), b"x" * (SALT_SIZE + 1)):
        with pytest.raises(ValueError):
            kd.derive("1", "openai", bad)


def test_short_master_secret_rejected():
    with pytest.raises(ValueError):
        KeyDerivation(b"too-short")


def test_subkeys_distinct_per_index():
    """Every shard index gets its own key, and none equals the base key."""
    kd = KeyDerivation(TEST_MASTER_SECRET)
    base = kd.derive("1", "openai", generate_salt())
    subkeys = [kd.subkey(base, i) for i in range(16)]

    assert len(set(subkeys)) == 16
    assert base not in subkeys
    assert all(len(k) == KEY_SIZE for k in subkeys)
    # Deterministic
    assert kd.subkey(base, 3) == subkeys[3]


def test_subkey_rejects_negative_index():
    kd = KeyDerivation(TEST_MASTER_SECRET)
    with pytest.raises(ValueError):
        kd.subkey(b"k" * KEY_SIZE, -1)


def test_verification_tag():
    """The tag tracks the base key and does not reveal it."""
    kd = KeyDerivation(TEST_MASTER_SECRET)
    salt = generate_salt()
    base = kd.derive("1", "openai", salt)
    tag = kd.verification_tag(base)

    assert tag == kd.verification_tag(kd.derive("1", "openai", salt))
    assert tag != kd.verification_tag(kd.derive("1", "openai", generate_salt()))
    assert len(tag) == 64
    assert base.hex() not in tag


def test_salts_are_unique():
    salts = {generate_salt() for _ in range(100)}
    assert len(salts) == 100
    assert all(len(s) == SALT_SIZE for s in salts)


def test_passphrase_master_secret():
    """PBKDF2 master secrets are reproducible from passphrase and salt."""
    salt = generate_salt()
    first = derive_master_secret("correct horse battery staple", salt)
    assert first == derive_master_secret("correct horse battery staple", salt)
    assert first != derive_master_secret("wrong passphrase", salt)
    assert len(first) == KEY_SIZE

    with pytest.raises(ValueError):
        derive_master_secret("", salt)
