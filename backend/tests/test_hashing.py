"""Tests for deterministic identifier helpers."""

import uuid

from tutorchat.utils.hashing import advisory_lock_key, deterministic_uuid


class TestDeterministicUuid:
    """Tests for deterministic_uuid."""

    def test_same_key_same_uuid(self):
        key = f"chat_doc|message_chunk|{uuid.uuid4()}|0"
        assert deterministic_uuid(key) == deterministic_uuid(key)

    def test_different_keys_differ(self):
        assert deterministic_uuid("a|0") != deterministic_uuid("a|1")

    def test_is_version_5(self):
        assert deterministic_uuid("anything").version == 5


class TestAdvisoryLockKey:
    def test_fits_signed_bigint(self):
        for key in ("thread:1", "thread:2", "x" * 500):
            value = advisory_lock_key(key)
            assert -(2**63) <= value < 2**63

    def test_stable(self):
        assert advisory_lock_key("thread:1") == advisory_lock_key("thread:1")
        assert advisory_lock_key("thread:1") != advisory_lock_key("thread:2")
