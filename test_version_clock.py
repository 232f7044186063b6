#!/usr/bin/env python3
"""
Tests for version id generation and ordering.
"""

from chatsync.history.version_clock import (
    RANDOM_MASK,
    VersionClock,
    compare_versions,
    is_version_id,
    new_version,
    timestamp_ms,
)


def fixed_random(value: int):
    return lambda bits: value


def test_new_version_layout():
    """Generated ids are canonical lowercase UUIDv7 strings."""
    version = VersionClock().new_version()
    assert is_version_id(version)
    assert version == version.lower()
    assert len(version) == 36
    assert version[14] == "7"
    assert version[19] in "89ab"


def test_module_level_new_version():
    assert is_version_id(new_version())


def test_timestamp_is_embedded_and_clamped():
    clock = VersionClock(random_bits=fixed_random(0))
    assert timestamp_ms(clock.new_version(1234)) == 1234
    assert timestamp_ms(clock.new_version(2000.9)) == 2000
    assert timestamp_ms(VersionClock().new_version(-50)) == 0


def test_same_millisecond_increments_random_field():
    clock = VersionClock(random_bits=fixed_random(41))
    first = clock.new_version(1000)
    second = clock.new_version(1000)

    assert VersionClock.random_field(first) == 41
    assert VersionClock.random_field(second) == 42
    assert clock.last_timestamp_ms == 1000
    assert clock.last_random == 42
    assert compare_versions(first, second) == -1


def test_same_millisecond_random_field_wraps():
    clock = VersionClock(random_bits=fixed_random(RANDOM_MASK))
    first = clock.new_version(5000)
    second = clock.new_version(5000)
    assert VersionClock.random_field(first) == RANDOM_MASK
    assert VersionClock.random_field(second) == 0


def test_later_millisecond_sorts_after_any_random_field():
    high = VersionClock(random_bits=fixed_random(RANDOM_MASK)).new_version(1000)
    low = VersionClock(random_bits=fixed_random(0)).new_version(1001)
    assert compare_versions(high, low) == -1
    assert compare_versions(low, high) == 1
    assert compare_versions(low, low) == 0


def test_many_versions_are_strictly_increasing():
    clock = VersionClock()
    versions = [clock.new_version(7777) for _ in range(50)]
    for a, b in zip(versions, versions[1:]):
        assert compare_versions(a, b) == -1


def test_is_version_id_rejects_other_strings():
    assert is_version_id("0190a8c2-3c4d-7e5f-8a6b-1c2d3e4f5a6b")
    assert is_version_id("0190A8C2-3C4D-7E5F-8A6B-1C2D3E4F5A6B")
    # v4 uuid
    assert not is_version_id("0190a8c2-3c4d-4e5f-8a6b-1c2d3e4f5a6b")
    # wrong variant
    assert not is_version_id("0190a8c2-3c4d-7e5f-0a6b-1c2d3e4f5a6b")
    assert not is_version_id("")
    assert not is_version_id(None)
    assert not is_version_id(12345)


def test_compare_versions_never_raises_on_invalid_input():
    valid = VersionClock().new_version()
    assert compare_versions(valid, "garbage") == 0
    assert compare_versions(None, valid) == 0
    assert compare_versions(None, None) == 0
    assert timestamp_ms("garbage") == 0


def test_random_field_rejects_invalid_version():
    try:
        VersionClock.random_field("not-a-version")
    except ValueError:
        pass
    else:
        raise AssertionError("expected ValueError")
