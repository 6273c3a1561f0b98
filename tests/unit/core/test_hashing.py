"""Tests for deterministic bucketing."""

import pytest

from src.core.hashing import BucketPurpose, bucket, bucket_key, hash_string, user_bucket


class TestHashString:
    """Known vectors shared with other bucketing clients."""

    @pytest.mark.parametrize(
        ("text", "expected"),
        [
            ("", 0),
            ("user_42_traffic", 818880048),
            ("user_42_variant", 2122976440),
            ("user_42_rollout", -1031668252),
            ("anonymous-7f3c_variant", 1263400837),
            ("josé_traffic", -1158636391),
        ],
    )
    def test_matches_reference_values(self, text: str, expected: int) -> None:
        assert hash_string(text) == expected

    def test_astral_characters_hash_as_surrogate_pairs(self) -> None:
        assert hash_string("😀_variant") == 534884777

    def test_wraps_to_signed_32_bit(self) -> None:
        value = hash_string("a much longer user identifier that overflows many times")
        assert -(2**31) <= value < 2**31


class TestBucket:
    """Tests for bucket()."""

    @pytest.mark.parametrize(
        ("key", "expected"),
        [
            ("", 0),
            ("abc", 54),
            ("user_123_traffic", 0),
            ("user_123_variant", 8),
            ("user_123_rollout", 96),
            ("user_42_traffic", 48),
            ("user_42_variant", 40),
            ("user_42_rollout", 52),
            ("josé_traffic", 91),
            ("😀_variant", 77),
        ],
    )
    def test_known_buckets(self, key: str, expected: int) -> None:
        assert bucket(key) == expected

    def test_is_deterministic(self) -> None:
        assert {bucket("user_7_variant") for _ in range(100)} == {bucket("user_7_variant")}

    def test_always_in_range(self) -> None:
        assert all(0 <= bucket(f"user_{i}_traffic") < 100 for i in range(5000))


class TestUserBucket:
    """Tests for purpose-scoped buckets."""

    def test_key_format(self) -> None:
        assert bucket_key("user_42", BucketPurpose.VARIANT) == "user_42_variant"

    def test_purposes_are_independent_keys(self) -> None:
        assert user_bucket("user_42", BucketPurpose.TRAFFIC) == 48
        assert user_bucket("user_42", BucketPurpose.VARIANT) == 40
        assert user_bucket("user_42", BucketPurpose.ROLLOUT) == 52

    def test_accepts_plain_string_purpose(self) -> None:
        assert user_bucket("user_123", "rollout") == 96
