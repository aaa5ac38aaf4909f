"""Tests for duration parsing."""

import pytest

from azsecrets.durations import parse_duration
from azsecrets.errors import InvalidConfiguration


class TestParseDuration:
    """Tests for parse_duration."""

    @pytest.mark.parametrize(
        ("value", "seconds"),
        [
            (0, 0),
            (3600, 3600),
            (90.7, 90),
            ("", 0),
            ("45", 45),
            ("90s", 90),
            ("1m", 60),
            ("1h", 3600),
            ("1h30m", 5400),
            ("7d", 604800),
            ("1500ms", 1),
            (" 2h ", 7200),
        ],
    )
    def test_valid_values(self, value: object, seconds: int) -> None:
        assert parse_duration(value) == seconds

    @pytest.mark.parametrize("value", ["-5", -1, "1x", "h", "1h-", "1.5.5s", True, None, [60]])
    def test_invalid_values(self, value: object) -> None:
        with pytest.raises(InvalidConfiguration):
            parse_duration(value)

    def test_error_names_field(self) -> None:
        """Test that the error message carries the field name."""
        with pytest.raises(InvalidConfiguration) as exc_info:
            parse_duration("soon", field_name="root_password_ttl")

        assert "root_password_ttl" in str(exc_info.value)
