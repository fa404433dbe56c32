"""Tests for the shared validation module."""

from __future__ import annotations

import pytest

from optledger.validation import check_operator_text, is_commit_hash, is_issue_id, is_session_id


class TestCheckOperatorText:
    """check_operator_text() pure function tests."""

    def test_valid_decision(self) -> None:
        cleaned, err = check_operator_text("implement P1, P2 'next sprint'")
        assert cleaned == "implement P1, P2 'next sprint'"
        assert err is None

    def test_strips_whitespace(self) -> None:
        cleaned, err = check_operator_text("  skip all  ")
        assert cleaned == "skip all"
        assert err is None

    @pytest.mark.parametrize("text", ["skip all\t", "\nskip all", "skip\tall", "skip all\r\n"])
    def test_tabs_and_newlines_rejected(self, text: str) -> None:
        cleaned, err = check_operator_text(text)
        assert cleaned == ""
        assert err is not None
        assert "disallowed characters" in err

    def test_at_max_length(self) -> None:
        cleaned, err = check_operator_text("a" * 500)
        assert cleaned == "a" * 500
        assert err is None

    def test_over_max_length(self) -> None:
        cleaned, err = check_operator_text("a" * 501)
        assert cleaned == ""
        assert err is not None
        assert "500" in err

    def test_custom_max_length(self) -> None:
        _, err = check_operator_text("skip all", max_length=4)
        assert err is not None

    def test_backtick_rejected(self) -> None:
        cleaned, err = check_operator_text("skip A `whoami`")
        assert cleaned == ""
        assert err is not None
        assert "'`'" in err

    def test_lists_every_bad_character(self) -> None:
        _, err = check_operator_text("skip A; rm $HOME")
        assert err is not None
        assert "';'" in err
        assert "'$'" in err

    def test_non_string(self) -> None:
        cleaned, err = check_operator_text(42, field="comment")
        assert cleaned == ""
        assert err == "comment must be a string"

    def test_unicode_rejected(self) -> None:
        _, err = check_operator_text("skip é")
        assert err is not None


class TestIdentifiers:
    def test_session_ids(self) -> None:
        assert is_session_id("20240301_120000")
        assert is_session_id("20240301_120000_07")
        assert not is_session_id("2024-03-01")
        assert not is_session_id("../20240301_120000")

    def test_commit_hashes(self) -> None:
        assert is_commit_hash("abc123")
        assert is_commit_hash("0" * 40)
        assert not is_commit_hash("ABC123")
        assert not is_commit_hash("../HEAD")
        assert not is_commit_hash("abc")

    @pytest.mark.parametrize("value", ["A", "P1", "OPT-001", "cache.v2", "7"])
    def test_issue_ids(self, value: str) -> None:
        assert is_issue_id(value)

    @pytest.mark.parametrize("value", ["OPT_001", "a/b", "x:y", "-A", ".A", "A B", "", "all", "Skip", "GITHUB"])
    def test_rejected_issue_ids(self, value: str) -> None:
        assert not is_issue_id(value)
