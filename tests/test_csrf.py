"""Unit tests for double-submit CSRF tokens."""

import pytest

from authcore.service.csrf import CsrfGuard
from authcore.service.errors import InvalidInputError
from authcore.storage.models import CsrfPair


class TestCsrfIssue:
    def test_issue_returns_matching_pair(self, csrf):
        pair = csrf.issue("session-1")

        assert isinstance(pair, CsrfPair)
        assert pair.cookie_value == pair.header_value
        assert "." in pair.cookie_value

    def test_values_are_unpredictable(self, csrf):
        values = {csrf.issue("session-1").cookie_value for _ in range(20)}

        assert len(values) == 20

    @pytest.mark.parametrize("session_id", ["", None, 42])
    def test_issue_requires_session(self, csrf, session_id):
        with pytest.raises(InvalidInputError):
            csrf.issue(session_id)


class TestCsrfVerify:
    """verify is a predicate: True only for a matching pair minted for the session."""

    def test_valid_pair(self, csrf):
        pair = csrf.issue("session-1")

        assert csrf.verify("session-1", pair.cookie_value, pair.header_value) is True
        assert csrf.verify_pair("session-1", pair) is True

    def test_absent_header(self, csrf):
        pair = csrf.issue("session-1")

        assert csrf.verify("session-1", pair.cookie_value, None) is False
        assert csrf.verify("session-1", pair.cookie_value, "") is False

    def test_absent_cookie(self, csrf):
        pair = csrf.issue("session-1")

        assert csrf.verify("session-1", None, pair.header_value) is False

    def test_mismatch(self, csrf):
        pair = csrf.issue("session-1")

        assert csrf.verify("session-1", pair.cookie_value, "wrong") is False

    def test_other_session(self, csrf):
        pair = csrf.issue("session-1")

        assert csrf.verify("session-2", pair.cookie_value, pair.header_value) is False

    def test_other_secret(self, csrf):
        pair = CsrfGuard(b"some-other-secret-0123456789abcdef").issue("session-1")

        assert csrf.verify("session-1", pair.cookie_value, pair.header_value) is False

    def test_forged_matching_pair(self, csrf):
        """An attacker choosing both values still needs the server MAC."""
        forged = "A" * 43 + "." + "B" * 43

        assert csrf.verify("session-1", forged, forged) is False

    def test_tampered_nonce(self, csrf):
        pair = csrf.issue("session-1")
        nonce, mac = pair.cookie_value.split(".")
        tampered = ("A" if nonce[0] != "A" else "B") + nonce[1:] + "." + mac

        assert csrf.verify("session-1", tampered, tampered) is False

    @pytest.mark.parametrize(
        "session_id,cookie,header",
        [
            (None, "a", "a"),
            (123, "a", "a"),
            ("s", b"bytes", b"bytes"),
            ("s", "no-dot", "no-dot"),
            ("s", "é.é", "é.é"),
        ],
    )
    def test_never_raises_on_garbage(self, csrf, session_id, cookie, header):
        assert csrf.verify(session_id, cookie, header) is False

    def test_verify_pair_rejects_non_pair(self, csrf):
        pair = csrf.issue("session-1")

        assert csrf.verify_pair("session-1", (pair.cookie_value, pair.header_value)) is False

    def test_trailing_newline_rejected(self, csrf):
        pair = csrf.issue("session-1")
        padded = pair.cookie_value + "\n"

        assert csrf.verify("session-1", padded, padded) is False
