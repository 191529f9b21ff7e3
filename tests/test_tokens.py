"""Unit tests for session token issuance and verification."""

from datetime import timedelta

import pytest

from authcore.config import SigningAlgorithm
from authcore.service.errors import (
    ExpiredError,
    InvalidInputError,
    MalformedTokenError,
    RevokedError,
    ServerError,
    SignatureMismatchError,
)
from authcore.service.tokens import (
    TokenAuthority,
    canonical_json,
    decode_segment,
    encode_segment,
)
from authcore.storage.models import SessionToken

SECRET = b"unit-test-secret-key-0123456789abcdef"


def _forge(authority, header, payload):
    """Sign arbitrary segments with the authority's key."""
    signing_input = (
        f"{encode_segment(canonical_json(header))}.{encode_segment(canonical_json(payload))}"
    )
    return f"{signing_input}.{authority._sign(signing_input)}"


def _payload(authority, **overrides):
    now = authority.now()
    payload = {
        "iss": authority.issuer,
        "aud": authority.audience,
        "sub": "alice",
        "iat": now,
        "exp": now + 60,
        "jti": "jti-1",
    }
    payload.update(overrides)
    return payload


class TestIssue:
    """Tests for token issuance."""

    def test_issue_returns_signed_token(self, tokens, clock):
        token = tokens.issue("alice")

        assert isinstance(token, SessionToken)
        assert token.subject_id == "alice"
        assert token.issued_at == int(clock.now)
        assert token.expires_at == token.issued_at + 900
        assert token.encoded.count(".") == 2
        assert token.encoded.endswith(token.signature)
        assert str(token) == token.encoded

    def test_token_ids_are_unique(self, tokens):
        ids = {tokens.issue("alice").token_id for _ in range(50)}

        assert len(ids) == 50

    def test_custom_ttl(self, tokens):
        token = tokens.issue("alice", ttl=timedelta(minutes=5))

        assert token.expires_at - token.issued_at == 300

    @pytest.mark.parametrize("ttl", [0, -5, 86401, "60", True])
    def test_invalid_ttl_rejected(self, tokens, ttl):
        with pytest.raises(InvalidInputError):
            tokens.issue("alice", ttl=ttl)

    def test_empty_subject_rejected(self, tokens):
        with pytest.raises(InvalidInputError):
            tokens.issue("")

    def test_payload_is_canonical_json(self, tokens):
        """Payload bytes are sorted-key compact JSON."""
        token = tokens.issue("alice")
        payload_bytes = decode_segment(token.encoded.split(".")[1])

        assert payload_bytes.startswith(b'{"aud":')
        assert b" " not in payload_bytes

    def test_canonical_json_is_order_independent(self):
        assert canonical_json({"b": 1, "a": 2}) == canonical_json({"a": 2, "b": 1})
        assert canonical_json({"b": 1, "a": 2}) == b'{"a":2,"b":1}'

    def test_segments_have_no_padding(self):
        assert encode_segment(b"a") == "YQ"
        assert decode_segment("YQ") == b"a"


class TestVerify:
    """Tests for verification order and failure classes."""

    def test_verify_valid_token(self, tokens):
        token = tokens.issue("alice")
        claims = tokens.verify(token.encoded)

        assert claims.subject_id == "alice"
        assert claims.token_id == token.token_id
        assert claims.expires_at == token.expires_at

    def test_verify_accepts_token_object(self, tokens):
        token = tokens.issue("alice")

        assert tokens.verify(token).subject_id == "alice"

    def test_expiry_respects_clock_skew(self, tokens, clock):
        token = tokens.issue("alice", ttl=60)

        clock.advance(60 + 30)
        assert tokens.verify(token).subject_id == "alice"

        clock.advance(1)
        with pytest.raises(ExpiredError):
            tokens.verify(token)

    def test_decode_without_expiry_check(self, tokens, clock):
        token = tokens.issue("alice", ttl=60)
        clock.advance(3600)

        assert tokens.decode(token, check_expiry=False).token_id == token.token_id

    def test_every_byte_mutation_is_signature_mismatch(self, tokens):
        """Changing any single payload character breaks the signature."""
        token = tokens.issue("alice")
        header, payload, signature = token.encoded.split(".")

        for index, char in enumerate(payload):
            replacement = "A" if char != "A" else "B"
            mutated = payload[:index] + replacement + payload[index + 1:]
            with pytest.raises(SignatureMismatchError):
                tokens.verify(f"{header}.{mutated}.{signature}")

    def test_non_ascii_mutation_is_signature_mismatch(self, tokens):
        token = tokens.issue("alice")
        header, payload, signature = token.encoded.split(".")

        with pytest.raises(SignatureMismatchError):
            tokens.verify(f"{header}.{payload[:-1]}é.{signature}")

    def test_signature_mutation(self, tokens):
        token = tokens.issue("alice")
        flipped = "A" if token.signature[0] != "A" else "B"

        with pytest.raises(SignatureMismatchError):
            tokens.verify(token.encoded[: -len(token.signature)] + flipped + token.signature[1:])

    def test_other_key_is_signature_mismatch(self, tokens):
        other = TokenAuthority(b"another-secret-key-0123456789abcdef")

        with pytest.raises(SignatureMismatchError):
            tokens.verify(other.issue("alice"))

    @pytest.mark.parametrize(
        "encoded",
        ["", "abc", "a.b", "a..c", "a.b.c.d", "x" * 5000],
    )
    def test_malformed_shapes(self, tokens, encoded):
        with pytest.raises(MalformedTokenError):
            tokens.verify(encoded)

    def test_signed_segment_with_trailing_newline(self, tokens):
        """A validly signed segment still has to be pure base64url."""
        header = encode_segment(canonical_json({"alg": "HS256", "typ": "JWT"}))
        payload = encode_segment(canonical_json(_payload(tokens))) + "\n"
        signing_input = f"{header}.{payload}"

        with pytest.raises(MalformedTokenError):
            tokens.verify(f"{signing_input}.{tokens._sign(signing_input)}")

    def test_trailing_newline_after_signature(self, tokens):
        token = tokens.issue("alice")

        with pytest.raises(SignatureMismatchError):
            tokens.verify(token.encoded + "\n")

    def test_non_string_token(self, tokens):
        with pytest.raises(MalformedTokenError):
            tokens.verify(None)

    def test_wrong_header_algorithm(self, tokens):
        forged = _forge(tokens, {"alg": "none", "typ": "JWT"}, _payload(tokens))

        with pytest.raises(MalformedTokenError):
            tokens.verify(forged)

    def test_other_signing_algorithm_rejected(self, tokens):
        strong = TokenAuthority(SECRET, algorithm=SigningAlgorithm.HS512)

        with pytest.raises(SignatureMismatchError):
            tokens.verify(strong.issue("alice"))

    def test_hs512_round_trip(self):
        strong = TokenAuthority(SECRET, algorithm=SigningAlgorithm.HS512)

        assert strong.verify(strong.issue("alice")).subject_id == "alice"

    def test_wrong_issuer(self, tokens):
        forged = _forge(tokens, {"alg": "HS256", "typ": "JWT"}, _payload(tokens, iss="elsewhere"))

        with pytest.raises(MalformedTokenError):
            tokens.verify(forged)

    def test_audience_list_accepted(self, tokens):
        forged = _forge(
            tokens,
            {"alg": "HS256", "typ": "JWT"},
            _payload(tokens, aud=["other", tokens.audience]),
        )

        assert tokens.verify(forged).subject_id == "alice"

    def test_wrong_audience(self, tokens):
        forged = _forge(tokens, {"alg": "HS256", "typ": "JWT"}, _payload(tokens, aud="other"))

        with pytest.raises(MalformedTokenError):
            tokens.verify(forged)

    @pytest.mark.parametrize(
        "overrides",
        [
            {"sub": ""},
            {"sub": 42},
            {"jti": None},
            {"iat": "now"},
            {"exp": True},
            {"exp": 0},
        ],
    )
    def test_invalid_claims(self, tokens, overrides):
        forged = _forge(tokens, {"alg": "HS256", "typ": "JWT"}, _payload(tokens, **overrides))

        with pytest.raises(MalformedTokenError):
            tokens.verify(forged)

    def test_payload_not_json(self, tokens):
        header = encode_segment(canonical_json({"alg": "HS256", "typ": "JWT"}))
        payload = encode_segment(b"not json")
        signing_input = f"{header}.{payload}"

        with pytest.raises(MalformedTokenError):
            tokens.verify(f"{signing_input}.{tokens._sign(signing_input)}")

    def test_issued_in_future(self, tokens, clock):
        future = TokenAuthority(SECRET, clock=lambda: clock.now + 3600)

        with pytest.raises(MalformedTokenError):
            tokens.verify(future.issue("alice"))


class TestRevoke:
    """Tests for token revocation."""

    def test_revoked_token_rejected(self, tokens):
        token = tokens.issue("alice")
        tokens.revoke(token.token_id, token.expires_at)

        with pytest.raises(RevokedError):
            tokens.verify(token)

    def test_revoke_is_idempotent(self, tokens, clock):
        token = tokens.issue("alice")
        first = tokens.revoke(token.token_id, token.expires_at)
        clock.advance(5)
        second = tokens.revoke(token.token_id, token.expires_at)

        assert first == second

    def test_revoke_unknown_id_is_accepted(self, tokens):
        entry = tokens.revoke("never-issued")

        assert entry.token_id == "never-issued"
        assert tokens.is_revoked("never-issued")

    def test_revoke_without_expiry_uses_max_lifetime(self, tokens, clock):
        entry = tokens.revoke("jti-x")

        assert entry.expires_at == int(clock.now) + tokens.max_ttl_seconds

    def test_decode_without_revocation_check(self, tokens):
        token = tokens.issue("alice")
        tokens.revoke(token.token_id, token.expires_at)

        assert tokens.decode(token, check_revocation=False).subject_id == "alice"

    def test_revoke_requires_revocation_set(self):
        bare = TokenAuthority(SECRET)

        with pytest.raises(ServerError):
            bare.revoke("jti")
        assert bare.is_revoked("jti") is False

    def test_pruned_revocation_never_revives_token(self, tokens, revocations, clock):
        """Around the expiry boundary a revoked token is either revoked or expired."""
        clock.now += 0.25
        token = tokens.issue("alice", ttl=60)
        tokens.revoke(token.token_id, token.expires_at, reason="logout")

        for offset in (29.5, 30.0, 30.5, 31.0, 3600.0):
            clock.now = token.expires_at + offset
            revocations.prune()
            with pytest.raises((RevokedError, ExpiredError)):
                tokens.verify(token)

    def test_expiry_uses_unrounded_clock(self, tokens, clock):
        token = tokens.issue("alice", ttl=60)
        clock.now = token.expires_at + 30.5

        with pytest.raises(ExpiredError):
            tokens.verify(token)

    def test_expiry_checked_before_revocation(self, tokens, clock):
        token = tokens.issue("alice", ttl=60)
        tokens.revoke(token.token_id, token.expires_at)
        clock.advance(3600)

        with pytest.raises(ExpiredError):
            tokens.verify(token)
