"""Unit tests for the HS256 token codec."""

from datetime import timedelta

import pytest

from taskverse.service.tokens import (
    ACCESS,
    REFRESH,
    InvalidTokenError,
    TokenCodec,
    TokenExpiredError,
    extract_bearer,
)

SECRET = "a" * 40
OTHER_SECRET = "b" * 40


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def codec(clock):
    return TokenCodec("taskverse-api", "taskverse-client", clock=clock)


class TestIssueAndVerify:
    def test_round_trip_claims(self, codec):
        token = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        claims = codec.verify(token, SECRET)
        assert claims.subject == "user-1"
        assert claims.purpose == ACCESS
        assert claims.token_id is None
        assert (claims.expires_at - claims.issued_at) == timedelta(minutes=15)

    def test_refresh_token_carries_token_id(self, codec):
        token = codec.issue(
            "user-1", REFRESH, SECRET, timedelta(days=7), token_id="abc123"
        )
        claims = codec.verify(token, SECRET)
        assert claims.purpose == REFRESH
        assert claims.token_id == "abc123"

    def test_tokens_issued_in_same_second_differ(self, codec):
        first = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        second = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        assert first != second


class TestRejection:
    def test_wrong_secret_is_invalid(self, codec):
        token = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        with pytest.raises(InvalidTokenError):
            codec.verify(token, OTHER_SECRET)

    def test_tampered_payload_is_invalid(self, codec):
        token = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        other = codec.issue("user-2", ACCESS, SECRET, timedelta(minutes=15))
        header, _, sig = token.split(".")
        forged = ".".join([header, other.split(".")[1], sig])
        with pytest.raises(InvalidTokenError):
            codec.verify(forged, SECRET)

    @pytest.mark.parametrize("token", ["", "not-a-token", "a.b", "a.b.c.d"])
    def test_malformed_tokens_are_invalid(self, codec, token):
        with pytest.raises(InvalidTokenError):
            codec.verify(token, SECRET)

    @pytest.mark.parametrize("signature", ["sig\u00e9", "\u00e9" * 43, "\ud800"])
    def test_non_ascii_signature_is_invalid(self, codec, signature):
        token = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        header, payload, _ = token.split(".")
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{payload}.{signature}", SECRET)

    def test_expired_token(self, codec, clock):
        token = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        clock.now += 15 * 60 + 1
        with pytest.raises(TokenExpiredError):
            codec.verify(token, SECRET)

    def test_token_valid_at_exact_expiry(self, codec, clock):
        token = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        clock.now += 15 * 60
        assert codec.verify(token, SECRET).subject == "user-1"

    def test_leeway_extends_expiry(self, clock):
        lenient = TokenCodec("taskverse-api", "taskverse-client", leeway_seconds=30, clock=clock)
        token = lenient.issue("user-1", ACCESS, SECRET, timedelta(minutes=1))
        clock.now += 80
        assert lenient.verify(token, SECRET).subject == "user-1"

    def test_audience_mismatch(self, codec, clock):
        foreign = TokenCodec("taskverse-api", "someone-else", clock=clock)
        token = foreign.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        with pytest.raises(InvalidTokenError):
            codec.verify(token, SECRET)

    def test_issuer_mismatch(self, codec, clock):
        foreign = TokenCodec("other-issuer", "taskverse-client", clock=clock)
        token = foreign.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        with pytest.raises(InvalidTokenError):
            codec.verify(token, SECRET)

    def test_none_algorithm_rejected(self, codec):
        token = codec.issue("user-1", ACCESS, SECRET, timedelta(minutes=15))
        _, payload, _ = token.split(".")
        header = TokenCodec._encode_segment(b'{"alg":"none","typ":"JWT"}')
        with pytest.raises(InvalidTokenError):
            codec.verify(f"{header}.{payload}.", SECRET)


class TestExtractBearer:
    def test_extracts_token(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"

    def test_scheme_is_case_insensitive(self):
        assert extract_bearer("bearer abc") == "abc"

    @pytest.mark.parametrize("header", [None, "", "Basic abc", "Bearer ", "Bearer"])
    def test_missing_or_foreign_scheme(self, header):
        assert extract_bearer(header) is None
