import base64
import json
from datetime import timedelta

import pytest

from authcore.service.errors import (
    TokenError,
    TokenExpiredError,
    TokenInvalidError,
    TokenMalformedError,
)
from authcore.service.tokens import ACCESS, REFRESH, TokenIssuer
from authcore.storage.models import Session, User

from conftest import FakeClock, make_settings


def _user() -> User:
    return User(
        id="user-1",
        email="alice@example.com",
        password_hash="x",
        name="Alice",
        role="admin",
    )


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


@pytest.fixture
def issuer_clock():
    clock = FakeClock()
    return TokenIssuer(make_settings(), clock=clock), clock


class TestTokenIssuer:
    def test_access_token_round_trip_claims(self, issuer_clock):
        issuer, clock = issuer_clock
        session = Session.new("user-1", now=clock.now)

        issued = issuer.issue_access(_user(), session)
        claims = issuer.verify(issued.token, expected_type=ACCESS)

        assert claims.user_id == "user-1"
        assert claims.session_id == session.id
        assert claims.token_type == ACCESS
        assert claims.role == "admin"
        assert claims.email == "alice@example.com"
        assert claims.jti == issued.jti
        assert claims.expires_at == clock.now + timedelta(minutes=15)
        assert issued.expires_at == claims.expires_at

    def test_pair_has_distinct_types_and_lifetimes(self, issuer_clock):
        issuer, clock = issuer_clock
        session = Session.new("user-1", now=clock.now)

        pair = issuer.issue_pair(_user(), session)

        assert pair.token_type == "bearer"
        assert issuer.verify(pair.refresh.token).token_type == REFRESH
        assert pair.refresh.expires_at - clock.now == timedelta(days=7)
        assert pair.access.jti != pair.refresh.jti

    def test_wrong_type_rejected(self, issuer_clock):
        issuer, clock = issuer_clock
        session = Session.new("user-1", now=clock.now)
        pair = issuer.issue_pair(_user(), session)

        with pytest.raises(TokenInvalidError):
            issuer.verify(pair.refresh.token, expected_type=ACCESS)
        with pytest.raises(TokenInvalidError):
            issuer.verify(pair.access.token, expected_type=REFRESH)

    def test_negative_ttl_is_expired(self, issuer_clock):
        issuer, clock = issuer_clock
        session = Session.new("user-1", now=clock.now)
        issued = issuer.issue_access(_user(), session, ttl=timedelta(seconds=-10))

        with pytest.raises(TokenExpiredError) as excinfo:
            issuer.verify(issued.token)
        assert excinfo.value.detail["reason"] == "token_expired"

    def test_expiry_is_exact(self, issuer_clock):
        issuer, clock = issuer_clock
        session = Session.new("user-1", now=clock.now)
        issued = issuer.issue_refresh(_user(), session, ttl=timedelta(minutes=1))

        clock.advance(seconds=59)
        issuer.verify(issued.token)

        clock.advance(seconds=1)
        with pytest.raises(TokenExpiredError):
            issuer.verify(issued.token)

    def test_skew_setting_does_not_extend_expiry(self, issuer_clock):
        _, clock = issuer_clock
        issuer = TokenIssuer(make_settings(token_clock_skew_seconds=300), clock=clock)
        issued = issuer.issue_access(
            _user(), Session.new("user-1", now=clock.now), ttl=timedelta(minutes=1)
        )

        clock.advance(minutes=1, seconds=1)
        with pytest.raises(TokenExpiredError):
            issuer.verify(issued.token)

    def test_future_issued_at_beyond_skew_rejected(self, issuer_clock):
        issuer, clock = issuer_clock
        ahead = FakeClock(clock.now + timedelta(seconds=20))
        fast = TokenIssuer(make_settings(), clock=ahead)
        within_skew = fast.issue_access(_user(), Session.new("user-1", now=clock.now))
        issuer.verify(within_skew.token)

        ahead.advance(minutes=5)
        too_far = fast.issue_access(_user(), Session.new("user-1", now=clock.now))
        with pytest.raises(TokenInvalidError):
            issuer.verify(too_far.token)

    def test_tampered_payload_rejected(self, issuer_clock):
        issuer, clock = issuer_clock
        session = Session.new("user-1", now=clock.now)
        header, _, signature = issuer.issue_access(_user(), session).token.split(".")
        forged_payload = _b64({"sub": "user-2", "sid": session.id, "token_type": ACCESS})

        with pytest.raises(TokenInvalidError):
            issuer.verify(f"{header}.{forged_payload}.{signature}")

    def test_other_secret_rejected(self, issuer_clock):
        issuer, clock = issuer_clock
        other = TokenIssuer(
            make_settings(jwt_secret="another-signing-secret-0123456789abcdef"), clock=clock
        )
        token = other.issue_access(_user(), Session.new("user-1", now=clock.now)).token

        with pytest.raises(TokenInvalidError):
            issuer.verify(token)

    def test_none_algorithm_rejected(self, issuer_clock):
        issuer, clock = issuer_clock
        token = issuer.issue_access(_user(), Session.new("user-1", now=clock.now)).token
        _, payload, _ = token.split(".")
        unsigned = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{payload}."

        with pytest.raises(TokenInvalidError):
            issuer.verify(unsigned)

    def test_audience_mismatch_rejected(self, issuer_clock):
        issuer, clock = issuer_clock
        other = TokenIssuer(make_settings(jwt_audience="someone-else"), clock=clock)
        token = other.issue_access(_user(), Session.new("user-1", now=clock.now)).token

        with pytest.raises(TokenInvalidError):
            issuer.verify(token)

    @pytest.mark.parametrize(
        "token",
        ["", "abc", "a.b", "!!!.???.###", "a.b.c.d"],
    )
    def test_malformed_tokens(self, issuer_clock, token):
        issuer, _ = issuer_clock
        with pytest.raises(TokenMalformedError):
            issuer.verify(token)

    def test_all_failures_are_token_errors(self):
        assert issubclass(TokenMalformedError, TokenError)
        assert issubclass(TokenExpiredError, TokenError)
        assert issubclass(TokenInvalidError, TokenError)
