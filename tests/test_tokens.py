"""Unit tests for access/refresh token signing and verification."""

import json
from datetime import timedelta

import pytest

from vaultsync.service.tokens import ACCESS, REFRESH, TokenCodec, extract_bearer


@pytest.fixture
def codec(settings):
    return TokenCodec(settings)


def _tamper_payload(codec, token, **changes):
    header, payload, sig = token.split(".")
    claims = json.loads(codec._decode_segment(payload))
    claims.update(changes)
    new_payload = codec._encode_segment(json.dumps(claims).encode())
    return f"{header}.{new_payload}.{sig}"


class TestAccessTokens:
    def test_round_trip_carries_identity_claims(self, codec):
        token = codec.encode_access("user-1", "a@example.com", "sess-1", "dev-1")
        payload = codec.decode_access(token)

        assert payload["sub"] == "user-1"
        assert payload["email"] == "a@example.com"
        assert payload["sid"] == "sess-1"
        assert payload["did"] == "dev-1"
        assert payload["typ"] == ACCESS
        assert payload["iss"] == codec.issuer
        assert payload["aud"] == codec.audience

    def test_refresh_token_is_not_accepted_as_access(self, codec):
        refresh = codec.encode_refresh("user-1", "sess-1", "fam-1")
        assert codec.decode_access(refresh) is None

    def test_access_token_is_not_accepted_as_refresh(self, codec):
        access = codec.encode_access("user-1", "a@example.com", "sess-1", "dev-1")
        assert codec.decode_refresh(access) is None

    def test_modified_payload_fails_signature(self, codec):
        token = codec.encode_access("user-1", "a@example.com", "sess-1", "dev-1")
        forged = _tamper_payload(codec, token, sub="someone-else")
        assert codec.decode_access(forged) is None

    def test_non_hs256_header_rejected(self, codec):
        token = codec.encode_access("user-1", "a@example.com", "sess-1", "dev-1")
        _, payload, sig = token.split(".")
        none_header = codec._encode_segment(json.dumps({"alg": "none", "typ": "JWT"}).encode())
        assert codec.decode_access(f"{none_header}.{payload}.{sig}") is None

    def test_garbage_rejected(self, codec):
        assert codec.decode_access("") is None
        assert codec.decode_access("not-a-token") is None
        assert codec.decode_access("a.b.c") is None

    def test_non_ascii_token_rejected(self, codec):
        token = codec.encode_access("user-1", "a@example.com", "sess-1", "dev-1")
        header, payload, sig = token.split(".")
        assert codec.decode_access(f"{header}.{payload}.{sig[:-1]}\u00e9") is None
        assert codec.decode_refresh(f"{header}.{payload}.{sig}\udcff") is None
        assert codec.decode_access(f"{header}.{payload}\udcff.{sig}") is None

    def test_expired_token_rejected_past_leeway(self, codec):
        expired = codec._encode(
            ACCESS,
            {"sub": "user-1", "sid": "sess-1", "did": "dev-1"},
            -(codec.leeway + timedelta(seconds=5)),
        )
        assert codec.decode_access(expired) is None

    def test_recently_expired_token_within_leeway_accepted(self, codec):
        token = codec._encode(
            ACCESS,
            {"sub": "user-1", "sid": "sess-1", "did": "dev-1"},
            timedelta(seconds=-5),
        )
        assert codec.decode_access(token) is not None

    def test_foreign_issuer_rejected(self, settings, codec):
        other = TokenCodec(settings.model_copy(update={"jwt_issuer": "someone-else"}))
        token = other.encode_access("user-1", "a@example.com", "sess-1", "dev-1")
        assert codec.decode_access(token) is None

    def test_foreign_audience_rejected(self, settings, codec):
        other = TokenCodec(settings.model_copy(update={"jwt_audience": "other-clients"}))
        token = other.encode_access("user-1", "a@example.com", "sess-1", "dev-1")
        assert codec.decode_access(token) is None

    def test_missing_session_claim_rejected(self, codec):
        token = codec._encode(ACCESS, {"sub": "user-1"}, codec.access_ttl)
        assert codec.decode_access(token) is None


class TestRefreshTokens:
    def test_refresh_requires_family(self, codec):
        token = codec._encode(REFRESH, {"sub": "user-1", "sid": "sess-1"}, codec.refresh_ttl)
        assert codec.decode_refresh(token) is None

    def test_consecutive_pairs_differ(self, codec):
        first = codec.issue_pair("user-1", "a@example.com", "sess-1", "dev-1", "fam-1")
        second = codec.issue_pair("user-1", "a@example.com", "sess-1", "dev-1", "fam-1")

        assert first.refresh_token != second.refresh_token
        assert first.access_token != second.access_token

    def test_issue_pair_shape(self, codec):
        pair = codec.issue_pair("user-1", "a@example.com", "sess-1", "dev-1", "fam-1")
        body = pair.to_dict()

        assert body["token_type"] == "bearer"
        assert body["expires_in"] == codec.access_ttl_seconds
        assert codec.decode_refresh(body["refresh_token"])["family"] == "fam-1"


class TestExtractBearer:
    def test_extracts_token(self):
        assert extract_bearer("Bearer abc.def.ghi") == "abc.def.ghi"
        assert extract_bearer("bearer abc") == "abc"

    def test_rejects_other_schemes(self):
        assert extract_bearer(None) is None
        assert extract_bearer("") is None
        assert extract_bearer("Basic dXNlcjpwYXNz") is None
        assert extract_bearer("Bearer   ") is None
