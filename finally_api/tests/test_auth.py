import base64
import io
import json
import time
import unittest
from http.client import IncompleteRead
from unittest import mock
from urllib.error import URLError

from jose import jwt

from finally_api.auth import (
    AuthenticatedIdentity,
    JwksKeyProvider,
    KeyProviderUnavailable,
    StaticKeyProvider,
    TokenVerifier,
    resolve_user_id,
)
from finally_api.db import create_db_engine, init_db

SECRET = "finally-test-signing-secret-0123456789"
TEST_KEY = {
    "kty": "oct",
    "kid": "test-key",
    "alg": "HS256",
    "k": base64.urlsafe_b64encode(SECRET.encode()).rstrip(b"=").decode(),
}


def make_token(sub="user-1", secret=SECRET, kid="test-key", **claims):
    payload = {
        "sub": sub,
        "aud": "test-client",
        "email": f"{sub}@example.com",
        "exp": int(time.time()) + 3600,
    }
    payload.update(claims)
    payload = {name: value for name, value in payload.items() if value is not None}
    return jwt.encode(payload, secret, algorithm="HS256", headers={"kid": kid})


def make_verifier(**overrides):
    options = {
        "key_provider": StaticKeyProvider(keys=(TEST_KEY,)),
        "accepted_client_ids": frozenset({"test-client"}),
        "algorithms": ("HS256",),
    }
    options.update(overrides)
    return TokenVerifier(**options)


class TokenVerifierTests(unittest.TestCase):
    def test_valid_token_yields_identity(self) -> None:
        identity = make_verifier().verify(f"Bearer {make_token(name='Ada')}")

        self.assertEqual(identity.sub, "user-1")
        self.assertEqual(identity.email, "user-1@example.com")
        self.assertEqual(identity.name, "Ada")

    def test_missing_or_malformed_header_is_rejected(self) -> None:
        verifier = make_verifier()

        self.assertIsNone(verifier.verify(None))
        self.assertIsNone(verifier.verify(""))
        self.assertIsNone(verifier.verify(f"Basic {make_token()}"))
        self.assertIsNone(verifier.verify("Bearer not-a-token"))

    def test_bad_signature_is_rejected(self) -> None:
        token = make_token(secret="some-other-secret-that-is-long-enough")

        self.assertIsNone(make_verifier().verify(f"Bearer {token}"))

    def test_unknown_client_is_rejected(self) -> None:
        token = make_token(aud="someone-else")

        self.assertIsNone(make_verifier().verify(f"Bearer {token}"))

    def test_access_token_client_id_is_accepted(self) -> None:
        token = make_token(aud=None, client_id="test-client")

        identity = make_verifier().verify(f"Bearer {token}")

        self.assertIsNotNone(identity)

    def test_expired_token_is_rejected(self) -> None:
        token = make_token(exp=int(time.time()) - 10)

        self.assertIsNone(make_verifier().verify(f"Bearer {token}"))

    def test_unknown_key_id_is_rejected(self) -> None:
        token = make_token(kid="rotated-away")

        self.assertIsNone(make_verifier().verify(f"Bearer {token}"))

    def test_issuer_must_match_when_configured(self) -> None:
        verifier = make_verifier(issuer="https://issuer.example.com")

        self.assertIsNone(verifier.verify(f"Bearer {make_token(iss='https://evil.example.com')}"))
        self.assertIsNotNone(
            verifier.verify(f"Bearer {make_token(iss='https://issuer.example.com')}")
        )

    def test_mock_auth_skips_verification(self) -> None:
        verifier = make_verifier(key_provider=None, mock_auth=True)

        identity = verifier.verify(None)

        self.assertEqual(identity.sub, "test-user-123")

    def test_unavailable_jwks_rejects_instead_of_raising(self) -> None:
        provider = JwksKeyProvider(url="https://keys.example.com/jwks.json")
        verifier = make_verifier(key_provider=provider)

        with mock.patch("finally_api.auth.urlopen", side_effect=URLError("down")):
            self.assertIsNone(verifier.verify(f"Bearer {make_token()}"))


class JwksKeyProviderTests(unittest.TestCase):
    def test_keys_are_cached(self) -> None:
        provider = JwksKeyProvider(url="https://keys.example.com/jwks.json")
        body = json.dumps({"keys": [TEST_KEY]}).encode()

        with mock.patch("finally_api.auth.urlopen") as urlopen:
            urlopen.return_value.__enter__.return_value = io.BytesIO(body)
            first = provider.get_keys()
            second = provider.get_keys()

        self.assertEqual(first, (TEST_KEY,))
        self.assertEqual(second, first)
        self.assertEqual(urlopen.call_count, 1)

    def test_truncated_body_is_unavailable(self) -> None:
        provider = JwksKeyProvider(url="https://keys.example.com/jwks.json")
        verifier = make_verifier(key_provider=provider)

        with mock.patch("finally_api.auth.urlopen") as urlopen:
            urlopen.return_value.__enter__.return_value.read.side_effect = IncompleteRead(b"{")
            with self.assertRaises(KeyProviderUnavailable):
                provider.get_keys()
            self.assertIsNone(verifier.verify(f"Bearer {make_token()}"))

    def test_connection_reset_is_unavailable(self) -> None:
        provider = JwksKeyProvider(url="https://keys.example.com/jwks.json")

        with mock.patch("finally_api.auth.urlopen") as urlopen:
            urlopen.return_value.__enter__.return_value.read.side_effect = ConnectionResetError()
            with self.assertRaises(KeyProviderUnavailable):
                provider.get_keys()


class ResolveUserTests(unittest.TestCase):
    def test_user_is_created_once_per_subject(self) -> None:
        engine = create_db_engine("sqlite://")
        init_db(engine)
        identity = AuthenticatedIdentity(sub="abc", email="abc@example.com")

        with engine.begin() as conn:
            first = resolve_user_id(conn, identity)
        with engine.begin() as conn:
            second = resolve_user_id(conn, identity)

        self.assertEqual(first, second)
        engine.dispose()


if __name__ == "__main__":
    unittest.main()
