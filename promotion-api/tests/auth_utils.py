import json
import os
import time
from typing import Iterable, Optional

import jwt
import requests
from jwt.algorithms import RSAAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa

ISSUER = "https://promote.example/"
AUDIENCE = "https://promotion-api"
ROLES_CLAIM = "https://promote.example/claims/roles"
EMAIL_CLAIM = "https://promote.example/claims/email"
TEAMS_CLAIM = "https://promote.example/claims/teams"
JWKS_URL = "https://promote.example/.well-known/jwks.json"
KID = "promote-test-key"

_PRIVATE_KEY = rsa.generate_private_key(public_exponent=65537, key_size=2048)
_PUBLIC_JWK = json.loads(RSAAlgorithm.to_jwk(_PRIVATE_KEY.public_key()))
_PUBLIC_JWK["kid"] = KID


def configure_auth_env() -> None:
    os.environ["PROMOTE_OIDC_ISSUER"] = ISSUER
    os.environ["PROMOTE_OIDC_AUDIENCE"] = AUDIENCE
    os.environ["PROMOTE_OIDC_JWKS_URL"] = JWKS_URL
    os.environ["PROMOTE_OIDC_ROLES_CLAIM"] = ROLES_CLAIM
    os.environ["PROMOTE_OIDC_TEAMS_CLAIM"] = TEAMS_CLAIM


def jwks_payload() -> dict:
    return {"keys": [_PUBLIC_JWK]}


def build_token(
    roles: Iterable[str],
    subject: str = "user-1",
    email: str = "user@example.com",
    issuer: str = ISSUER,
    audience: str = AUDIENCE,
    include_roles: bool = True,
    teams: Optional[Iterable[str]] = None,
) -> str:
    now = int(time.time())
    payload = {
        "iss": issuer,
        "aud": audience,
        "sub": subject,
        "iat": now,
        "exp": now + 3600,
        EMAIL_CLAIM: email,
    }
    if include_roles:
        payload[ROLES_CLAIM] = list(roles)
    if teams is not None:
        payload[TEAMS_CLAIM] = list(teams)
    return jwt.encode(payload, _PRIVATE_KEY, algorithm="RS256", headers={"kid": KID})


def auth_header(roles: Iterable[str], subject: str = "user-1", teams: Optional[Iterable[str]] = None) -> dict:
    return {"Authorization": f"Bearer {build_token(roles, subject=subject, teams=teams)}"}


def mock_jwks(monkeypatch) -> None:
    payload = jwks_payload()

    class FakeResponse:
        def __init__(self, data: dict) -> None:
            self._data = data

        def raise_for_status(self) -> None:
            return None

        def json(self) -> dict:
            return self._data

    def _fake_get(url: str, timeout: int = 5):
        if url != JWKS_URL:
            raise requests.RequestException(f"unexpected jwks url {url}")
        return FakeResponse(payload)

    monkeypatch.setattr(requests, "get", _fake_get)
