from __future__ import annotations

from fastapi.testclient import TestClient
from jose import jwt

from backoffice.core.config import get_settings
from backoffice.main import app


def _token(claims: dict[str, object], secret: str | None = None) -> str:
    settings = get_settings()
    return jwt.encode(claims, secret or settings.jwt_secret, algorithm=settings.jwt_algorithm)


def test_me_decodes_bearer_token() -> None:
    token = _token({"sub": "billing-ops", "roles": ["billing.admin"], "orgs": ["org-1", "org-2"]})

    with TestClient(app) as client:
        response = client.get("/me", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {"sub": "billing-ops", "roles": ["billing.admin"], "organizations": ["org-1", "org-2"]}


def test_me_falls_back_to_guest_for_bad_or_missing_token() -> None:
    forged = _token({"sub": "intruder", "roles": ["admin"]}, secret="not-the-secret")

    with TestClient(app) as client:
        missing = client.get("/me")
        rejected = client.get("/me", headers={"Authorization": f"Bearer {forged}"})

    assert missing.json()["sub"] == "anonymous"
    assert rejected.json() == {"sub": "anonymous", "roles": ["guest"], "organizations": []}
