from datetime import timedelta

import pytest

from conftest import issue_token
from services.session_token import decode_session_token


def test_valid_token_yields_claims():
    payload = decode_session_token(issue_token("member@posters.test"))

    assert payload["email"] == "member@posters.test"
    assert payload["sub"] == "user-member@posters.test"


@pytest.mark.parametrize(
    "token",
    [
        issue_token("member@posters.test", token_type="refresh"),
        issue_token("member@posters.test", expires_in=timedelta(seconds=-5)),
        issue_token(""),
        "not-a-jwt",
    ],
)
def test_bad_tokens_are_rejected(token):
    with pytest.raises(ValueError):
        decode_session_token(token)


@pytest.mark.asyncio
async def test_protected_route_refuses_bad_tokens(client):
    expired = issue_token("member@posters.test", expires_in=timedelta(seconds=-5))

    resp = await client.get("/api/generation-credits", headers={"Authorization": f"Bearer {expired}"})

    assert resp.status_code == 401
