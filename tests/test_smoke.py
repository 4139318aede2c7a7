"""tests/test_smoke.py"""

import pytest


@pytest.mark.parametrize(
    "path",
    [
        "/api/posts",         # public listing
        "/api/admin-exists",  # setup probe
        "/api/me",            # session probe
    ],
)
def test_public_routes_ok(client, path):
    """Each public endpoint should answer with JSON and a 200."""
    rv = client.get(path)
    assert rv.status_code == 200
    assert rv.is_json


def test_not_found(client):
    """Completely unknown URL → JSON 404."""
    rv = client.get("/does/not/exist")
    assert rv.status_code == 404
    assert rv.get_json()["reason"] == "not_found"
