from unittest.mock import MagicMock

import pytest

import app as feed


def upstream_response(body, status=200):
    """Stand-in for a requests.Response carrying `body` as JSON."""
    resp = MagicMock()
    resp.status_code = status
    resp.ok = 200 <= status < 300
    resp.json.return_value = body
    resp.text = str(body)
    return resp


@pytest.fixture
def configured(monkeypatch):
    monkeypatch.setattr(feed, "BL_TOKEN", "test-token")
    monkeypatch.setattr(feed, "SHARED_KEY", "")
    monkeypatch.setattr(feed, "DEFAULT_LIMIT", 100)
    return feed


@pytest.fixture
def client(configured):
    configured.app.config["TESTING"] = True
    with configured.app.test_client() as c:
        yield c
