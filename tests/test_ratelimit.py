import asyncio

from fastapi.testclient import TestClient
from starlette.requests import Request

from daily_set.main import app, check_rate_limit


def _request(ip="1.2.3.4"):
    async def _dummy_receive():
        await asyncio.sleep(0)
        return {"type": "http.request"}
    scope = {
        "type": "http",
        "method": "GET",
        "path": "/",
        "headers": [],
        "query_string": b"",
        "server": ("testserver", 80),
        "client": (ip, 12345),
        "scheme": "http",
    }
    return Request(scope, _dummy_receive)


def test_rate_limit_window_edges(monkeypatch):
    import daily_set.main as app_main

    # Control time
    t = [1000.0]
    monkeypatch.setattr(app_main.time, 'time', lambda: t[0])
    req = _request()

    # Allow up to 3 in window
    assert check_rate_limit(req, max_requests=3, window_seconds=10) is True
    assert check_rate_limit(req, max_requests=3, window_seconds=10) is True
    assert check_rate_limit(req, max_requests=3, window_seconds=10) is True
    # Next one within window should be limited
    assert check_rate_limit(req, max_requests=3, window_seconds=10) is False
    # other clients have their own window
    assert check_rate_limit(_request("5.6.7.8"), max_requests=3, window_seconds=10) is True

    # Advance beyond window; old entries should be pruned, allowing new request
    t[0] += 11
    assert check_rate_limit(req, max_requests=3, window_seconds=10) is True


def test_practice_endpoint_rate_limited():
    client = TestClient(app)
    for _ in range(30):
        assert client.get('/api/practice', params={"size": 3, "target_sets": 0}).status_code == 200
    r = client.get('/api/practice', params={"size": 3, "target_sets": 0})
    assert r.status_code == 429
    assert 'Rate limit exceeded' in r.json()['detail']
