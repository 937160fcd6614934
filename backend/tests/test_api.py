from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from conftest import bearer
from sharegate.kv import MemoryKeyValueStore
from sharegate.main import create_app

BODY = bytes(i % 256 for i in range(1000))


@pytest.fixture
def client(settings, clock):
    app = create_app(settings, kv=MemoryKeyValueStore(), clock=clock)
    with TestClient(app) as c:
        yield c


def _upload(client, data=BODY, name="report.pdf", headers=None, **params):
    r = client.post(
        "/upload",
        files={"file": (name, data, "application/pdf")},
        params=params,
        headers=headers or {},
    )
    return r


def test_upload_then_download(client):
    r = _upload(client, headers=bearer("alice"))
    assert r.status_code == 201, r.text
    body = r.json()
    assert body["max_downloads"] == 5
    assert body["remaining_downloads"] == 5
    assert body["expires_in"] == "never"
    assert body["link"].endswith(f"/r/{body['token']}")

    d = client.get(f"/r/{body['token']}")
    assert d.status_code == 200
    assert d.content == BODY
    assert d.headers["content-length"] == "1000"
    assert d.headers["accept-ranges"] == "bytes"
    assert d.headers["x-remaining-downloads"] == "4"
    assert d.headers["x-file-name"] == "report.pdf"
    assert d.headers["pragma"] == "no-cache"
    assert "x-trace-id" in d.headers


def test_range_and_unsatisfiable_range(client):
    token = _upload(client).json()["token"]

    r = client.get(f"/r/{token}", headers={"Range": "bytes=100-199"})
    assert r.status_code == 206
    assert r.headers["content-range"] == "bytes 100-199/1000"
    assert r.content == BODY[100:200]

    r = client.get(f"/r/{token}", headers={"Range": "bytes=5000-"})
    assert r.status_code == 416
    assert r.headers["content-range"] == "bytes */1000"
    assert r.json() == {"detail": "range_not_satisfiable"}

    status = client.get(f"/status/{token}").json()
    assert status["download_count"] == 1
    assert status["remaining_downloads"] == 4


def test_unlimited_grant_reports_infinity(client):
    token = _upload(client, unlimited="true").json()["token"]
    for _ in range(7):
        r = client.get(f"/r/{token}")
        assert r.status_code == 200
        assert r.headers["x-remaining-downloads"] == "∞"
    status = client.get(f"/status/{token}").json()
    assert status["unlimited"] is True
    assert status["remaining_downloads"] == "∞"


def test_cap_reached_then_gone(client):
    token = _upload(client, max_downloads=1).json()["token"]
    first = client.get(f"/r/{token}")
    assert first.status_code == 200
    assert first.headers["x-remaining-downloads"] == "0"

    again = client.get(f"/r/{token}")
    assert again.status_code == 410
    assert again.json() == {"detail": "download_limit_reached"}


def test_expired_upload_returns_410(client, clock):
    token = _upload(client, expiry="30s").json()["token"]
    clock.advance(seconds=31)
    r = client.get(f"/r/{token}")
    assert r.status_code == 410
    assert r.json() == {"detail": "expired"}


def test_unknown_token_is_404(client):
    r = client.get("/r/nope")
    assert r.status_code == 404
    assert r.json() == {"detail": "not_found"}


def test_sensitive_upload_is_masked(client):
    r = client.post(
        "/upload",
        files={"file": ("installer.txt", b"MZ\x90\x00", "application/octet-stream")},
        data={"original_name": "installer.exe"},
    )
    token = r.json()["token"]
    d = client.get(f"/r/{token}")
    assert d.status_code == 200
    assert d.headers["content-type"].startswith("text/plain")
    assert "content-disposition" not in d.headers
    assert d.headers["x-frame-options"] == "SAMEORIGIN"
    assert d.headers["x-original-name"] == "installer.exe"


@pytest.mark.parametrize(
    "params,expected",
    [({"expiry": "soon"}, 400), ({"max_downloads": 0}, 400)],
)
def test_upload_validation(client, params, expected):
    assert _upload(client, **params).status_code == expected


def test_empty_upload_rejected(client):
    r = _upload(client, data=b"")
    assert r.status_code == 400
    assert r.json() == {"detail": "invalid_upload"}


def test_myfiles_requires_identity(client):
    _upload(client, headers=bearer("alice"), name="a.pdf")
    _upload(client, headers=bearer("bob"), name="b.pdf")

    assert client.get("/myfiles").status_code == 401
    assert client.get("/myfiles", headers={"Authorization": "Bearer junk"}).status_code == 401

    files = client.get("/myfiles", headers=bearer("alice")).json()["files"]
    assert [f["file"] for f in files] == ["a.pdf"]
    assert files[0]["status"] == "active"


def test_soft_delete_and_admin_restore(client):
    token = _upload(client, headers=bearer("alice")).json()["token"]

    assert client.delete(f"/files/{token}", headers=bearer("mallory")).status_code == 403
    r = client.delete(f"/files/{token}", headers=bearer("alice"))
    assert r.status_code == 200
    assert r.json()["permanent"] is False

    gone = client.get(f"/r/{token}")
    assert gone.status_code == 404
    assert gone.json() == {"detail": "deleted"}

    assert client.post(f"/admin/restore/{token}", headers=bearer("alice")).status_code == 403
    assert client.post(f"/admin/restore/{token}", headers=bearer("root", "admin")).status_code == 200
    assert client.get(f"/r/{token}").status_code == 200


def test_permanent_delete_is_admin_only(client):
    token = _upload(client, headers=bearer("alice")).json()["token"]
    assert client.delete(f"/files/{token}?permanent=true", headers=bearer("alice")).status_code == 403

    r = client.delete(f"/files/{token}?permanent=true", headers=bearer("root", "admin"))
    assert r.status_code == 200
    assert r.json()["permanent"] is True
    assert client.get(f"/r/{token}").status_code == 404


def test_admin_sweep(client, clock):
    _upload(client, expiry="1m")
    assert client.post("/admin/sweep", headers=bearer("alice")).status_code == 403
    clock.advance(minutes=2)
    r = client.post("/admin/sweep", headers=bearer("root", "admin"))
    assert r.status_code == 200
    assert r.json() == {"found": 1, "cleaned": 1, "failed": 0}


def test_preview_flow(client):
    token = _upload(client).json()["token"]
    r = client.post(f"/preview/{token}")
    assert r.status_code == 201
    preview = r.json()
    assert preview["max_uses"] == 1

    first = client.get(preview["url"])
    assert first.status_code == 200
    assert first.content == BODY
    assert first.headers["content-disposition"].startswith("inline;")

    second = client.get(preview["url"])
    assert second.status_code == 410
    assert second.json() == {"detail": "preview_used"}

    forged = client.get(f"/preview/{token}/123.abc")
    assert forged.status_code == 403
    assert client.get(f"/preview/{token}/%C2%B2.abc").status_code == 403

    # previews never touch the download quota
    assert client.get(f"/status/{token}").json()["download_count"] == 0


def test_preview_rejects_unpreviewable_types(client):
    r = client.post("/upload", files={"file": ("bundle.zip", b"PK\x03\x04", "application/zip")})
    token = r.json()["token"]
    assert client.post(f"/preview/{token}").status_code == 415


def test_security_headers_present(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "healthy"
    assert r.headers.get("X-Content-Type-Options") == "nosniff"
    assert r.headers.get("X-Frame-Options") == "DENY"
    assert r.headers.get("Referrer-Policy") == "no-referrer"
    assert "Content-Security-Policy" in r.headers


def test_live_and_ready(client):
    assert client.get("/live").json() == {"status": "alive"}
    assert client.get("/ready").json()["status"] == "ready"


def test_prometheus_metrics_endpoint(client):
    token = _upload(client).json()["token"]
    client.get(f"/r/{token}")
    client.get("/health")

    m = client.get("/metrics")
    assert m.status_code == 200
    assert m.headers["content-type"].startswith("text/plain")
    body = m.text
    assert "# TYPE api_requests_total counter" in body
    assert "api_request_duration_seconds" in body
    assert 'deliveries_total{result="full"}' in body
    assert "active_grants_total 1.0" in body


def test_status_shows_owner_fields_to_owner_and_admin(client):
    token = _upload(client, headers=bearer("alice"), expiry="2h").json()["token"]

    public = client.get(f"/status/{token}").json()
    assert public["owner"] is None
    assert public["expires_in"] is None
    stranger = client.get(f"/status/{token}", headers=bearer("mallory")).json()
    assert stranger["owner"] is None

    for headers in (bearer("alice"), bearer("root", "admin")):
        r = client.get(f"/status/{token}", headers=headers)
        assert r.status_code == 200
        body = r.json()
        assert body["owner"] == "alice"
        assert body["status"] == "active"
        assert body["expires_in"] == "2 hours"
        assert body["download_count"] == 0
