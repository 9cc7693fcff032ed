"""Tests for the FastAPI surface."""

import pytest

pytest.importorskip("fastapi")
pytest.importorskip("httpx")

from fastapi.testclient import TestClient  # noqa: E402

from backend.main import app, get_detector  # noqa: E402

from conftest import DUPLICATE_CONTENT, write_file  # noqa: E402


@pytest.fixture
def client(detector):
    app.dependency_overrides[get_detector] = lambda: detector
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def test_health(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}


def test_stats_on_fresh_index(client):
    response = client.get("/stats")
    assert response.status_code == 200
    assert response.json()["bucket_count"] == 0


def test_list_unknown_bucket_is_not_found(client, bucket_dir):
    response = client.get("/buckets/list", params={"bucket": str(bucket_dir)})
    assert response.status_code == 404
    assert response.json()["detail"]["kind"] == "not_found"


def test_add_scan_and_compare(client, bucket_dir, tmp_path):
    source = write_file(tmp_path / "incoming" / "copy", DUPLICATE_CONTENT)

    assert client.post("/buckets/add", json={"bucket": str(bucket_dir)}).status_code == 200
    scanned = client.post("/buckets/scan", json={"buckets": [str(bucket_dir)]})
    assert scanned.status_code == 200
    assert scanned.json()["buckets"][0]["hashed"] == 3

    response = client.post("/compare", json={"sources": [str(source)], "update": False})

    assert response.status_code == 200
    assert response.json()["matches"] == [{"source": str(source), "match": str(bucket_dir / "a")}]


def test_list_and_search(client, bucket_dir):
    client.post("/buckets/scan", json={"buckets": [str(bucket_dir)]})

    listing = client.get("/buckets/list", params={"bucket": str(bucket_dir)})
    assert [item["path"] for item in listing.json()["items"]] == [
        str(bucket_dir / name) for name in ("a", "b", "c")
    ]

    found = client.get("/search", params={"term": "b", "filename_only": True})
    assert found.json()["total"] == 1


def test_empty_search_term_is_bad_request(client, bucket_dir):
    client.post("/buckets/scan", json={"buckets": [str(bucket_dir)]})
    response = client.get("/search", params={"term": ""})
    assert response.status_code == 400
    assert response.json()["detail"]["kind"] == "invalid_input"


def test_add_missing_directory(client, tmp_path):
    response = client.post("/buckets/add", json={"bucket": str(tmp_path / "missing")})
    assert response.status_code == 404


def test_rename_and_remove(client, bucket_dir, tmp_path):
    client.post("/buckets/scan", json={"buckets": [str(bucket_dir)]})

    renamed = client.post("/buckets/rename", json={"old": str(bucket_dir), "new": str(tmp_path / "renamed")})
    assert renamed.status_code == 200
    assert client.post("/buckets/remove", json={"bucket": str(bucket_dir)}).status_code == 404
    assert client.post("/buckets/remove", json={"bucket": str(tmp_path / "renamed")}).status_code == 200


def test_unsupported_archives_are_reported_in_scan(client, tmp_path):
    root = tmp_path / "archives"
    write_file(root / "broken.zip", b"PK\x03\x04 garbage")
    response = client.post("/buckets/archives", json={"bucket": str(root)})
    assert response.status_code == 200
    assert response.json()["errors"][0]["kind"] == "unsupported"


def test_export_import_round_trip(client, bucket_dir, tmp_path):
    client.post("/buckets/scan", json={"buckets": [str(bucket_dir)]})
    exported = client.post("/buckets/export", json={"bucket": str(bucket_dir), "dest_dir": str(tmp_path / "out")})
    assert exported.status_code == 200
    assert exported.text.startswith("sha256_sum,path#")

    export_file = next((tmp_path / "out").iterdir())
    client.post("/buckets/remove", json={"bucket": str(bucket_dir)})
    imported = client.post("/buckets/import", json={"path": str(export_file)})
    assert imported.json()["imported"] == 3


def test_maintenance(client, bucket_dir, tmp_path):
    client.post("/buckets/scan", json={"buckets": [str(bucket_dir)]})
    (bucket_dir / "c").unlink()

    cleaned = client.post("/maintenance/clean", json={})
    assert cleaned.json()["removed"] == 1

    compacted = client.post("/maintenance/compact")
    assert compacted.status_code == 200
    assert compacted.json()["size_after"] > 0

    backup = client.post("/maintenance/backup", json={"dest_dir": str(tmp_path / "bk")})
    assert backup.status_code == 200
    assert backup.json()["bytes_written"] > 0

    stats = client.get("/stats").json()
    assert stats["item_count"] == 2
    assert stats["bucket_count"] == 1
