import pytest

import main

PNG = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


@pytest.fixture(autouse=True)
def upload_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(main, "UPLOAD_DIR", str(tmp_path))
    return tmp_path


def test_upload_image(client, upload_dir):
    res = client.post("/upload", files={"file": ("leaf.png", PNG, "image/png")})
    assert res.status_code == 200
    data = res.json()["data"]
    assert data["filename"].endswith(".png")
    assert data["url"] == f"/uploads/categories/{data['filename']}"
    assert data["size"] == len(PNG)
    assert (upload_dir / "categories" / data["filename"]).read_bytes() == PNG


def test_upload_rejects_non_images(client, upload_dir):
    res = client.post("/upload", files={"file": ("notes.txt", b"hello", "text/plain")})
    assert res.status_code == 400
    assert res.json()["message"] == "Invalid file type. Only images are allowed."
    assert not (upload_dir / "categories").exists()


def test_upload_rejects_large_files(client):
    big = b"\x00" * (5 * 1024 * 1024 + 1)
    res = client.post("/upload", files={"file": ("big.jpg", big, "image/jpeg")})
    assert res.status_code == 400
    assert res.json()["message"] == "File size too large. Maximum 5MB allowed."


def test_upload_without_file(client):
    res = client.post("/upload")
    assert res.status_code == 400
    assert res.json()["message"] == "No file uploaded"


def test_upload_multiple(client, upload_dir):
    files = [
        ("files", ("a.png", PNG, "image/png")),
        ("files", ("b.webp", PNG, "image/webp")),
    ]
    res = client.post("/upload/multiple", files=files)
    assert res.status_code == 200
    names = [f["filename"] for f in res.json()["data"]]
    assert len(set(names)) == 2
    assert sorted(p.name for p in (upload_dir / "categories").iterdir()) == sorted(names)


def test_upload_multiple_writes_nothing_when_one_file_is_rejected(client, upload_dir):
    files = [
        ("files", ("a.png", PNG, "image/png")),
        ("files", ("b.txt", b"hello", "text/plain")),
    ]
    res = client.post("/upload/multiple", files=files)
    assert res.status_code == 400
    categories = upload_dir / "categories"
    assert not categories.exists() or list(categories.iterdir()) == []


def test_upload_multiple_rejects_oversized_last_file(client, upload_dir):
    files = [
        ("files", ("a.png", PNG, "image/png")),
        ("files", ("big.jpg", b"\x00" * (5 * 1024 * 1024 + 1), "image/jpeg")),
    ]
    assert client.post("/upload/multiple", files=files).status_code == 400
    categories = upload_dir / "categories"
    assert not categories.exists() or list(categories.iterdir()) == []
