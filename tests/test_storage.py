import pytest

from app.backoffice.storage import LocalStorage, S3Storage, StorageError, new_key, storage_from_config


def test_local_roundtrip_and_delete(tmp_path):
    store = LocalStorage(root=tmp_path)
    key = new_key("pictures", "my photo.png")
    store.put_bytes(key, b"abc", content_type="image/png")
    with store.open(key) as f:
        assert f.read() == b"abc"
    store.delete(key)
    with pytest.raises(FileNotFoundError):
        store.open(key)
    store.delete(key)  # already gone is fine


def test_new_key_sanitizes_filename():
    key = new_key("/pictures/", "../../etc/passwd")
    prefix, token, name = key.split("/")
    assert prefix == "pictures"
    assert len(token) == 32
    assert name == "etc_passwd"


def test_local_rejects_keys_escaping_root(tmp_path):
    store = LocalStorage(root=tmp_path / "uploads")
    with pytest.raises(StorageError):
        store.put_bytes("../outside.txt", b"x")


def test_storage_from_config(tmp_path):
    local = storage_from_config({"STORAGE_BACKEND": "local", "UPLOADS_PATH": str(tmp_path)})
    assert isinstance(local, LocalStorage)
    s3 = storage_from_config({"STORAGE_BACKEND": "s3", "S3_BUCKET": "b", "S3_ENDPOINT": "nyc3.example.com"})
    assert isinstance(s3, S3Storage)
    assert s3.bucket == "b"
    with pytest.raises(StorageError):
        storage_from_config({"STORAGE_BACKEND": "ftp"})
