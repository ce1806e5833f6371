"""
Test content-addressed attachment storage.
"""
import hashlib
import io

from mailmirror.core.storage.blob_store import CHUNK_SIZE, BlobStore


class TestBlobStore:

    def test_put_and_open(self, tmp_path):
        store = BlobStore(tmp_path)
        data = b"attachment bytes"

        blob = store.put(io.BytesIO(data))

        digest = hashlib.sha256(data).hexdigest()
        assert blob.sha256 == digest.upper()
        assert blob.size_bytes == len(data)
        assert blob.storage_key == f"{digest[:2]}/{digest}"
        assert store.exists(blob.storage_key)
        with store.open(blob.storage_key) as f:
            assert f.read() == data

    def test_same_content_stored_once(self, tmp_path):
        store = BlobStore(tmp_path)
        first = store.put(io.BytesIO(b"same"))
        second = store.put(io.BytesIO(b"same"))

        assert first == second
        files = [p for p in tmp_path.rglob("*") if p.is_file()]
        assert len(files) == 1

    def test_large_stream_hashed_across_chunks(self, tmp_path):
        store = BlobStore(tmp_path)
        data = bytes(range(256)) * (CHUNK_SIZE // 256 * 3 + 7)

        blob = store.put(io.BytesIO(data))

        assert blob.size_bytes == len(data)
        assert blob.sha256 == hashlib.sha256(data).hexdigest().upper()

    def test_empty_stream(self, tmp_path):
        blob = BlobStore(tmp_path).put(io.BytesIO(b""))
        assert blob.size_bytes == 0
        assert blob.sha256 == hashlib.sha256(b"").hexdigest().upper()

    def test_missing_key(self, tmp_path):
        assert BlobStore(tmp_path).exists("ab/abcdef") is False
