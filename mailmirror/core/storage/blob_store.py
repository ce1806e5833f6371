"""
Content-addressable blob storage for attachment bytes.

Blobs are written once under <root>/<first two hex chars>/<sha256>. Writing
the same content twice yields the same key and keeps a single file.
"""
import hashlib
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Union

logger = logging.getLogger(__name__)

CHUNK_SIZE = 81920


@dataclass(frozen=True)
class StoredBlob:
    storage_key: str
    sha256: str  # uppercase hex
    size_bytes: int


class BlobStore:
    """Filesystem blob store keyed by SHA-256"""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()

    def _path_for(self, storage_key: str) -> Path:
        return self.root / storage_key

    @staticmethod
    def key_for(sha256_hex: str) -> str:
        digest = sha256_hex.lower()
        return f"{digest[:2]}/{digest}"

    def put(self, stream: BinaryIO) -> StoredBlob:
        """
        Stream content into the store while hashing it.

        Args:
            stream: Readable binary stream (read in CHUNK_SIZE chunks)

        Returns:
            StoredBlob with key, uppercase SHA-256 and size
        """
        self.root.mkdir(parents=True, exist_ok=True)
        sha256_hash = hashlib.sha256()
        size = 0

        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".incoming-")
        try:
            with os.fdopen(fd, "wb") as out:
                for chunk in iter(lambda: stream.read(CHUNK_SIZE), b""):
                    out.write(chunk)
                    sha256_hash.update(chunk)
                    size += len(chunk)

            digest = sha256_hash.hexdigest()
            key = self.key_for(digest)
            target = self._path_for(key)
            if target.exists():
                os.unlink(tmp_name)
            else:
                target.parent.mkdir(parents=True, exist_ok=True)
                os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

        logger.debug(f"Stored blob {key} ({size} bytes)")
        return StoredBlob(storage_key=key, sha256=digest.upper(), size_bytes=size)

    def open(self, storage_key: str) -> BinaryIO:
        return open(self._path_for(storage_key), "rb")

    def exists(self, storage_key: str) -> bool:
        return self._path_for(storage_key).is_file()
