import logging
from pathlib import Path

import config
from errors import Internal

logger = logging.getLogger(__name__)


class UploadError(Internal):
    def __init__(self, message: str = "Image upload failed"):
        super().__init__(message)


class LocalBlobStorage:
    """Writes blobs below `root` and serves them from `<base_url>/uploads/<key>`."""

    def __init__(self, root: str, base_url: str):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def put(self, data: bytes, key: str) -> str:
        target = (self.root / key).resolve()
        if self.root.resolve() not in target.parents:
            raise UploadError("Invalid upload path")
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as exc:
            logger.error("upload failed key=%s: %s", key, exc)
            raise UploadError()
        logger.info("stored upload key=%s bytes=%s", key, len(data))
        return f"{self.base_url}/uploads/{key}"


storage = LocalBlobStorage(config.UPLOAD_DIR, config.PUBLIC_BASE_URL)


def get_storage() -> LocalBlobStorage:
    return storage
