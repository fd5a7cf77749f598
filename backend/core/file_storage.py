"""
Local-disk file storage used for purchase order images and invoice scans.

Only path bookkeeping lives here. Uploads themselves are written by the
upload collaborator, which hands back a StoredFile descriptor.
"""

from pathlib import Path
from typing import Optional
import logging
import os

logger = logging.getLogger(__name__)


class LocalFileStorage:

    def __init__(self, root: Optional[str] = None):
        self.root = Path(root or os.environ.get("UPLOAD_ROOT", "uploads")).resolve()

    def resolve(self, relative_path: str) -> Optional[Path]:
        """Absolute path for a stored file; None when it escapes the upload root"""
        candidate = (self.root / relative_path.lstrip("/\\")).resolve()
        if candidate != self.root and self.root not in candidate.parents:
            logger.warning(f"[REPO] Refusing file path outside upload root: {relative_path}")
            return None
        return candidate

    def delete_file(self, relative_path: Optional[str]) -> bool:
        """Best-effort delete. Returns True only when a file was removed."""
        if not relative_path:
            return False
        try:
            path = self.resolve(relative_path)
            if path is None or not path.is_file():
                return False
            path.unlink(missing_ok=True)
            logger.info(f"[REPO] Deleted stored file {relative_path}")
            return True
        except OSError as e:
            logger.error(f"[REPO] Failed to delete stored file {relative_path}: {str(e)}")
            return False
