"""Per-run scratch directory for split pages and rendered images."""

from __future__ import annotations

import logging
import shutil
import tempfile
import time
import uuid
from pathlib import Path

logger = logging.getLogger(__name__)


class WorkArea:
    """
    Uniquely named directory under WORK_DIR, removed on exit no matter how
    the run ends:

        with WorkArea(settings.work_dir, document_id) as area:
            area.path / "page-0001.pdf"

    Name pattern: <document_id>-<run timestamp ms>-<random token>, so two runs
    on the same document never share a directory.
    """

    def __init__(self, base_dir: str | Path, document_id: uuid.UUID | str) -> None:
        self._base_dir    = Path(base_dir)
        self._document_id = str(document_id)
        self._path: Path | None = None

    @property
    def path(self) -> Path:
        if self._path is None:
            raise RuntimeError("WorkArea is not open")
        return self._path

    def file(self, name: str) -> Path:
        return self.path / name

    def __enter__(self) -> "WorkArea":
        self._base_dir.mkdir(parents=True, exist_ok=True)
        prefix = f"{self._document_id}-{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"
        self._path = Path(tempfile.mkdtemp(prefix=prefix, dir=self._base_dir))
        logger.debug("WorkArea created | path=%s", self._path)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        path, self._path = self._path, None
        if path is not None:
            shutil.rmtree(path, ignore_errors=True)
            logger.debug("WorkArea removed | path=%s", path)
