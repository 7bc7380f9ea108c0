"""Backup-before-write for flat-file stores (JSON documents, exports).

    safe_write(path, lambda p: p.write_text(...))

copies the current file to ``<path>.backup`` first. If the write raises,
the backup is copied back (or the partial file removed when there was
nothing before) and the original exception propagates.

Single-writer only: two concurrent writers share one backup slot.
"""

import json
import logging
import shutil
from pathlib import Path
from typing import Any, Callable, Optional, Union

logger = logging.getLogger("legalai.persistence.safe_writer")

BACKUP_SUFFIX = ".backup"

PathLike = Union[str, Path]


def backup_path_for(path: PathLike) -> Path:
    path = Path(path)
    return path.with_name(path.name + BACKUP_SUFFIX)


def safe_write(path: PathLike, write_fn: Callable[[Path], Any]) -> Any:
    """Run ``write_fn(path)`` with automatic restore on failure.

    Returns whatever *write_fn* returns.
    """
    path = Path(path)
    backup = backup_path_for(path)
    had_original = path.exists()

    if had_original:
        shutil.copy2(str(path), str(backup))
        logger.debug("Backup created: %s", backup)

    try:
        return write_fn(path)
    except Exception:
        try:
            if had_original:
                shutil.copy2(str(backup), str(path))
                logger.warning("Write to %s failed; restored from %s", path, backup)
            elif path.exists():
                path.unlink()
                logger.warning("Write to %s failed; removed partial file", path)
        except OSError as restore_exc:
            logger.error("Write to %s failed and restore failed too: %s", path, restore_exc)
        raise


def safe_write_json(path: PathLike, data: Any, indent: int = 2):
    """Serialize *data* to *path* as UTF-8 JSON through safe_write.

    Serialization happens inside the write, so a non-serializable value
    leaves the previous file intact.
    """
    def _write(target: Path):
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=indent, ensure_ascii=False)
            fh.write("\n")

    safe_write(path, _write)
    logger.info("Saved %s", path)


class JsonDocumentStore:
    """One JSON document on disk, read whole and written whole."""

    def __init__(self, path: PathLike, default: Optional[Any] = None):
        self.path = Path(path)
        self.default = {} if default is None else default

    def load(self) -> Any:
        if not self.path.exists():
            return json.loads(json.dumps(self.default))
        with open(self.path, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def save(self, data: Any):
        safe_write_json(self.path, data)

    def update(self, mutate: Callable[[Any], Any]) -> Any:
        """Load, apply *mutate*, save. *mutate* may edit in place or return a new document."""
        document = self.load()
        result = mutate(document)
        if result is not None:
            document = result
        self.save(document)
        return document
