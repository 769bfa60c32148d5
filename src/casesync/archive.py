"""
Archive codec -- folds a directory tree into one zip and back.

Also owns scoped working directories: every pipeline stage that needs
scratch space takes it from ``working_directory`` and the tree is
removed on the way out, whether the stage succeeded or not.
"""

from __future__ import annotations

import logging
import shutil
import tempfile
import zipfile
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from .errors import ArchiveError

logger = logging.getLogger("casesync.archive")


@contextmanager
def working_directory(
    prefix: str = "casesync-", parent: Optional[Path] = None, keep: bool = False,
) -> Iterator[Path]:
    """Create a scratch directory and remove it recursively on exit.

    Args:
        prefix: Directory name prefix.
        parent: Where to create it. Defaults to the system temp dir.
        keep: Leave the directory in place (debug mode).
    """
    if parent is not None:
        Path(parent).mkdir(parents=True, exist_ok=True)
    path = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    try:
        yield path
    finally:
        if keep:
            logger.info("Debug mode: keeping working directory %s", path)
        else:
            shutil.rmtree(path, ignore_errors=True)


def zip_file(source: Path, destination: Path, arcname: Optional[str] = None) -> Path:
    """Compress a single file into its own zip archive."""
    source = Path(source)
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        zf.write(source, arcname=arcname or source.name)
    return destination


def zip_directory(source_dir: Path, destination: Path) -> Path:
    """Compress every file under ``source_dir`` into one archive.

    Paths inside the archive are relative to ``source_dir``.
    """
    source_dir = Path(source_dir)
    destination = Path(destination)
    destination.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with zipfile.ZipFile(destination, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for path in sorted(source_dir.rglob("*")):
            if path.is_file():
                zf.write(path, arcname=path.relative_to(source_dir).as_posix())
                count += 1
    logger.debug("Archived %d file(s) into %s", count, destination)
    return destination


def _safe_target(dest_dir: Path, member: str) -> Path:
    target = (dest_dir / member).resolve()
    root = dest_dir.resolve()
    if target != root and root not in target.parents:
        raise ArchiveError(f"Refusing to extract '{member}' outside {dest_dir}")
    return target


def unzip(archive: Path, dest_dir: Path) -> list[Path]:
    """Extract an archive, rejecting members that escape ``dest_dir``.

    Returns:
        Paths of the extracted files.

    Raises:
        ArchiveError: If the archive is corrupt or unsafe.
    """
    archive = Path(archive)
    dest_dir = Path(dest_dir)
    dest_dir.mkdir(parents=True, exist_ok=True)
    extracted: list[Path] = []
    try:
        with zipfile.ZipFile(archive) as zf:
            for info in zf.infolist():
                target = _safe_target(dest_dir, info.filename)
                if info.is_dir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                target.parent.mkdir(parents=True, exist_ok=True)
                with zf.open(info) as src, open(target, "wb") as dst:
                    shutil.copyfileobj(src, dst)
                extracted.append(target)
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Corrupt archive {archive.name}: {exc}") from exc
    return extracted


def archive_members(archive: Path) -> list[str]:
    """Names of the files stored in an archive."""
    try:
        with zipfile.ZipFile(archive) as zf:
            return [i.filename for i in zf.infolist() if not i.is_dir()]
    except zipfile.BadZipFile as exc:
        raise ArchiveError(f"Corrupt archive {Path(archive).name}: {exc}") from exc
