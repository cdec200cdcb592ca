"""
Installer download with fallback sources and checksum verification.
"""

import logging
import os
import shutil
import tempfile
from pathlib import Path
from typing import Optional

import requests

from imageprep.errors import PermanentError, TransientError
from imageprep.steps.descriptors import DownloadDescriptor
from imageprep.utils import get_file_checksum


logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def _checksum_ok(path: Path, expected: Optional[str]) -> bool:
    if expected is None:
        return True
    return get_file_checksum(path) == expected


def _copy_local(source: Path, tmp_path: Path) -> None:
    if not source.exists():
        raise FileNotFoundError(f"Source file not found: {source}")
    shutil.copyfile(source, tmp_path)


def _fetch_url(session: requests.Session, url: str, tmp_path: Path, timeout: Optional[float]) -> None:
    with session.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(tmp_path, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                if chunk:
                    f.write(chunk)


def fetch(
    descriptor: DownloadDescriptor,
    timeout: Optional[float] = None,
    session: Optional[requests.Session] = None,
) -> Path:
    """
    Make sure the file described by `descriptor` is present and valid.

    An existing file at the destination that passes the checksum is reused.
    Otherwise source_path is copied, then url and fallback_urls are tried in
    order. Each candidate lands in a temp file next to the destination and is
    renamed into place only after its checksum matches.

    Args:
        descriptor: Download descriptor
        timeout: Per-request timeout in seconds
        session: requests session (one is created if omitted)

    Returns:
        Path to the verified file

    Raises:
        TransientError: If every source failed
        PermanentError: If the destination directory cannot be created
    """
    dest = Path(descriptor.path)
    if dest.exists() and descriptor.sha256 and _checksum_ok(dest, descriptor.sha256):
        logger.info(f"Reusing verified download: {dest}")
        return dest

    try:
        dest.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise PermanentError(f"Cannot create download directory {dest.parent}: {e}") from e

    sources: list[str] = []
    if descriptor.source_path:
        sources.append(descriptor.source_path)
    sources.extend(descriptor.candidates)

    http = session or requests.Session()
    errors: list[str] = []

    for source in sources:
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}-", suffix=".part")
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            if source == descriptor.source_path:
                _copy_local(Path(source), tmp_path)
            else:
                _fetch_url(http, source, tmp_path, timeout)

            if not _checksum_ok(tmp_path, descriptor.sha256):
                raise ValueError(f"checksum mismatch (expected {descriptor.sha256})")

            os.replace(tmp_path, dest)
            logger.info(
                f"Downloaded {dest.name} from {source}",
                extra={"event": "download_completed", "metadata": {"source": source}},
            )
            return dest
        except (requests.RequestException, OSError, ValueError) as e:
            logger.warning(f"Download from {source} failed: {e}")
            errors.append(f"{source}: {e}")
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

    raise TransientError(f"All download sources failed for {dest.name}: " + "; ".join(errors))
