"""Schedule archive extraction with integrity validation."""

import io
import zipfile
import zlib
from pathlib import PurePosixPath

from caltrain_tracker.errors import CorruptArchive
from caltrain_tracker.logging import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_MEMBER_BYTES = 50 * 1024 * 1024
DEFAULT_MAX_COMPRESSION_RATIO = 100


def is_safe_member_name(name: str) -> bool:
    """Reject absolute paths, parent traversal and home-directory references."""
    if not name or name.startswith(("/", "\\", "~")):
        return False
    parts = PurePosixPath(name.replace("\\", "/")).parts
    return ".." not in parts


def extract_archive(
    data: bytes,
    max_member_bytes: int = DEFAULT_MAX_MEMBER_BYTES,
    max_compression_ratio: float = DEFAULT_MAX_COMPRESSION_RATIO,
) -> dict[str, bytes]:
    """Decompress every file in a ZIP archive, verifying each member's size.

    The decompressed length of every member must equal the uncompressed size
    declared in the archive's central directory. A short read (truncated
    download, bad declared size) is not always detected by ``zipfile``
    itself, so the length is compared explicitly.

    Args:
        data: Raw archive bytes.
        max_member_bytes: Largest declared uncompressed size accepted per member.
        max_compression_ratio: Largest uncompressed/compressed ratio accepted.

    Returns:
        Mapping of base file name (e.g. ``"stops.txt"``) to decompressed bytes.

    Raises:
        CorruptArchive: If the archive is unreadable or any member fails validation.
    """
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except zipfile.BadZipFile as e:
        raise CorruptArchive(f"not a valid ZIP archive: {e}") from e

    files: dict[str, bytes] = {}
    with archive:
        for info in archive.infolist():
            if info.is_dir():
                continue
            if not is_safe_member_name(info.filename):
                raise CorruptArchive("unsafe member path", member=info.filename)
            if info.file_size > max_member_bytes:
                raise CorruptArchive(
                    f"declared size {info.file_size} exceeds limit {max_member_bytes}",
                    member=info.filename,
                )
            if info.compress_size > 0 and info.file_size / info.compress_size > max_compression_ratio:
                raise CorruptArchive(
                    f"compression ratio {info.file_size / info.compress_size:.0f}:1 "
                    f"exceeds limit {max_compression_ratio}:1",
                    member=info.filename,
                )

            try:
                content = archive.read(info)
            except (zipfile.BadZipFile, zipfile.LargeZipFile, zlib.error, EOFError) as e:
                raise CorruptArchive(f"decompression failed: {e}", member=info.filename) from e
            except NotImplementedError as e:
                # unsupported compression method such as deflate64
                raise CorruptArchive(f"unsupported member: {e}", member=info.filename) from e
            except RuntimeError as e:
                # encrypted member
                raise CorruptArchive(f"unreadable member: {e}", member=info.filename) from e

            if len(content) != info.file_size:
                raise CorruptArchive(
                    f"decompressed {len(content)} bytes, archive declares {info.file_size}",
                    member=info.filename,
                )

            files[PurePosixPath(info.filename).name] = content

    logger.debug("archive_extracted", members=len(files), total_bytes=sum(map(len, files.values())))
    return files
