"""
Tar handling for packaged file trees.

Provides reproducible tar creation, safe extraction of plain or gzip-compressed
archives, and transparent gzip decompression of streams.
"""

import gzip
import io
import logging
import os
import tarfile
from typing import BinaryIO

from .context import Context
from .errors import ValidationError

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"

ERR_NOT_TAR = "expected tarred directory content for configuration/localization resources, got plain text"


def auto_decompress(stream: BinaryIO) -> tuple[BinaryIO, bool]:
    """
    Wrap ``stream`` in a gzip reader if it starts with the gzip magic bytes.

    Returns:
        Tuple of (reader, decompressed flag)
    """
    buffered = stream if hasattr(stream, "peek") else io.BufferedReader(stream)
    head = buffered.peek(2)[:2]
    if head == GZIP_MAGIC:
        return gzip.GzipFile(fileobj=buffered, mode="rb"), True
    return buffered, False


def is_tar(data: bytes) -> bool:
    """Check whether ``data`` (plain or gzip) holds at least one tar member."""
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            return tar.next() is not None
    except (tarfile.TarError, EOFError, OSError):
        return False


def build_tar(source_dir: str, out: BinaryIO, ctx: Context | None = None) -> None:
    """
    Write a reproducible, uncompressed tar of ``source_dir`` to ``out``.

    Entries are added in sorted order with owner, group and timestamps zeroed, so
    the same tree always yields the same bytes. Anything that is not a regular
    file or directory (symlinks, devices) is skipped.

    Raises:
        ValidationError: if ``source_dir`` does not exist
        CancelledError: if ``ctx`` is cancelled while writing
    """
    ctx = ctx or Context.background()
    if not os.path.isdir(source_dir):
        raise ValidationError(f"invalid source dir path: {source_dir}")

    count = 0
    with tarfile.open(fileobj=out, mode="w", format=tarfile.PAX_FORMAT) as tar:
        for root, dirs, files in os.walk(source_dir):
            dirs.sort()
            for entry in sorted(dirs) + sorted(files):
                ctx.check()
                full_path = os.path.join(root, entry)
                if os.path.islink(full_path):
                    logger.debug(f"Skipping symlink {full_path}")
                    continue
                rel_path = os.path.relpath(full_path, source_dir).replace(os.sep, "/")
                info = tar.gettarinfo(full_path, arcname=rel_path)
                if not (info.isfile() or info.isdir()):
                    continue
                info.uid = info.gid = 0
                info.uname = info.gname = ""
                info.mtime = 0
                info.mode = 0o755 if info.isdir() else 0o644
                if info.isfile():
                    with open(full_path, "rb") as f:
                        tar.addfile(info, f)
                else:
                    tar.addfile(info)
                count += 1
    logger.debug(f"Built tar of {source_dir} with {count} entries")


def build_tar_bytes(source_dir: str, ctx: Context | None = None) -> bytes:
    buf = io.BytesIO()
    build_tar(source_dir, buf, ctx)
    return buf.getvalue()


def extract_tar(data: bytes, dest_dir: str, ctx: Context | None = None) -> int:
    """
    Extract a plain or gzip-compressed tar into ``dest_dir``.

    Members that would escape ``dest_dir`` (absolute paths, ``..``, links out of
    the tree) are rejected by the tarfile data filter.

    Returns:
        Number of extracted members

    Raises:
        ValidationError: if ``data`` is not a tar archive or contains unsafe members
        CancelledError: if ``ctx`` is cancelled during extraction
    """
    ctx = ctx or Context.background()
    if not is_tar(data):
        raise ValidationError(ERR_NOT_TAR)

    count = 0
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
            for member in tar:
                ctx.check()
                tar.extract(member, dest_dir, filter="data")
                count += 1
    except tarfile.FilterError as e:
        raise ValidationError(f"unsafe archive member: {e}") from e
    except tarfile.TarError as e:
        raise ValidationError(f"extract tar error: {e}") from e

    logger.debug(f"Extracted {count} members into {dest_dir}")
    return count


def read_tar_member(data: bytes, name: str) -> bytes | None:
    """Return the content of a single regular file member, or None if absent."""
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:*") as tar:
        for member in tar:
            if member.isfile() and os.path.normpath(member.name) == os.path.normpath(name):
                extracted = tar.extractfile(member)
                return extracted.read() if extracted else None
    return None


def tar_single_file(name: str, content: bytes) -> bytes:
    """Build a reproducible tar holding exactly one file."""
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w", format=tarfile.PAX_FORMAT) as tar:
        info = tarfile.TarInfo(name=name)
        info.size = len(content)
        info.mode = 0o644
        tar.addfile(info, io.BytesIO(content))
    return buf.getvalue()


def copy_stream(src: BinaryIO, dst: BinaryIO, chunk_size: int, ctx: Context | None = None) -> int:
    """Copy ``src`` to ``dst`` chunk by chunk, checking ``ctx`` in between."""
    ctx = ctx or Context.background()
    total = 0
    while True:
        ctx.check()
        chunk = src.read(chunk_size)
        if not chunk:
            return total
        dst.write(chunk)
        total += len(chunk)


def read_all(src: BinaryIO, chunk_size: int, ctx: Context | None = None) -> bytes:
    buf = io.BytesIO()
    copy_stream(src, buf, chunk_size, ctx)
    return buf.getvalue()


