from __future__ import annotations

import gzip
import io
import logging
import os
import secrets
import shutil
import tarfile
import tempfile
import zlib
from pathlib import Path, PurePosixPath
from typing import BinaryIO

from .errors import AlreadyInstalled, BundleCorrupt, ExtractionError

logger = logging.getLogger(__name__)

SKILL_FILENAME = "SKILL.md"

_CORRUPT_ARCHIVE_ERRORS = (tarfile.TarError, EOFError, zlib.error, gzip.BadGzipFile)


def _member_parts(name: str) -> tuple[str, ...]:
    if not name or name.startswith("/") or "\\" in name:
        raise ValueError(f"unsafe path entry {name!r}")
    parts = tuple(p for p in PurePosixPath(name).parts if p != ".")
    if ".." in parts:
        raise ValueError(f"path entry escapes the bundle: {name!r}")
    return parts


def safe_extract_tar(stream: BinaryIO, dest: Path, *, bundle_id: str = "", skill: str | None = None) -> int:
    """
    Stream a gzip tar into dest one member at a time, without buffering the archive.

    Only regular files and directories are accepted; links and special files make
    the bundle corrupt. Returns the number of files written.
    """
    dest.mkdir(parents=True, exist_ok=True)
    written = 0
    try:
        with tarfile.open(fileobj=stream, mode="r|gz") as tar:
            for member in tar:
                try:
                    parts = _member_parts(member.name)
                except ValueError as e:
                    raise BundleCorrupt(bundle_id, str(e), skill=skill) from e
                if not parts:
                    continue
                target = dest.joinpath(*parts)

                if member.isdir():
                    target.mkdir(parents=True, exist_ok=True)
                    continue
                if not member.isfile():
                    raise BundleCorrupt(bundle_id, f"unsupported entry type for {member.name!r}", skill=skill)

                target.parent.mkdir(parents=True, exist_ok=True)
                src = tar.extractfile(member)
                if src is None:
                    raise BundleCorrupt(bundle_id, f"unreadable entry {member.name!r}", skill=skill)
                with src, target.open("wb") as out:
                    shutil.copyfileobj(src, out)
                os.chmod(target, (member.mode & 0o755) | 0o600)
                written += 1
    except _CORRUPT_ARCHIVE_ERRORS as e:
        raise BundleCorrupt(bundle_id, f"invalid archive ({e})", skill=skill) from e
    return written


def _content_root(unpacked: Path) -> Path:
    # Bundles packed as "<name>/..." are unwrapped so the skill files sit at the top.
    if (unpacked / SKILL_FILENAME).exists():
        return unpacked
    children = list(unpacked.iterdir())
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return unpacked


class BundleInstaller:
    """
    Extracts a bundle next to its destination and moves it into place with one rename.

    An existing install is renamed aside first and removed only after the new
    directory is in place, so the skill is always present in one version or the other.
    """

    def install(
        self,
        bundle: bytes | BinaryIO,
        destination: Path,
        overwrite: bool = False,
        *,
        bundle_id: str = "",
        skill: str | None = None,
    ) -> Path:
        name = skill or destination.name
        if destination.exists() and not overwrite:
            raise AlreadyInstalled(name, destination)

        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            staging = Path(tempfile.mkdtemp(prefix=f".{destination.name}.staging-", dir=destination.parent))
        except OSError as e:
            raise ExtractionError(destination, f"could not create staging directory ({e})") from e

        stream = io.BytesIO(bundle) if isinstance(bundle, (bytes, bytearray)) else bundle
        try:
            unpacked = staging / "unpacked"
            try:
                count = safe_extract_tar(stream, unpacked, bundle_id=bundle_id, skill=skill)
            except OSError as e:
                raise ExtractionError(destination, f"extraction failed ({e})") from e
            logger.debug("staged %d file(s) for %s in %s", count, name, staging)
            self._promote(_content_root(unpacked), destination)
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("installed %s into %s", name, destination)
        return destination

    def _promote(self, source: Path, destination: Path) -> None:
        backup: Path | None = None
        if destination.exists() or destination.is_symlink():
            backup = destination.with_name(f".{destination.name}.backup-{secrets.token_hex(4)}")
            try:
                destination.rename(backup)
            except OSError as e:
                raise ExtractionError(destination, f"could not move existing install aside ({e})") from e

        try:
            source.rename(destination)
        except OSError as e:
            reason = f"could not move staged files into place ({e})"
            if backup is not None:
                try:
                    backup.rename(destination)
                except OSError as restore_error:
                    logger.error(
                        "could not restore previous install of %s; it was left at %s: %s",
                        destination.name,
                        backup,
                        restore_error,
                    )
                    reason += f"; previous install left at {backup}"
            raise ExtractionError(destination, reason) from e

        if backup is not None:
            try:
                if backup.is_dir() and not backup.is_symlink():
                    shutil.rmtree(backup)
                else:
                    backup.unlink()
            except OSError as e:
                logger.warning("could not remove previous install at %s: %s", backup, e)
