# -*- encoding: utf-8 -*-
"""
Bundle Archive - Deterministic tar.gz container for bundles.

Layout (``.gbundle.tgz``):

    manifest.json
    <relative/file/path>            raw bytes of every manifest file
    approvals/<role>-<user>.json    zero or more approval documents
    attestations/attestation.json   at most one attestation

Archives are reproducible: members sorted by path, uid/gid 0, fixed mtime
and mode, gzip header mtime 0. Every write goes to a temporary sibling and
is moved into place with os.replace(), so readers never see a partial file.

Reading enforces limits (member count, per-member and total size) and
rejects absolute paths, ``..`` segments, NUL bytes, links and devices.

Usage:
    from governed_bundle.archive import load_bundle, attach_approval, get_bundle_info

    bundle = load_bundle("release.gbundle.tgz")
    attach_approval("release.gbundle.tgz", approval)
    info = get_bundle_info("release.gbundle.tgz")
"""

import gzip
import io
import json
import logging
import os
import tarfile
import tempfile
import zlib
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional, Tuple, Union

from .approval import Approval
from .attestation.statement import Attestation
from .bundle import Bundle, BundleInfo
from .errors import ArchiveError, BundleIOError, ManifestError
from .manifest import BundleManifest

logger = logging.getLogger(__name__)

BUNDLE_SUFFIX = ".gbundle.tgz"
MANIFEST_NAME = "manifest.json"
APPROVALS_DIR = "approvals"
ATTESTATIONS_DIR = "attestations"
ATTESTATION_NAME = f"{ATTESTATIONS_DIR}/attestation.json"
RESERVED_NAMES = (MANIFEST_NAME,)
RESERVED_DIRS = (APPROVALS_DIR, ATTESTATIONS_DIR)

MAX_MEMBERS = 10_000
MAX_MEMBER_SIZE = 100 * 1024 * 1024      # 100 MiB
MAX_TOTAL_SIZE = 1024 * 1024 * 1024      # 1 GiB

FILE_MODE = 0o644
FIXED_MTIME = 0

PathLike = Union[str, Path]


# ---------------------------------------------------------------------------
# Path rules
# ---------------------------------------------------------------------------


def is_reserved(path: str) -> bool:
    """True if ``path`` is owned by the archive format itself."""
    if path in RESERVED_NAMES:
        return True
    first = PurePosixPath(path).parts[0] if path else ""
    return first in RESERVED_DIRS


def check_member_name(name: str) -> str:
    """
    Validate a relative archive path and return it normalized.

    Raises:
        ArchiveError: absolute path, ``..`` segment, NUL byte, or empty name
    """
    if not name or "\0" in name:
        raise ArchiveError(f"invalid member name: {name!r}")
    if name.startswith("/") or name.startswith("\\") or (len(name) > 1 and name[1] == ":"):
        raise ArchiveError(f"absolute path in archive: {name}")
    parts = PurePosixPath(name.replace("\\", "/")).parts
    if any(p == ".." for p in parts):
        raise ArchiveError(f"path escapes archive root: {name}")
    normalized = "/".join(p for p in parts if p != ".")
    if not normalized:
        raise ArchiveError(f"invalid member name: {name!r}")
    return normalized


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------


def json_document(data: Dict[str, Any]) -> bytes:
    """UTF-8 JSON with sorted keys and 2-space indent, newline-terminated."""
    return (json.dumps(data, indent=2, sort_keys=True, ensure_ascii=False) + "\n").encode("utf-8")


def pack(members: Dict[str, bytes]) -> bytes:
    """Pack ``name -> bytes`` into a reproducible tar.gz byte string."""
    buf = io.BytesIO()
    with gzip.GzipFile(fileobj=buf, mode="wb", mtime=FIXED_MTIME) as gz:
        with tarfile.TarFile(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            for name in sorted(members, key=lambda n: n.encode("utf-8")):
                data = members[name]
                info = tarfile.TarInfo(name=name)
                info.size = len(data)
                info.mode = FILE_MODE
                info.mtime = FIXED_MTIME
                info.uid = 0
                info.gid = 0
                info.uname = ""
                info.gname = ""
                tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


def atomic_write_bytes(path: PathLike, data: bytes, operation: str = "write") -> None:
    """
    Write ``data`` to ``path`` via a temporary sibling and os.replace().

    Raises:
        BundleIOError: on any filesystem failure; no temp file is left behind
    """
    target = Path(path)
    tmp_name = ""
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{target.name}.", suffix=".tmp", dir=target.parent)
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, target)
    except OSError as e:
        if tmp_name and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise BundleIOError(operation, str(target), details=str(e)) from e


def bundle_members(bundle: Bundle) -> Dict[str, bytes]:
    """All archive members for ``bundle``, keyed by archive path."""
    members: Dict[str, bytes] = {MANIFEST_NAME: bundle.manifest_bytes}
    members.update(bundle.files)
    for approval in bundle.approvals:
        members[f"{APPROVALS_DIR}/{approval.document_name}"] = json_document(approval.to_dict())
    if bundle.attestation is not None:
        members[ATTESTATION_NAME] = json_document(bundle.attestation.to_dict())
    return members


def write_bundle(bundle: Bundle, path: PathLike) -> Path:
    """Serialize ``bundle`` to ``path`` atomically and return the path."""
    target = Path(path)
    atomic_write_bytes(target, pack(bundle_members(bundle)), operation="write")
    bundle.path = target
    return target


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def _open_archive(path: Path) -> tarfile.TarFile:
    if not path.is_file():
        raise BundleIOError("load", str(path), details="bundle file not found")
    try:
        return tarfile.open(path, mode="r:gz")
    except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
        raise ArchiveError(f"cannot open bundle archive: {path}", path=str(path), details=str(e)) from e


def read_members(path: PathLike) -> Dict[str, bytes]:
    """
    Read every regular-file member of an archive, enforcing safety limits.

    Raises:
        BundleIOError: the file does not exist or cannot be opened
        ArchiveError: corrupt archive, unsafe member, limits exceeded
    """
    archive_path = Path(path)
    members: Dict[str, bytes] = {}
    total = 0
    count = 0
    tar = _open_archive(archive_path)
    try:
        with tar:
            for info in tar:
                count += 1
                if count > MAX_MEMBERS:
                    raise ArchiveError(
                        f"archive has more than {MAX_MEMBERS} members", path=str(archive_path),
                    )
                if info.isdir():
                    continue
                if not info.isfile():
                    raise ArchiveError(
                        f"unsupported member type (link or device): {info.name}",
                        path=str(archive_path),
                    )
                name = check_member_name(info.name)
                if info.size > MAX_MEMBER_SIZE:
                    raise ArchiveError(
                        f"member {name} exceeds {MAX_MEMBER_SIZE} bytes", path=str(archive_path),
                    )
                total += info.size
                if total > MAX_TOTAL_SIZE:
                    raise ArchiveError(
                        f"archive content exceeds {MAX_TOTAL_SIZE} bytes", path=str(archive_path),
                    )
                if name in members:
                    raise ArchiveError(f"duplicate archive member: {name}", path=str(archive_path))
                f = tar.extractfile(info)
                members[name] = f.read() if f is not None else b""
    except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
        raise ArchiveError(
            f"cannot read bundle archive: {archive_path}", path=str(archive_path), details=str(e),
        ) from e
    return members


def parse_manifest(raw: bytes, source: str = "") -> BundleManifest:
    """Parse manifest.json bytes, wrapping any failure as ManifestError."""
    try:
        return BundleManifest.from_json(raw.decode("utf-8"))
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as e:
        raise ManifestError(f"cannot parse {MANIFEST_NAME}", path=source, details=str(e)) from e


def split_members(
    members: Dict[str, bytes],
    source: str = "",
) -> Tuple[bytes, Dict[str, bytes], List[Approval], Optional[Attestation]]:
    """Split raw members into manifest bytes, files, approvals, attestation."""
    if MANIFEST_NAME not in members:
        raise ArchiveError(f"{MANIFEST_NAME} not found in bundle", path=source)

    files: Dict[str, bytes] = {}
    approvals: List[Approval] = []
    attestation: Optional[Attestation] = None

    for name in sorted(members):
        data = members[name]
        if name == MANIFEST_NAME:
            continue
        top = PurePosixPath(name).parts[0]
        try:
            if top == APPROVALS_DIR:
                approvals.append(Approval.from_json(data.decode("utf-8")))
            elif top == ATTESTATIONS_DIR:
                if name == ATTESTATION_NAME:
                    attestation = Attestation.from_json(data.decode("utf-8"))
                else:
                    logger.warning(f"Ignoring unexpected attestation member {name}")
            else:
                files[name] = data
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise ArchiveError(f"malformed document in bundle: {name}", path=source, details=str(e)) from e

    return members[MANIFEST_NAME], files, approvals, attestation


def load_bundle(path: PathLike) -> Bundle:
    """
    Load a bundle archive into memory.

    Raises:
        BundleIOError: missing or unreadable file
        ArchiveError: corrupt archive or malformed approval/attestation
        ManifestError: manifest.json cannot be parsed
    """
    archive_path = Path(path)
    members = read_members(archive_path)
    manifest_bytes, files, approvals, attestation = split_members(members, str(archive_path))
    manifest = parse_manifest(manifest_bytes, str(archive_path))
    logger.debug(
        f"Loaded bundle {manifest.id}@{manifest.version}: "
        f"{len(files)} files, {len(approvals)} approvals"
    )
    return Bundle(
        manifest=manifest,
        files=files,
        approvals=approvals,
        attestation=attestation,
        path=archive_path,
        manifest_bytes=manifest_bytes,
    )


def get_bundle_info(path: PathLike) -> BundleInfo:
    """Summarize a bundle without keeping file contents in memory."""
    archive_path = Path(path)
    manifest_raw: Optional[bytes] = None
    approvals: List[Tuple[str, str]] = []
    has_attestation = False

    tar = _open_archive(archive_path)
    try:
        with tar:
            for info in tar:
                if not info.isfile():
                    continue
                name = check_member_name(info.name)
                if name == MANIFEST_NAME:
                    f = tar.extractfile(info)
                    manifest_raw = f.read() if f is not None else b""
                elif name.startswith(f"{APPROVALS_DIR}/"):
                    f = tar.extractfile(info)
                    doc = Approval.from_json(f.read().decode("utf-8")) if f is not None else None
                    if doc is not None:
                        approvals.append(doc.identity)
                elif name == ATTESTATION_NAME:
                    has_attestation = True
    except (tarfile.TarError, OSError, EOFError, zlib.error) as e:
        raise ArchiveError(
            f"cannot read bundle archive: {archive_path}", path=str(archive_path), details=str(e),
        ) from e
    except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
        raise ArchiveError(
            "malformed approval document in bundle", path=str(archive_path), details=str(e),
        ) from e

    if manifest_raw is None:
        raise ArchiveError(f"{MANIFEST_NAME} not found in bundle", path=str(archive_path))
    manifest = parse_manifest(manifest_raw, str(archive_path))

    return BundleInfo(
        id=manifest.id,
        version=manifest.version,
        schema=manifest.schema,
        created=manifest.created,
        integrity_digest=manifest.integrity.digest,
        governance_level=manifest.governance_level,
        file_count=len(manifest.files),
        required_approvals=list(manifest.required_approvals),
        approvals=sorted(approvals),
        has_attestation=has_attestation,
        size=archive_path.stat().st_size,
    )


# ---------------------------------------------------------------------------
# Appending side-car documents
# ---------------------------------------------------------------------------


def attach_approval(path: PathLike, approval: Approval) -> Bundle:
    """
    Add ``approval`` to the archive at ``path``, replacing any earlier
    approval by the same (role, user). File content and manifest are
    copied byte-for-byte, so the integrity digest is untouched.
    """
    bundle = load_bundle(path)
    bundle.approvals = [a for a in bundle.approvals if a.identity != approval.identity]
    bundle.approvals.append(approval)
    write_bundle(bundle, path)
    logger.info(f"Attached approval {approval.role}:{approval.user} to {bundle.manifest.id}")
    return bundle


def attach_attestation(path: PathLike, attestation: Attestation) -> Bundle:
    """Store ``attestation`` in the archive, replacing any existing one."""
    bundle = load_bundle(path)
    if bundle.attestation is not None:
        logger.info(f"Replacing existing attestation on {bundle.manifest.id}")
    bundle.attestation = attestation
    write_bundle(bundle, path)
    logger.info(f"Attached {attestation.format} attestation to {bundle.manifest.id}")
    return bundle
