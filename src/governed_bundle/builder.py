# -*- encoding: utf-8 -*-
"""
Bundle Builder - Assemble governance inputs into a deterministic archive.

Inputs map to fixed archive paths:

    spec_path      -> spec.yaml
    lock_path      -> spec.lock.json
    routing_path   -> routing.yaml
    policy_paths   -> policies/<basename>
    include_paths  -> path relative to base_dir (directories walked)

Each file is checksummed, the list is sorted by path, the integrity digest
is computed by the digest engine, and manifest + raw bytes are written to
one reproducible tar.gz. The write is atomic: on any error nothing is left
at the output path.

An attestation, if requested, is generated from the finished archive and
attached afterwards. Its failure is logged and recorded on the BuildResult;
the bundle stays valid without it.

Usage:
    from governed_bundle.builder import BuildOptions, BundleBuilder

    options = BuildOptions(
        spec_path="spec.yaml",
        policy_paths=["policy.yaml"],
        bundle_id="acme/api",
        version="1.3.0",
        required_approvals=["pm", "security"],
    )
    result = BundleBuilder(options).build("dist/acme-api.gbundle.tgz")
    print(result.digest)
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from .archive import (
    check_member_name,
    attach_attestation,
    is_reserved,
    json_document,
    write_bundle,
)
from .attestation import Attestation, AttestationFormat, AttestationGenerator, KeriAttestationGenerator
from .bundle import Bundle
from .digest import bytes_checksum, compute_digest, manifest_digest
from .errors import ArchiveError, InputError, MissingInput, PathConflict
from .manifest import GOVERNANCE_LEVELS, BundleManifest, FileEntry, IntegrityInfo, truncate_seconds

logger = logging.getLogger(__name__)

SPEC_NAME = "spec.yaml"
LOCK_NAME = "spec.lock.json"
ROUTING_NAME = "routing.yaml"
POLICIES_DIR = "policies"

DEFAULT_BUNDLE_ID = "unknown/bundle"
DEFAULT_VERSION = "0.0.0"


def build_timestamp(env: Optional[Dict[str, str]] = None) -> datetime:
    """SOURCE_DATE_EPOCH when set, else now; UTC, whole seconds."""
    env = os.environ if env is None else env
    epoch = env.get("SOURCE_DATE_EPOCH", "").strip()
    if epoch:
        try:
            return datetime.fromtimestamp(int(epoch), tz=timezone.utc)
        except (ValueError, OverflowError, OSError) as e:
            raise InputError(f"invalid SOURCE_DATE_EPOCH: {epoch!r}", operation="build") from e
    return truncate_seconds(datetime.now(timezone.utc))


@dataclass
class BuildOptions:
    """What goes into a bundle."""
    spec_path: str = ""
    lock_path: str = ""
    routing_path: str = ""
    policy_paths: List[str] = field(default_factory=list)
    include_paths: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)
    bundle_id: str = ""
    version: str = ""
    governance_level: str = ""
    required_approvals: List[str] = field(default_factory=list)
    description: str = ""
    created: Optional[datetime] = None
    base_dir: str = ""
    attestation_format: str = ""

    def has_inputs(self) -> bool:
        return bool(
            self.spec_path or self.lock_path or self.routing_path
            or self.policy_paths or self.include_paths
        )

    def validate(self) -> None:
        if not self.has_inputs():
            raise InputError(
                "at least one input file must be specified",
                operation="build",
                suggestion="Pass a spec, lock, routing, policy or include path.",
            )
        if self.governance_level and self.governance_level not in GOVERNANCE_LEVELS:
            raise InputError(
                f"unknown governance level: {self.governance_level}",
                operation="build",
                suggestion=f"Use one of: {', '.join(GOVERNANCE_LEVELS)}",
            )
        if self.attestation_format:
            known = {f.value for f in AttestationFormat}
            if self.attestation_format not in known:
                raise InputError(
                    f"unknown attestation format: {self.attestation_format}",
                    operation="build",
                )
        for key in self.metadata:
            if not key or "=" in key or "\n" in key:
                raise InputError(f"invalid metadata key: {key!r}", operation="build")


@dataclass
class BuildResult:
    """Outcome of a successful build."""
    path: Path
    manifest: BundleManifest
    attestation: Optional[Attestation] = None
    attestation_error: str = ""

    @property
    def digest(self) -> str:
        return self.manifest.integrity.digest

    @property
    def file_count(self) -> int:
        return len(self.manifest.files)


class BundleBuilder:
    """Builds one bundle archive from BuildOptions."""

    def __init__(
        self,
        options: BuildOptions,
        attestation_generator: Optional[AttestationGenerator] = None,
    ):
        self.options = options
        self._generator = attestation_generator

    # -----------------------------------------------------------------------
    # Input collection
    # -----------------------------------------------------------------------

    def _base_dir(self) -> Path:
        return Path(self.options.base_dir or os.getcwd()).resolve()

    @staticmethod
    def _claim(sources: Dict[str, Path], archive_path: str, source: Path, what: str) -> None:
        if is_reserved(archive_path):
            raise PathConflict(archive_path, details=f"{what} uses a reserved archive name")
        if archive_path in sources:
            raise PathConflict(
                archive_path,
                details=f"{what} {source} collides with {sources[archive_path]}",
            )
        sources[archive_path] = source

    def collect(self) -> Dict[str, Path]:
        """
        Map archive path -> source file for every input.

        Raises:
            MissingInput: a named input does not exist or is not a file
            PathConflict: two inputs claim the same archive path
            InputError: include outside base_dir or with an unsafe name
        """
        opts = self.options
        sources: Dict[str, Path] = {}

        for raw, name in ((opts.spec_path, SPEC_NAME), (opts.lock_path, LOCK_NAME), (opts.routing_path, ROUTING_NAME)):
            if not raw:
                continue
            path = Path(raw)
            if not path.is_file():
                raise MissingInput(raw)
            sources[name] = path

        for raw in opts.policy_paths:
            path = Path(raw)
            if not path.is_file():
                raise MissingInput(raw)
            self._claim(sources, f"{POLICIES_DIR}/{path.name}", path, "policy")

        base = self._base_dir()
        for raw in opts.include_paths:
            path = Path(raw)
            if not path.is_absolute():
                path = base / path
            if not path.exists():
                raise MissingInput(raw)
            for source in self._walk(path):
                try:
                    rel = source.resolve().relative_to(base).as_posix()
                except ValueError as e:
                    raise InputError(
                        f"include path is outside the base directory: {source}",
                        operation="build",
                        suggestion="Set base_dir to a common parent of all includes.",
                    ) from e
                try:
                    rel = check_member_name(rel)
                except ArchiveError as e:
                    raise InputError(f"unsafe include path: {rel}", operation="build") from e
                self._claim(sources, rel, source, "include")

        return sources

    @staticmethod
    def _walk(path: Path) -> List[Path]:
        if path.is_file():
            return [path]
        found = []
        for root, dirs, files in os.walk(path):
            dirs.sort()
            for name in sorted(files):
                found.append(Path(root) / name)
        return found

    def _read(self, sources: Dict[str, Path]) -> Tuple[Dict[str, bytes], List[FileEntry]]:
        files: Dict[str, bytes] = {}
        entries: List[FileEntry] = []
        for archive_path, source in sources.items():
            try:
                data = source.read_bytes()
            except OSError as e:
                raise MissingInput(str(source), details=str(e)) from e
            files[archive_path] = data
            entries.append(FileEntry(path=archive_path, size=len(data), checksum=bytes_checksum(data)))
            logger.debug(f"Added {archive_path} ({len(data)} bytes)")
        entries.sort(key=lambda e: e.path.encode("utf-8"))
        return files, entries

    def _default_version(self) -> str:
        """Version from the lock file's top-level ``version``, if any."""
        if not self.options.lock_path:
            return DEFAULT_VERSION
        try:
            data = json.loads(Path(self.options.lock_path).read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return DEFAULT_VERSION
        if isinstance(data, dict) and isinstance(data.get("version"), str) and data["version"]:
            return data["version"]
        return DEFAULT_VERSION

    # -----------------------------------------------------------------------
    # Build
    # -----------------------------------------------------------------------

    def create_manifest(self, entries: List[FileEntry]) -> BundleManifest:
        opts = self.options
        created = truncate_seconds(opts.created) if opts.created else build_timestamp()
        metadata = {str(k): str(v) for k, v in opts.metadata.items()}
        required = list(dict.fromkeys(r for r in opts.required_approvals if r))

        manifest = BundleManifest(
            id=opts.bundle_id or DEFAULT_BUNDLE_ID,
            version=opts.version or self._default_version(),
            created=created,
            governance_level=opts.governance_level,
            files=entries,
            metadata=metadata,
            required_approvals=required,
            description=opts.description,
        )
        digest = compute_digest(
            entries, manifest.version, manifest.governance_level, manifest.created, manifest.metadata,
        )
        manifest.integrity = IntegrityInfo(digest=digest, manifest_digest=manifest_digest(manifest))
        return manifest

    def build(self, output_path: str) -> BuildResult:
        """
        Build the bundle at ``output_path``.

        Raises:
            InputError: no inputs, bad options, missing input, path conflict
            BundleIOError: the archive could not be written
        """
        self.options.validate()
        if self._generator is None and self.options.attestation_format:
            self._generator = KeriAttestationGenerator(
                format=AttestationFormat(self.options.attestation_format),
            )
        sources = self.collect()
        files, entries = self._read(sources)
        manifest = self.create_manifest(entries)

        bundle = Bundle(
            manifest=manifest,
            files=files,
            manifest_bytes=json_document(manifest.to_dict()),
        )
        target = write_bundle(bundle, output_path)
        result = BuildResult(path=target, manifest=manifest)
        logger.info(
            f"Built bundle {manifest.id}@{manifest.version} with {len(entries)} files "
            f"at {target} ({manifest.integrity.digest})"
        )

        if self._generator is not None:
            self._attest(bundle, result)
        return result

    def _attest(self, bundle: Bundle, result: BuildResult) -> None:
        try:
            attestation = self._generator.generate(bundle)
            attach_attestation(result.path, attestation)
        except Exception as e:
            # Side-car only: the archive written above is already complete
            logger.warning(f"Attestation for {bundle.manifest.id} failed, bundle kept without it: {e}")
            result.attestation_error = str(e)
            return
        result.attestation = attestation
