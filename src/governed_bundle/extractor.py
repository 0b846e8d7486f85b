# -*- encoding: utf-8 -*-
"""
Bundle Extractor - Materialize bundle files onto a directory.

Every file gets a plan entry: ``create`` (absent on disk), ``update``
(present with different content) or ``unchanged``. Exclude globs drop
paths from the plan before anything is asked. An ``update`` needs
confirmation unless ``force`` or ``yes`` is set; confirmation comes from
an injected ``confirm(path) -> bool`` callable, and without one the
conflict is skipped.

A write failure stops the run and raises ApplyError listing the files
already written. Nothing is rolled back.

Usage:
    from governed_bundle.extractor import ApplyOptions, BundleExtractor

    extractor = BundleExtractor(ApplyOptions(target_dir=".", exclude=["policies/*"]))
    result = extractor.apply_archive("release.gbundle.tgz")
    print(result.applied)
"""

import fnmatch
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from .archive import atomic_write_bytes, check_member_name, load_bundle
from .bundle import Bundle
from .errors import ApplyError, ArchiveError, BundleIOError, InputError, IntegrityError
from .validator import BundleValidator, VerifyOptions

logger = logging.getLogger(__name__)

Confirm = Callable[[str], bool]


class Action(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    UNCHANGED = "unchanged"
    SKIP = "skip"


@dataclass
class ApplyOptions:
    target_dir: str = "."
    dry_run: bool = False
    force: bool = False
    yes: bool = False
    exclude: List[str] = field(default_factory=list)


@dataclass
class PlanEntry:
    path: str
    action: Action
    target: Path
    reason: str = ""


@dataclass
class ApplyResult:
    plan: List[PlanEntry] = field(default_factory=list)
    applied: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    excluded: List[str] = field(default_factory=list)
    dry_run: bool = False

    def actions(self, action: Action) -> List[str]:
        return [e.path for e in self.plan if e.action == action]


class BundleExtractor:
    """Applies a loaded bundle's files to ``options.target_dir``."""

    def __init__(self, options: Optional[ApplyOptions] = None, confirm: Optional[Confirm] = None):
        self.options = options or ApplyOptions()
        self._confirm = confirm

    def _is_excluded(self, path: str) -> bool:
        return any(fnmatch.fnmatchcase(path, pattern) for pattern in self.options.exclude)

    def _target_for(self, root: Path, path: str) -> Path:
        try:
            rel = check_member_name(path)
        except ArchiveError as e:
            raise InputError(f"unsafe bundle path: {path}", operation="apply") from e
        target = (root / rel).resolve()
        if target != root and root not in target.parents:
            raise InputError(f"bundle path escapes target directory: {path}", operation="apply")
        return target

    def plan(self, bundle: Bundle) -> Tuple[List[PlanEntry], List[str]]:
        """
        Work out what apply() would do, without prompting or writing.

        Returns:
            (plan entries in path order, excluded paths)
        """
        root = Path(self.options.target_dir).resolve()
        entries: List[PlanEntry] = []
        excluded: List[str] = []

        for path in sorted(bundle.files, key=lambda p: p.encode("utf-8")):
            if self._is_excluded(path):
                excluded.append(path)
                continue
            target = self._target_for(root, path)
            data = bundle.files[path]
            if not target.exists():
                action = Action.CREATE
            elif target.is_file() and target.read_bytes() == data:
                action = Action.UNCHANGED
            else:
                action = Action.UPDATE
            entries.append(PlanEntry(path=path, action=action, target=target))
        return entries, excluded

    def _approved(self, entry: PlanEntry) -> bool:
        if entry.action != Action.UPDATE or self.options.force or self.options.yes:
            return True
        if self._confirm is None:
            entry.reason = "existing file differs and no confirmation is available"
            return False
        if not self._confirm(entry.path):
            entry.reason = "declined"
            return False
        return True

    def apply(self, bundle: Bundle) -> ApplyResult:
        """
        Apply ``bundle`` to the target directory.

        Raises:
            InputError: a bundle path is absolute or escapes the target
            ApplyError: a write failed; ``applied`` lists earlier writes
        """
        plan, excluded = self.plan(bundle)
        result = ApplyResult(plan=plan, excluded=excluded, dry_run=self.options.dry_run)
        if self.options.dry_run:
            logger.info(
                f"Dry run for {bundle.manifest.id}: {len(result.actions(Action.CREATE))} create, "
                f"{len(result.actions(Action.UPDATE))} update, {len(excluded)} excluded"
            )
            return result

        for entry in plan:
            if entry.action == Action.UNCHANGED:
                continue
            if not self._approved(entry):
                entry.action = Action.SKIP
                result.skipped.append(entry.path)
                logger.warning(f"Skipping {entry.path}: {entry.reason}")
                continue
            try:
                atomic_write_bytes(entry.target, bundle.files[entry.path], operation="apply")
            except BundleIOError as e:
                raise ApplyError(entry.path, result.applied, details=e.details) from e
            result.applied.append(entry.path)
            logger.debug(f"Applied {entry.path}")

        logger.info(
            f"Applied {len(result.applied)} file(s) from {bundle.manifest.id} "
            f"to {self.options.target_dir} ({len(result.skipped)} skipped)"
        )
        return result

    def apply_archive(self, bundle_path: str) -> ApplyResult:
        """
        Load, check integrity, then apply.

        Raises:
            IntegrityError: any file fails its checksum or the digest differs
        """
        bundle = load_bundle(bundle_path)
        check = BundleValidator(VerifyOptions()).verify_bundle(bundle)
        if not check.checksum_valid:
            first = check.errors_for("integrity")[0] if check.errors_for("integrity") else None
            raise IntegrityError(
                f"refusing to apply {bundle_path}: integrity check failed",
                path=first.field if first else "",
                expected=str(first.details.get("expected", "")) if first else "",
                actual=str(first.details.get("actual", "")) if first else "",
            )
        return self.apply(bundle)
