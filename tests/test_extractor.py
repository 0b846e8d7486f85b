# -*- encoding: utf-8 -*-
"""
Tests for BundleExtractor (apply).

Verifies:
- Plan actions: create, update, unchanged
- Dry run writes nothing
- Conflicts need force/yes or confirmation
- Exclude globs
- Integrity is checked before applying an archive
- Partial failure reports applied files
"""

from unittest.mock import patch

import pytest

from conftest import rewrite_member
from governed_bundle.archive import load_bundle
from governed_bundle.errors import ApplyError, BundleIOError, InputError, IntegrityError
from governed_bundle.extractor import Action, ApplyOptions, BundleExtractor


@pytest.fixture
def target(tmp_path):
    path = tmp_path / "worktree"
    path.mkdir()
    return path


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class TestPlan:
    """What would happen."""

    def test_fresh_target(self, bundle_path, target):
        extractor = BundleExtractor(ApplyOptions(target_dir=str(target)))
        plan, excluded = extractor.plan(load_bundle(bundle_path))

        assert [(e.path, e.action) for e in plan] == [
            ("policies/policy.yaml", Action.CREATE),
            ("spec.yaml", Action.CREATE),
        ]
        assert excluded == []

    def test_unchanged_and_update(self, bundle_path, target):
        (target / "spec.yaml").write_text("a")
        (target / "policies").mkdir()
        (target / "policies" / "policy.yaml").write_text("local edit")

        plan, _ = BundleExtractor(ApplyOptions(target_dir=str(target))).plan(load_bundle(bundle_path))
        actions = {e.path: e.action for e in plan}
        assert actions == {"spec.yaml": Action.UNCHANGED, "policies/policy.yaml": Action.UPDATE}

    def test_exclude(self, bundle_path, target):
        options = ApplyOptions(target_dir=str(target), exclude=["policies/*"])
        plan, excluded = BundleExtractor(options).plan(load_bundle(bundle_path))
        assert [e.path for e in plan] == ["spec.yaml"]
        assert excluded == ["policies/policy.yaml"]

    def test_escaping_path_rejected(self, bundle_path, target):
        bundle = load_bundle(bundle_path)
        bundle.files["../outside.txt"] = b"x"
        with pytest.raises(InputError):
            BundleExtractor(ApplyOptions(target_dir=str(target))).plan(bundle)


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------


class TestApply:
    """Writes, prompts and failures."""

    def test_dry_run_writes_nothing(self, bundle_path, target):
        result = BundleExtractor(ApplyOptions(target_dir=str(target), dry_run=True)).apply_archive(str(bundle_path))

        assert result.dry_run
        assert result.actions(Action.CREATE) == ["policies/policy.yaml", "spec.yaml"]
        assert result.applied == []
        assert list(target.iterdir()) == []

    def test_creates_files(self, bundle_path, target):
        result = BundleExtractor(ApplyOptions(target_dir=str(target))).apply_archive(str(bundle_path))

        assert result.applied == ["policies/policy.yaml", "spec.yaml"]
        assert (target / "spec.yaml").read_bytes() == b"a"
        assert (target / "policies" / "policy.yaml").read_bytes() == b"b"

    def test_conflict_skipped_without_confirm(self, bundle_path, target):
        (target / "spec.yaml").write_text("mine")
        result = BundleExtractor(ApplyOptions(target_dir=str(target))).apply_archive(str(bundle_path))

        assert result.skipped == ["spec.yaml"]
        assert (target / "spec.yaml").read_text() == "mine"
        assert "policies/policy.yaml" in result.applied

    def test_conflict_confirmed(self, bundle_path, target):
        (target / "spec.yaml").write_text("mine")
        asked = []

        def confirm(path):
            asked.append(path)
            return True

        result = BundleExtractor(ApplyOptions(target_dir=str(target)), confirm=confirm).apply_archive(str(bundle_path))
        assert asked == ["spec.yaml"]
        assert "spec.yaml" in result.applied
        assert (target / "spec.yaml").read_text() == "a"

    def test_conflict_declined(self, bundle_path, target):
        (target / "spec.yaml").write_text("mine")
        result = BundleExtractor(ApplyOptions(target_dir=str(target)), confirm=lambda p: False).apply_archive(str(bundle_path))
        assert result.skipped == ["spec.yaml"]
        assert result.plan[1].reason == "declined"

    @pytest.mark.parametrize("flag", ["force", "yes"])
    def test_conflict_overwritten(self, bundle_path, target, flag):
        (target / "spec.yaml").write_text("mine")
        options = ApplyOptions(target_dir=str(target), **{flag: True})
        result = BundleExtractor(options, confirm=lambda p: pytest.fail("should not prompt")).apply_archive(str(bundle_path))
        assert "spec.yaml" in result.applied
        assert (target / "spec.yaml").read_text() == "a"

    def test_unchanged_not_rewritten(self, bundle_path, target):
        (target / "spec.yaml").write_text("a")
        result = BundleExtractor(ApplyOptions(target_dir=str(target))).apply_archive(str(bundle_path))
        assert result.applied == ["policies/policy.yaml"]
        assert result.actions(Action.UNCHANGED) == ["spec.yaml"]

    def test_tampered_archive_refused(self, bundle_path, target):
        rewrite_member(bundle_path, "spec.yaml", b"A")
        with pytest.raises(IntegrityError) as exc:
            BundleExtractor(ApplyOptions(target_dir=str(target))).apply_archive(str(bundle_path))
        assert exc.value.path == "spec.yaml"
        assert list(target.iterdir()) == []

    def test_partial_failure(self, bundle_path, target):
        calls = []

        def flaky(path, data, operation="write"):
            calls.append(path)
            if len(calls) == 2:
                raise BundleIOError(operation, str(path), details="No space left on device")
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(data)

        with patch("governed_bundle.extractor.atomic_write_bytes", side_effect=flaky):
            with pytest.raises(ApplyError) as exc:
                BundleExtractor(ApplyOptions(target_dir=str(target))).apply_archive(str(bundle_path))

        assert exc.value.failed_path == "spec.yaml"
        assert exc.value.applied == ["policies/policy.yaml"]
        assert (target / "policies" / "policy.yaml").exists()
