"""Tests for build provenance, hashing and the builder."""

from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from shipline.definition import ComponentSpec
from shipline.errors import BuildFailure, ProvenanceMismatch
from shipline.release.builder import Builder, local_image_ref
from shipline.release.hasher import Hasher
from shipline.release.models import ProvenanceRecord
from shipline.release.provenance import (
    PROVENANCE_PATH,
    ProvenanceVerifier,
    commits_match,
    provenance_labels,
)
from shipline.release.version import VersionTagger

from helpers import FakeRuntime

WHEN = datetime(2026, 2, 5, 16, 36, 0, tzinfo=timezone.utc)


def _image(runtime: FakeRuntime, ref: str, record: ProvenanceRecord | None, *, as_labels=False):
    files = {}
    labels = {}
    if record is not None and as_labels:
        labels = provenance_labels(record)
    elif record is not None:
        files[PROVENANCE_PATH] = record.to_json().encode("utf-8")
    runtime.images[ref] = {"files": files, "labels": labels}


def _record(commit="badc0de", source_hash="1" * 64) -> ProvenanceRecord:
    return ProvenanceRecord(
        git_commit=commit, build_date="2026-02-05T16:36:00Z", source_hash=source_hash,
    )


# ── commits_match ────────────────────────────────────────────────────────────

class TestCommitsMatch:

    def test_identical(self):
        assert commits_match("badc0de", "badc0de")

    def test_case_and_whitespace_ignored(self):
        assert commits_match(" BADC0DE1234\n", "badc0de1234")

    def test_full_expected_rejects_abbreviated_embedded(self):
        assert not commits_match("badc0de", "badc0de1234567890")
        assert not commits_match("badc0de", "badc0de1234567890", expected_is_prefix=True)

    def test_extension_rejected_unless_expected_is_abbreviated(self):
        assert not commits_match("badc0de1234", "badc0de")
        assert commits_match("BADC0DE1234", "badc0de", expected_is_prefix=True)

    def test_different_commits(self):
        assert not commits_match("badc0de", "f00df00d")

    def test_prefix_too_short(self):
        assert not commits_match("badc0de1234", "badc0", expected_is_prefix=True)

    def test_empty_never_matches(self):
        assert not commits_match("", "")
        assert not commits_match("badc0de", " ")


# ── ProvenanceVerifier ───────────────────────────────────────────────────────

class TestProvenanceVerifier:

    def test_stale_artifact_rejected(self):
        runtime = FakeRuntime()
        _image(runtime, "app-frontend:v1", _record(commit="badc0de"))
        with pytest.raises(ProvenanceMismatch) as info:
            ProvenanceVerifier(runtime).verify(
                "app-frontend:v1", expected_commit="f00df00d", expected_source_hash="1" * 64,
            )
        assert "badc0de" in str(info.value)
        assert "f00df00d" in str(info.value)
        assert info.value.exit_code == 11

    def test_source_hash_mismatch_rejected(self):
        runtime = FakeRuntime()
        _image(runtime, "img", _record(source_hash="1" * 64))
        with pytest.raises(ProvenanceMismatch, match="source_hash"):
            ProvenanceVerifier(runtime).verify(
                "img", expected_commit="badc0de", expected_source_hash="2" * 64,
            )

    def test_matching_provenance_passes(self):
        runtime = FakeRuntime()
        _image(runtime, "img", _record())
        result = ProvenanceVerifier(runtime).verify(
            "img", expected_commit="badc0de", expected_source_hash="1" * 64,
        )
        assert not result.degraded
        assert result.source_checked
        assert result.embedded.git_commit == "badc0de"

    def test_commit_only_check(self):
        runtime = FakeRuntime()
        _image(runtime, "img", _record())
        result = ProvenanceVerifier(runtime).verify(
            "img", expected_commit="badc0de", expected_source_hash=None,
        )
        assert not result.source_checked

    def test_abbreviated_commit_needs_prefix_flag(self):
        runtime = FakeRuntime()
        _image(runtime, "img", _record(commit="badc0de1234567890"))
        verifier = ProvenanceVerifier(runtime)
        with pytest.raises(ProvenanceMismatch):
            verifier.verify("img", expected_commit="badc0de", expected_source_hash=None)
        result = verifier.verify(
            "img", expected_commit="badc0de", expected_source_hash=None, commit_is_prefix=True,
        )
        assert not result.degraded

    def test_labels_used_when_file_absent(self):
        runtime = FakeRuntime()
        _image(runtime, "img", _record(), as_labels=True)
        embedded = ProvenanceVerifier(runtime).read_embedded("img")
        assert embedded == _record()

    def test_missing_metadata_degrades(self, caplog):
        runtime = FakeRuntime()
        _image(runtime, "img", None)
        with caplog.at_level("WARNING"):
            result = ProvenanceVerifier(runtime).verify(
                "img", expected_commit="badc0de", expected_source_hash=None,
            )
        assert result.degraded
        assert result.embedded is None
        assert "content gate" in caplog.text

    def test_malformed_metadata_is_a_mismatch(self):
        runtime = FakeRuntime()
        runtime.images["img"] = {"files": {PROVENANCE_PATH: b"{not json"}, "labels": {}}
        with pytest.raises(ProvenanceMismatch, match="Malformed"):
            ProvenanceVerifier(runtime).read_embedded("img")

    def test_incomplete_metadata_is_a_mismatch(self):
        runtime = FakeRuntime()
        raw = json.dumps({"git_commit": "badc0de"}).encode()
        runtime.images["img"] = {"files": {PROVENANCE_PATH: raw}, "labels": {}}
        with pytest.raises(ProvenanceMismatch):
            ProvenanceVerifier(runtime).read_embedded("img")

    def test_unknown_image_is_a_mismatch(self):
        with pytest.raises(ProvenanceMismatch, match="Cannot inspect"):
            ProvenanceVerifier(FakeRuntime()).read_embedded("nope")


# ── Hasher ───────────────────────────────────────────────────────────────────

class TestHasher:

    def test_tree_hash_changes_with_content(self, tmp_path):
        (tmp_path / "a.txt").write_text("one")
        before = Hasher.hash_tree(tmp_path)
        (tmp_path / "a.txt").write_text("two")
        assert Hasher.hash_tree(tmp_path) != before

    def test_tree_hash_changes_with_rename(self, tmp_path):
        (tmp_path / "a.txt").write_text("one")
        before = Hasher.hash_tree(tmp_path)
        (tmp_path / "a.txt").rename(tmp_path / "b.txt")
        assert Hasher.hash_tree(tmp_path) != before

    def test_tree_hash_skips_build_output(self, tmp_path):
        (tmp_path / "a.txt").write_text("one")
        before = Hasher.hash_tree(tmp_path)
        (tmp_path / "target").mkdir()
        (tmp_path / "target" / "out.bin").write_bytes(b"\x00")
        assert Hasher.hash_tree(tmp_path) == before

    def test_hash_source_file_and_missing(self, tmp_path):
        f = tmp_path / "main.rs"
        f.write_text("fn main() {}")
        assert Hasher.hash_source(f) == Hasher.hash_file(f)
        with pytest.raises(FileNotFoundError):
            Hasher.hash_source(tmp_path / "missing")


# ── Builder ──────────────────────────────────────────────────────────────────

def _components():
    return [
        ComponentSpec(name="backend", critical_path="backend"),
        ComponentSpec(name="frontend", critical_path="frontend", no_cache=True),
    ]


def _checkout(tmp_path):
    for name in ("backend", "frontend"):
        (tmp_path / name).mkdir()
        (tmp_path / name / "src.txt").write_text(name)
    return tmp_path


class TestBuilder:

    def test_build_stamps_provenance(self, tmp_path):
        root = _checkout(tmp_path)
        runtime = FakeRuntime()
        builder = Builder(runtime, _components(), project="app", context_root=root)
        version = VersionTagger().tag("badc0de", WHEN)

        artifacts = builder.build(version, "badc0de1234")

        assert [a.component for a in artifacts] == ["backend", "frontend"]
        backend = artifacts[0]
        assert backend.content_ref == local_image_ref("app", "backend", version.tag)
        assert backend.tag == f"backend-{version.tag}"
        assert backend.provenance.git_commit == "badc0de1234"
        assert backend.provenance.build_date == "2026-02-05T16:36:00Z"
        assert backend.provenance.source_hash == Hasher.hash_tree(root / "backend")

        embedded = ProvenanceVerifier(runtime).read_embedded(backend.content_ref)
        assert embedded == backend.provenance

    def test_no_cache_components_rebuild(self, tmp_path):
        runtime = FakeRuntime()
        builder = Builder(runtime, _components(), project="app", context_root=_checkout(tmp_path))
        builder.build(VersionTagger().tag("badc0de", WHEN), "badc0de")
        assert sorted(runtime.builds) == [("backend", False), ("frontend", True)]

    def test_failed_component_fails_build(self, tmp_path):
        runtime = FakeRuntime()
        runtime.fail_builds.add("frontend")
        builder = Builder(runtime, _components(), project="app", context_root=_checkout(tmp_path))
        with pytest.raises(BuildFailure) as info:
            builder.build(VersionTagger().tag("badc0de", WHEN), "badc0de")
        assert "frontend" in info.value.detail
        assert info.value.exit_code == 10

    def test_missing_critical_path_fails_before_building(self, tmp_path):
        runtime = FakeRuntime()
        specs = [ComponentSpec(name="backend", critical_path="nowhere")]
        builder = Builder(runtime, specs, project="app", context_root=tmp_path)
        with pytest.raises(BuildFailure, match="critical path"):
            builder.build(VersionTagger().tag("badc0de", WHEN), "badc0de")
        assert runtime.builds == []

    def test_no_components(self, tmp_path):
        with pytest.raises(BuildFailure):
            Builder(FakeRuntime(), [], project="app", context_root=tmp_path).build(
                VersionTagger().tag("badc0de", WHEN), "badc0de",
            )
