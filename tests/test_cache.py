"""
Tests for the dependency cache store
"""

from __future__ import annotations

import os
import time

import pytest

from prgate.cache import CacheStore, manifest_fingerprint
from prgate.dsl import job, sh
from prgate.model import CacheSpec


def cargo_job(**cache_kw):
    spec = dict(manifests=["Cargo.toml", "Cargo.lock"], paths=["target"])
    spec.update(cache_kw)
    return job(
        "rust",
        sh("Run tests", "cargo test"),
        env={"CARGO_PROFILE_TEST_DEBUG": "0"},
        cache=CacheSpec(**spec),
    )


@pytest.fixture
def store(tmp_path):
    return CacheStore(tmp_path / "cache-store")


class TestFingerprint:
    def test_stable_for_same_inputs(self, cargo_repo):
        k1, _ = manifest_fingerprint(cargo_job(), cargo_repo)
        k2, _ = manifest_fingerprint(cargo_job(), cargo_repo)
        assert k1 == k2

    def test_changes_with_lockfile(self, cargo_repo):
        before, _ = manifest_fingerprint(cargo_job(), cargo_repo)
        (cargo_repo / "Cargo.lock").write_text("version = 3\n# serde 1.0.200\n")
        after, _ = manifest_fingerprint(cargo_job(), cargo_repo)
        assert before != after

    def test_ignores_non_manifest_sources(self, cargo_repo):
        before, _ = manifest_fingerprint(cargo_job(), cargo_repo)
        (cargo_repo / "src").mkdir()
        (cargo_repo / "src" / "main.rs").write_text("fn main() {}\n")
        after, _ = manifest_fingerprint(cargo_job(), cargo_repo)
        assert before == after

    def test_changes_with_env(self, cargo_repo):
        a, _ = manifest_fingerprint(cargo_job(), cargo_repo)
        other = cargo_job()
        other.env["CARGO_PROFILE_TEST_DEBUG"] = "2"
        b, _ = manifest_fingerprint(other, cargo_repo)
        assert a != b

    def test_manifest_lists_hashed_files(self, cargo_repo):
        _, manifest = manifest_fingerprint(cargo_job(), cargo_repo)
        assert [f for f, _ in manifest["payload"]["manifests"]] == ["Cargo.lock", "Cargo.toml"]

    def test_missing_manifests_still_produce_a_key(self, tmp_path):
        key, manifest = manifest_fingerprint(cargo_job(), tmp_path)
        assert len(key) == 64
        assert manifest["payload"]["manifests"] == []


class TestCacheStore:
    def test_miss_when_nothing_saved(self, cargo_repo, store):
        j = cargo_job()
        key, _ = manifest_fingerprint(j, cargo_repo)
        hit = store.restore(j, key, repo_root=cargo_repo)
        assert hit.hit is False
        assert hit.reason == "cache miss"

    def test_save_then_restore_target_dir(self, cargo_repo, store):
        j = cargo_job()
        target = cargo_repo / "target" / "debug"
        target.mkdir(parents=True)
        (target / "demo.d").write_text("deps")

        key, manifest = manifest_fingerprint(j, cargo_repo)
        store.save(j, key, manifest, repo_root=cargo_repo)

        (target / "demo.d").unlink()
        hit = store.restore(j, key, repo_root=cargo_repo)

        assert hit.hit is True
        assert hit.manifest["key"] == key
        assert (target / "demo.d").read_text() == "deps"

    def test_home_paths_are_archived_relative_to_home(self, cargo_repo, store, tmp_path, monkeypatch):
        home = tmp_path / "home"
        registry = home / ".cargo" / "registry" / "cache"
        registry.mkdir(parents=True)
        (registry / "serde.crate").write_text("crate")
        monkeypatch.setenv("HOME", str(home))

        j = cargo_job(paths=["~/.cargo/registry/cache"])
        key, manifest = manifest_fingerprint(j, cargo_repo)
        store.save(j, key, manifest, repo_root=cargo_repo)
        (registry / "serde.crate").unlink()

        assert store.restore(j, key, repo_root=cargo_repo).hit
        assert (registry / "serde.crate").read_text() == "crate"

    def test_corrupt_artifact_is_a_miss(self, cargo_repo, store):
        j = cargo_job()
        key, manifest = manifest_fingerprint(j, cargo_repo)
        store.artifact_path(j.name, key).write_bytes(b"not a tarball")
        store.manifest_path(j.name, key).write_text("{}")

        hit = store.restore(j, key, repo_root=cargo_repo)
        assert hit.hit is False
        assert "restore failed" in hit.reason

    def test_disabled_cache(self, cargo_repo, store):
        j = cargo_job(enabled=False)
        (cargo_repo / "target").mkdir()
        key, manifest = manifest_fingerprint(j, cargo_repo)
        store.save(j, key, manifest, repo_root=cargo_repo)

        assert not store.artifact_path(j.name, key).exists()
        hit = store.restore(j, key, repo_root=cargo_repo)
        assert hit.hit is False
        assert hit.reason == "cache disabled for job"

    def test_no_paths(self, cargo_repo, store):
        j = cargo_job(paths=[])
        hit = store.restore(j, "abc", repo_root=cargo_repo)
        assert hit.reason == "no cache paths specified"

    def test_last_writer_wins(self, cargo_repo, store):
        j = cargo_job()
        (cargo_repo / "target").mkdir()
        out = cargo_repo / "target" / "out.txt"
        key, manifest = manifest_fingerprint(j, cargo_repo)

        out.write_text("first")
        store.save(j, key, manifest, repo_root=cargo_repo)
        out.write_text("second")
        store.save(j, key, manifest, repo_root=cargo_repo)

        out.unlink()
        store.restore(j, key, repo_root=cargo_repo)
        assert out.read_text() == "second"

    def test_prune_keeps_newest(self, cargo_repo, store):
        j = cargo_job()
        (cargo_repo / "target").mkdir()
        now = time.time()
        for i, key in enumerate(["k1", "k2", "k3", "k4"]):
            store.save(j, key, {"key": key}, repo_root=cargo_repo)
            os.utime(store.artifact_path(j.name, key), (now + i, now + i))

        store.prune(j.name, keep=2)

        remaining = sorted(p.name for p in (store.root / j.name).iterdir())
        assert remaining == ["k3.manifest.json", "k3.tar.gz", "k4.manifest.json", "k4.tar.gz"]
