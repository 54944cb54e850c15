# step_workflows/cargo.py
# Rust toolchain stages for the pull-request gate.
from __future__ import annotations

from ..dsl import job, sh
from ..model import CacheSpec, Job, Step

# Reduced debug info for dev and test profiles: faster builds, smaller target dir.
RUST_DEBUG_ENV = {
    "CARGO_PROFILE_DEV_DEBUG": "0",
    "CARGO_PROFILE_TEST_DEBUG": "0",
}

# Same set of directories a hosted rust cache action keeps between runs.
CARGO_CACHE_PATHS = [
    "~/.cargo/registry/index",
    "~/.cargo/registry/cache",
    "~/.cargo/git/db",
    "target",
]
CARGO_MANIFESTS = ["Cargo.toml", "Cargo.lock", "**/Cargo.toml", "rust-toolchain", "rust-toolchain.toml"]


def fmt_check(*, cwd: str | None = None) -> Step:
    """Fails if any source file would be reformatted. Never writes to the tree."""
    return sh("Format check", "cargo fmt --all -- --check", cwd=cwd)


def clippy(
    *,
    deny_warnings: bool = True,
    locked: bool = True,
    all_targets: bool = True,
    cwd: str | None = None,
) -> Step:
    """Static analysis over every target, tests included."""
    cmd = ["cargo", "clippy"]
    if locked:
        cmd.append("--locked")
    if all_targets:
        cmd.append("--all-targets")
    if deny_warnings:
        cmd += ["--", "-D", "warnings"]
    return sh("Lint", " ".join(cmd), cwd=cwd)


def build_tests(*, cwd: str | None = None) -> Step:
    """Compile the test suite without running it."""
    return sh("Build tests", "cargo test --no-run", cwd=cwd)


def run_tests(*, cwd: str | None = None) -> Step:
    return sh("Run tests", "cargo test", cwd=cwd)


def rust_cache(*, keep: int = 3) -> CacheSpec:
    return CacheSpec(manifests=list(CARGO_MANIFESTS), paths=list(CARGO_CACHE_PATHS), keep=keep)


def rust_job(name: str = "rust", *, timeout_minutes: float = 60, cwd: str | None = None) -> Job:
    """fmt -> clippy -> build tests -> run tests, fail-fast, with the cargo cache."""
    return job(
        name,
        fmt_check(),
        clippy(),
        build_tests(),
        run_tests(),
        env=dict(RUST_DEBUG_ENV),
        timeout_minutes=timeout_minutes,
        requires=["cargo", "rustc"],
        cache=rust_cache(),
        cwd=cwd,
    )
