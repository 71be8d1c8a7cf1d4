# gridci_workflow.py
# Build + lint pipelines for a Rust workspace: three host platforms x two
# toolchain channels, per-platform dependency steps, a cargo cache keyed on
# Cargo.lock contents, and release binaries published for the stable channel.
from __future__ import annotations

from gridci.dsl import cache, job, matrix, pipeline, sh, upload, wf

CARGO_CACHE_PATHS = ["~/.cargo/registry/cache/", "~/.cargo/git/db/"]
POSIX = "matrix.id == 'macos' || matrix.id == 'linux'"


def workflow():
    build = job(
        "Build",
        sh(
            "Install Dependencies on Windows",
            "curl -SL \"$MOZTOOLS_LINK/moztools-$MOZTOOLS_VERSION.zip\" --create-dirs -o target/dependencies/moztools.zip"
            " && cd target/dependencies && unzip -qo moztools.zip -d .",
            if_="matrix.id == 'windows'",
            env={
                "MOZTOOLS_LINK": "https://github.com/servo/servo-build-deps/releases/download/msvc-deps",
                "MOZTOOLS_VERSION": "4.0",
            },
        ),
        sh(
            "Install Dependencies on OS X",
            "brew install --overwrite python autoconf@2.13 llvm sccache yasm",
            if_="matrix.id == 'macos'",
        ),
        sh("Install Dependencies on Linux", "sudo apt install clang llvm -y", if_="matrix.id == 'linux'"),
        sh("Install Rust Toolchain", "rustup toolchain install {matrix.rust} --component clippy,rustfmt"),
        cache(
            "Cache Cargo Cache and Git Database",
            key="cargo-{matrix.id}-{hash_files}",
            restore_keys=["cargo-{matrix.id}-"],
            hash_files=["**/Cargo.lock"],
            paths=CARGO_CACHE_PATHS,
        ),
        sh(
            "Build POSIX",
            "just build-release -v && just test-release -v"
            " && mv ./target/release/cli ./target/release/spiderfire && strip ./target/release/spiderfire",
            if_=POSIX,
            env={"CC": "clang", "CXX": "clang++", "RUSTC_WRAPPER": "sccache"},
            requires=["just"],
        ),
        sh(
            "Build Windows",
            "just build-release -v && just test-release -v && mv ./target/release/cli.exe ./target/release/spiderfire.exe",
            if_="matrix.id == 'windows'",
            env={
                "MOZTOOLS_PATH": "${{ workspace }}/target/dependencies/moztools-4.0",
                "CC": "clang-cl.exe",
                "CXX": "clang-cl.exe",
                "LINKER": "lld-link.exe",
            },
            requires=["just"],
        ),
        matrix=matrix(
            os=["windows-latest", "ubuntu-latest", "macos-13"],
            rust=["stable", "beta"],
            include=[
                {"os": "windows-latest", "id": "windows"},
                {"os": "macos-latest", "id": "macos"},
                {"os": "ubuntu-latest", "id": "linux"},
            ],
        ),
        fail_fast=False,
        runs_on="{matrix.os}",
        env={"SCCACHE_CACHE_SIZE": "3G"},
        artifacts=[
            upload(
                "spiderfire-{run.sha}-{matrix.id}",
                "target/release/spiderfire{matrix.id == 'windows' && '.exe' || ''}",
                if_="matrix.rust == 'stable'",
                if_no_files_found="error",
            ),
        ],
    )

    lint = job(
        "Lint",
        sh("Install Dependencies on Linux", "sudo apt install clang llvm -y"),
        sh("Install Rust Toolchain", "rustup toolchain install stable --component clippy,rustfmt"),
        cache(
            "Cache Cargo Cache and Git Database",
            key="cargo-lint-{hash_files}",
            restore_keys=["cargo-lint-"],
            hash_files=["**/Cargo.lock"],
            paths=CARGO_CACHE_PATHS,
        ),
        sh(
            "Lint",
            "just lint",
            env={"CC": "clang", "CXX": "clang++", "RUSTC_WRAPPER": "sccache"},
            requires=["just"],
        ),
        runs_on="ubuntu-latest",
        env={"SCCACHE_CACHE_SIZE": "1G"},
    )

    env = {"CCACHE": "sccache", "CARGO_TERM_COLOR": "never", "SHELL": "/bin/bash"}
    return wf(
        pipeline("Build", build, env=env),
        pipeline("Lint", lint, env=env),
    )
