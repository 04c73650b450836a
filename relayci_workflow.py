# relayci_workflow.py
# Build/test on PRs and weekly; on main, reuse build_test and gate a release on it.
from __future__ import annotations

from relayci import job, matrix, on_call, on_dispatch, on_pull_request, on_push, on_schedule, release, sh, step, wf
from relayci.step_workflows.cargo import cargo_step, component_step, toolchain_step


def build_test():
    return wf(
        "build_test",
        # Native build + tests on every toolchain in the matrix
        job(
            "build-test-native",
            toolchain_step("${{ matrix.rust }}"),
            component_step("clippy", toolchain="${{ matrix.rust }}"),
            cargo_step("Check", "check", toolchain="${{ matrix.rust }}"),
            cargo_step("Check benches", "check", "--benches", toolchain="${{ matrix.rust }}"),
            cargo_step("Test", "test", toolchain="${{ matrix.rust }}"),
            cargo_step(
                "Test vectors",
                "test",
                "--lib --features verify-test-vectors",
                toolchain="${{ matrix.rust }}",
            ),
            cargo_step(
                "Clippy",
                "clippy",
                "--all-targets --all-features -- -Dwarnings",
                toolchain="${{ matrix.rust }}",
            ),
            matrix=matrix(rust=["stable"]),
            requires=["rustup", "cargo"],
            title="build and test native",
        ),

        # The library must also build for the browser
        job(
            "build-wasm",
            toolchain_step("stable", target="wasm32-unknown-unknown"),
            cargo_step(
                "Build wasm",
                "build",
                "--target wasm32-unknown-unknown --features wasm-bindgen",
                toolchain="stable",
            ),
            requires=["rustup", "cargo"],
            title="build wasm32",
        ),
        on=on_pull_request() | on_dispatch() | on_call() | on_schedule("0 5 * * 4"),
    )


def ci_cd():
    return wf(
        "ci_cd",
        on=on_push("main") | on_dispatch(),
        uses=["build_test"],
        release=release(
            step("Tag {tag}", "git", "tag", "{tag}"),
            step("Publish {artifact} {version}", "cargo", "publish", "--locked"),
            sh("Push tag", "git push origin {tag}"),
            needs=["build_test"],
            artifact="sframe",
        ),
    )


def workflows():
    return [build_test(), ci_cd()]
