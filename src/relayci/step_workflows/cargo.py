# step_workflows/cargo.py
from __future__ import annotations

import shlex

from ..model import StepSpec


# ---------------------------------------------------------------------
# Rust toolchain step helpers
# ---------------------------------------------------------------------

def toolchain_step(
    toolchain: str,
    target: str | None = None,
    *,
    profile: str = "minimal",
) -> StepSpec:
    """Install a rustup toolchain (and optionally a compilation target)."""
    args = ["toolchain", "install", toolchain, "--profile", profile]
    if target:
        args.extend(["--target", target])
    name = f"Install {toolchain} toolchain"
    if target:
        name += f" ({target})"
    return StepSpec(name=name, command="rustup", args=tuple(args))


def component_step(component: str, toolchain: str | None = None) -> StepSpec:
    """Add a rustup component such as clippy or rustfmt."""
    args = ["component", "add", component]
    if toolchain:
        args.extend(["--toolchain", toolchain])
    return StepSpec(name=f"Add {component}", command="rustup", args=tuple(args))


def cargo_step(
    name: str,
    command: str,
    args: str | None = None,
    *,
    toolchain: str | None = None,
    cwd: str | None = None,
    continue_on_error: bool = False,
) -> StepSpec:
    """
    Create a step running `cargo [+toolchain] command args`.

    `args` is a single string, split like a shell would split it:
        cargo_step("Clippy", "clippy", "--all-targets -- -Dwarnings")
    """
    cmd_parts = []
    if toolchain:
        cmd_parts.append(f"+{toolchain}")
    cmd_parts.append(command)
    if args:
        cmd_parts.extend(shlex.split(args))
    return StepSpec(
        name=name,
        command="cargo",
        args=tuple(cmd_parts),
        cwd=cwd,
        continue_on_error=continue_on_error,
    )
