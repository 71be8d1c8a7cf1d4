# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional


TOOL_HINTS = {
    "cargo": "Install a Rust toolchain (rustup) or fix PATH.",
    "just": "Install just (e.g., cargo install just).",
    "clang": "Install clang/LLVM or fix PATH.",
    "sccache": "Install sccache or unset RUSTC_WRAPPER.",
    "npm": "Install Node.js (includes npm) or fix PATH.",
    "node": "Install Node.js or fix PATH.",
    "pytest": "Install pytest (e.g., pip install pytest).",
    "ruff": "Install ruff (e.g., pip install ruff).",
    "docker": "Install Docker and ensure the daemon is running.",
    "python3": "Install Python 3 or fix PATH (python3).",
}


@dataclass(eq=False)
class CIError(Exception):
    """
    Structured CI error with enough context for:
      - clean CLI output
      - per-instance status reports
      - debugging without full tracebacks
    """
    kind: str
    message: str
    job: str = ""
    step: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"{self.kind}: {self.message}"]
        if self.job:
            lines.append(f"job={self.job}")
        if self.step:
            lines.append(f"step={self.step}")
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


class WorkflowError(CIError):
    """The pipeline definition itself is invalid (duplicate names, bad shape...)."""

    def __init__(self, message: str, **details: Any):
        super().__init__(kind="workflow_error", message=message, details=details)


class MalformedMatrix(CIError):
    def __init__(self, message: str, *, job: str = "", **details: Any):
        super().__init__(kind="malformed_matrix", message=message, job=job, details=details)


class ConditionEvalError(CIError):
    """Raised by the condition parser. Callers treat it as a false condition."""

    def __init__(self, message: str, *, expression: str = ""):
        super().__init__(kind="condition_error", message=message, details={"expression": expression})


class StepFailed(CIError):
    """A step exited non-zero or ran past its timeout."""

    def __init__(
        self,
        *,
        job: str,
        step: str,
        cmd: str,
        exit_code: Optional[int],
        reason: str = "exit_code",
        stdout: str = "",
        stderr: str = "",
    ):
        self.exit_code = exit_code
        self.reason = reason
        self.stdout = stdout
        self.stderr = stderr
        if reason == "timeout":
            message = f"step '{step}' timed out"
        else:
            message = f"step '{step}' failed (exit={exit_code})"
        super().__init__(
            kind="step_failed",
            message=message,
            job=job,
            step=step,
            details={"cmd": cmd, "exit_code": exit_code, "reason": reason},
        )


class ToolMissing(CIError):
    def __init__(self, *, job: str, step: str, tool: str):
        self.tool = tool
        hint = TOOL_HINTS.get(tool, f"Install {tool} or fix PATH.")
        super().__init__(
            kind="tool_unavailable",
            message=f"{tool} is not available",
            job=job,
            step=step,
            details={"tool": tool, "hint": hint},
        )


class ArtifactMissing(CIError):
    """A declared artifact resolved to zero files under an `error` policy."""

    def __init__(self, *, job: str, artifact: str, paths: list[str]):
        self.artifact = artifact
        super().__init__(
            kind="artifact_missing",
            message=f"no files found for artifact '{artifact}'",
            job=job,
            details={"paths": paths},
        )
