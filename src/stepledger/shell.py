from __future__ import annotations

import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

BLOCKED_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"\brm\s+-[a-z]*r[a-z]*f?[a-z]*\s+(?:/|~|\*|\.\.?)(?:\s|$)"),
        "recursive delete of a root path",
    ),
    (re.compile(r"\bmkfs(?:\.\w+)?\b"), "filesystem formatting"),
    (re.compile(r"\bdd\s+[^|;&]*\bof=/dev/"), "raw device write"),
    (re.compile(r">\s*/dev/(?:sd|nvme|hd)\w*"), "raw device write"),
    (re.compile(r":\(\)\s*\{\s*:\s*\|\s*:\s*&\s*\}\s*;\s*:"), "fork bomb"),
    (
        re.compile(r"\b(?:curl|wget)\b[^|]*\|\s*(?:sudo\s+)?(?:ba|z|da)?sh\b"),
        "piping a download into a shell",
    ),
    (re.compile(r"(?:^|[\s;&|])sudo\s"), "privilege escalation"),
    (re.compile(r"\bchmod\s+-R\s+777\s+/(?:\s|$)"), "recursive permission change on /"),
    (re.compile(r"\bshutdown\b|\breboot\b|\bhalt\b"), "host power control"),
]

SUSPICIOUS_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r";"), "command chaining with ';'"),
    (re.compile(r"&&|\|\|"), "conditional command chaining"),
    (re.compile(r"\$\("), "command substitution"),
    (re.compile(r"`"), "backtick command substitution"),
    (re.compile(r"(?<![<>])>{1,2}(?!&)"), "output redirection"),
    (re.compile(r"\beval\b"), "eval"),
]


@dataclass(slots=True)
class CommandValidation:
    safe: bool
    blocked: bool
    reason: str = ""


def validate_command(command: str) -> CommandValidation:
    """Classify a shell command as safe, suspicious, or blocked."""
    normalized = command.strip()
    if not normalized:
        return CommandValidation(safe=False, blocked=True, reason="empty command")
    for pattern, reason in BLOCKED_PATTERNS:
        if pattern.search(normalized):
            return CommandValidation(safe=False, blocked=True, reason=f"blocked: {reason}")
    for pattern, reason in SUSPICIOUS_PATTERNS:
        if pattern.search(normalized):
            return CommandValidation(safe=False, blocked=False, reason=f"suspicious: {reason}")
    return CommandValidation(safe=True, blocked=False)


@dataclass(slots=True)
class CommandResult:
    command: str
    returncode: int
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out

    def summary(self, limit: int = 100) -> str:
        if self.timed_out:
            return "timed out"
        text = self.stderr.strip() or self.stdout.strip() or f"exit code {self.returncode}"
        return text[:limit]


class CommandRunner:
    """Runs shell commands with a timeout and captured output."""

    def run(self, command: str, *, timeout: float, cwd: Path | None = None) -> CommandResult:
        try:
            proc = subprocess.run(
                command,
                shell=True,
                cwd=str(cwd) if cwd else None,
                text=True,
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as exc:
            return CommandResult(
                command=command,
                returncode=-1,
                stdout=_decode(exc.stdout),
                stderr=_decode(exc.stderr),
                timed_out=True,
            )
        except OSError as exc:
            return CommandResult(command=command, returncode=127, stderr=str(exc))
        return CommandResult(
            command=command,
            returncode=proc.returncode,
            stdout=proc.stdout,
            stderr=proc.stderr,
        )


def _decode(value: str | bytes | None) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value
