"""Heuristic verification of free-text step descriptions.

Each detector pulls a concrete claim out of the description with a regex and
checks it against the project tree or by running a command. Detectors are
tried in order; the first one that recognises the description decides.
"""

from __future__ import annotations

import logging
import os
import re
import shlex
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stepledger.config import StepLedgerConfig
from stepledger.context import ProjectContext
from stepledger.shell import CommandResult, CommandRunner

log = logging.getLogger(__name__)

QUOTE = r"[\"`']?"
FILE_TOKEN = r"([^\s\"`']+\.[a-z]{1,4})"
COMPONENT_SEARCH_DIRS = ("src/components", "components", "src/ui", "app")
SKIPPED_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv", ".workflow"}


@dataclass(slots=True)
class VerificationResult:
    passed: bool | None
    message: str
    verification: str
    suggested_flow: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "passed": self.passed,
            "message": self.message,
            "verification": self.verification,
        }
        if self.suggested_flow is not None:
            payload["browser_test_suggested"] = True
            payload["suggested_flow"] = self.suggested_flow
        return payload


@dataclass(slots=True)
class VerificationContext:
    """Results the caller already has, so detectors need not re-run them."""

    changed_files: list[str] = field(default_factory=list)
    test_results: dict[str, Any] | None = None
    lint_results: dict[str, Any] | None = None


class Detector:
    name: str = "detector"

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        raise NotImplementedError


class FileExistsDetector(Detector):
    name = "file-exists"
    patterns = [
        re.compile(
            rf"(?:create|created|add|added|new)\s+(?:a\s+)?(?:file\s+)?{QUOTE}{FILE_TOKEN}{QUOTE}",
            re.IGNORECASE,
        ),
        re.compile(
            rf"file\s+{QUOTE}{FILE_TOKEN}{QUOTE}\s+(?:created|exists|should exist)",
            re.IGNORECASE,
        ),
        re.compile(rf"file\s+exists:?\s+{QUOTE}{FILE_TOKEN}{QUOTE}", re.IGNORECASE),
        re.compile(rf"[\"`']{FILE_TOKEN}{QUOTE}\s+(?:file\s+)?(?:created|exists)", re.IGNORECASE),
    ]

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        for pattern in self.patterns:
            match = pattern.search(description)
            if not match:
                continue
            file_path = match.group(1)
            exists = oracle.project.resolve(file_path).exists()
            return VerificationResult(
                passed=exists,
                message=f"File exists: {file_path}" if exists else f"File not found: {file_path}",
                verification=self.name,
            )
        return None


class SymbolDetector(Detector):
    name = "function-exists"
    symbol_first = re.compile(
        rf"(?:function|export|method|class)\s+{QUOTE}(\w+){QUOTE}\s+(?:exists?\s+)?(?:in|from)\s+"
        rf"{QUOTE}([^\s\"`']+){QUOTE}",
        re.IGNORECASE,
    )
    file_first = re.compile(
        rf"{QUOTE}([^\s\"`']+\.\w+){QUOTE}\s+(?:should\s+)?(?:exports?|has|have|contains?)\s+"
        rf"{QUOTE}(\w+){QUOTE}",
        re.IGNORECASE,
    )

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        candidates: list[tuple[str, str]] = []
        match = self.symbol_first.search(description)
        if match:
            candidates.append((match.group(1), match.group(2)))
        match = self.file_first.search(description)
        if match:
            candidates.append((match.group(2), match.group(1)))
        for symbol, file_path in candidates:
            full_path = oracle.project.resolve(file_path)
            if not full_path.is_file():
                continue
            content = oracle.read_text(full_path)
            found = symbol in content
            return VerificationResult(
                passed=found,
                message=(
                    f'Found "{symbol}" in {file_path}'
                    if found
                    else f'"{symbol}" not found in {file_path}'
                ),
                verification=self.name,
            )
        return None


class ComponentDetector(Detector):
    name = "component-exists"
    pattern = re.compile(
        rf"component\s+{QUOTE}(\w+){QUOTE}\s+(?:renders?|works?|exists?|displays?)",
        re.IGNORECASE,
    )

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        match = self.pattern.search(description)
        if not match:
            return None
        name = match.group(1)
        wanted = {name, name.lower()}
        for search_dir in COMPONENT_SEARCH_DIRS:
            base = oracle.project.resolve(search_dir)
            if not base.is_dir():
                continue
            for path in oracle.walk(base):
                stem = path.name.split(".", 1)[0]
                if stem in wanted:
                    relative = path.relative_to(oracle.project.root)
                    return VerificationResult(
                        passed=True,
                        message=f"Component found: {relative}",
                        verification=self.name,
                    )
        return VerificationResult(
            passed=False,
            message=f'Component "{name}" not found',
            verification=self.name,
        )


class CliCommandDetector(Detector):
    name = "cli-works"
    pattern = re.compile(
        rf"(?:command|cli|flow)\s+{QUOTE}(\w[\w-]*){QUOTE}\s+(?:works?|runs?|executes?)",
        re.IGNORECASE,
    )

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        match = self.pattern.search(description)
        if not match:
            return None
        executable = oracle.config.project.cli_command.strip()
        if not executable:
            return None
        subcommand = match.group(1)
        command = f"{executable} {shlex.quote(subcommand)} --help"
        result = oracle.run(command, timeout=min(10.0, oracle.timeout))
        if result.ok:
            return VerificationResult(
                passed=True,
                message=f'Command "{executable} {subcommand}" works',
                verification=self.name,
            )
        return VerificationResult(
            passed=False,
            message=f'Command "{executable} {subcommand}" failed: {result.summary()}',
            verification=self.name,
        )


class ConfigKeyDetector(Detector):
    name = "config-exists"
    patterns = [
        re.compile(
            rf"(?:config(?:uration)?|settings?)\s+(?:has|contains|includes)\s+"
            rf"{QUOTE}(\w+(?:\.\w+)*){QUOTE}",
            re.IGNORECASE,
        ),
        re.compile(rf"{QUOTE}(\w+(?:\.\w+)*){QUOTE}\s+(?:in|enabled in)\s+config", re.IGNORECASE),
    ]

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        for pattern in self.patterns:
            match = pattern.search(description)
            if not match:
                continue
            key = match.group(1)
            found, value = oracle.config.lookup(key)
            if found:
                rendered = repr(value)[:50]
                return VerificationResult(
                    passed=True,
                    message=f'Config "{key}" exists (value: {rendered})',
                    verification=self.name,
                )
            return VerificationResult(
                passed=False,
                message=f'Config "{key}" not found',
                verification=self.name,
            )
        return None


class IntegrationDetector(Detector):
    name = "integration"
    wired_into = re.compile(
        rf"{QUOTE}(\w+){QUOTE}\s+(?:integrated|wired|connected)\s+(?:into|to|with)\s+"
        rf"{QUOTE}([^\s\"`']+){QUOTE}",
        re.IGNORECASE,
    )
    file_uses = re.compile(
        rf"{QUOTE}([^\s\"`']+){QUOTE}\s+(?:requires?|imports?|uses?)\s+{QUOTE}(\w+){QUOTE}",
        re.IGNORECASE,
    )

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        candidates: list[tuple[str, str]] = []
        match = self.wired_into.search(description)
        if match:
            candidates.append((match.group(1), match.group(2)))
        match = self.file_uses.search(description)
        if match:
            candidates.append((match.group(2), match.group(1)))
        for module, file_path in candidates:
            full_path = oracle.project.resolve(file_path)
            if not full_path.is_file():
                continue
            found = module in oracle.read_text(full_path)
            return VerificationResult(
                passed=found,
                message=(
                    f'"{module}" found in {file_path}'
                    if found
                    else f'"{module}" not found in {file_path}'
                ),
                verification=self.name,
            )
        return None


class TestSuiteDetector(Detector):
    name = "tests"

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        lowered = description.lower()
        if "test" not in lowered or not ("pass" in lowered or "succeed" in lowered):
            return None
        if context.test_results is not None:
            failed = int(context.test_results.get("failed", 0) or 0)
            return VerificationResult(
                passed=failed == 0,
                message="All tests pass" if failed == 0 else f"{failed} tests failing",
                verification=self.name,
            )
        command = oracle.config.project.test_command.strip()
        if not command:
            return None
        result = oracle.run(command, timeout=oracle.timeout)
        if result.ok:
            return VerificationResult(passed=True, message="Tests pass", verification=self.name)
        return VerificationResult(
            passed=False,
            message=f"Tests failed: {result.summary()}",
            verification=self.name,
        )


class LintDetector(Detector):
    name = "lint"

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        lowered = description.lower()
        if "lint" not in lowered:
            return None
        if not any(word in lowered for word in ("pass", "clean", "no error")):
            return None
        if context.lint_results is not None:
            errors = int(context.lint_results.get("errors", 0) or 0)
            return VerificationResult(
                passed=errors == 0,
                message="No lint errors" if errors == 0 else f"{errors} lint errors",
                verification=self.name,
            )
        command = oracle.config.project.lint_command.strip()
        if not command:
            return None
        result = oracle.run(command, timeout=oracle.timeout)
        return VerificationResult(
            passed=result.ok,
            message="No lint errors" if result.ok else f"Lint failed: {result.summary()}",
            verification=self.name,
        )


UI_PATTERNS = [
    re.compile(
        r"(?:ui|user interface|page|screen|view)\s+(?:renders?|displays?|shows?|works?)",
        re.I,
    ),
    re.compile(
        r"(?:button|form|input|modal|dialog|dropdown)\s+(?:works?|functions?|responds?)",
        re.I,
    ),
    re.compile(r"(?:click|submit|select|hover)\s+(?:works?|triggers?)", re.I),
    re.compile(r"user\s+(?:can|should be able to)\s+(?:see|click|submit|enter|select)", re.I),
    re.compile(r"(?:displays?|shows?|renders?)\s+(?:correctly|properly|as expected)", re.I),
]


def infer_browser_test_flow(description: str) -> dict[str, Any]:
    """Guess what a manual or browser test should exercise."""
    lowered = description.lower()
    page = re.search(
        r"(?:the\s+)?(\w+)\s+(?:page|screen|view)\s+(?:renders?|displays?|shows?|works?)", lowered
    )
    component = re.search(
        r"(?:the\s+)?(\w+)\s+(?:button|form|modal|dialog|dropdown|input)\s+"
        r"(?:works?|functions?|responds?|renders?)",
        lowered,
    )
    action = re.search(r"(?:click|submit|select|hover|enter)\s+(?:on\s+)?(?:the\s+)?(\w+)", lowered)
    quoted = re.search(r"[\"`'](\w+)[\"`']", lowered)

    target = "unknown"
    for match in (page, component, action, quoted):
        if match:
            target = match.group(1)
            break
    if page:
        flow_type = "page"
    elif component:
        flow_type = "component"
    else:
        flow_type = "action"
    return {
        "type": flow_type,
        "target": target,
        "action": action.group(0) if action else "verify-renders",
        "description": description,
    }


class UiInteractionDetector(Detector):
    name = "browser-test"

    def detect(
        self, description: str, oracle: VerificationOracle, context: VerificationContext
    ) -> VerificationResult | None:
        if not oracle.config.verification.suggest_browser_tests:
            return None
        if not any(pattern.search(description) for pattern in UI_PATTERNS):
            return None
        return VerificationResult(
            passed=None,
            message="UI criterion detected - browser test recommended",
            verification=self.name,
            suggested_flow=infer_browser_test_flow(description),
        )


DEFAULT_DETECTORS: tuple[type[Detector], ...] = (
    FileExistsDetector,
    SymbolDetector,
    ComponentDetector,
    CliCommandDetector,
    ConfigKeyDetector,
    IntegrationDetector,
    TestSuiteDetector,
    LintDetector,
    UiInteractionDetector,
)


class VerificationOracle:
    def __init__(
        self,
        project: ProjectContext,
        runner: CommandRunner | None = None,
        detectors: Sequence[Detector] | None = None,
    ) -> None:
        self.project = project
        self.runner = runner or CommandRunner()
        self.detectors = (
            list(detectors) if detectors is not None else [cls() for cls in DEFAULT_DETECTORS]
        )

    @property
    def config(self) -> StepLedgerConfig:
        return self.project.config

    @property
    def timeout(self) -> float:
        return float(self.config.verification.command_timeout_seconds)

    def run(self, command: str, *, timeout: float) -> CommandResult:
        log.debug("Verification command: %s", command)
        return self.runner.run(command, timeout=timeout, cwd=self.project.root)

    @staticmethod
    def read_text(path: Path) -> str:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return ""

    @staticmethod
    def walk(base: Path) -> Iterator[Path]:
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(name for name in dirnames if name not in SKIPPED_DIRS)
            for filename in sorted(filenames):
                yield Path(dirpath) / filename

    def verify(
        self, description: str, context: VerificationContext | None = None
    ) -> VerificationResult:
        if not self.config.verification.auto_infer:
            return VerificationResult(
                passed=None, message="Auto-inference disabled", verification="disabled"
            )
        context = context or VerificationContext()
        for detector in self.detectors:
            result = detector.detect(description, self, context)
            if result is not None:
                return result

        if self.config.verification.fallback_to_manual:
            return VerificationResult(
                passed=None,
                message="Could not auto-verify - manual check required",
                verification="manual",
            )
        return VerificationResult(
            passed=False,
            message="Could not verify and manual fallback is disabled",
            verification="failed",
        )
