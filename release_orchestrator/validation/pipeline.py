"""Pre-build validation pipeline.

Stages run in a fixed order: type check, lint, native prebuild, bundle
export. Every stage of the requested tier runs even after a failure so
the caller gets a complete report; the result passes only if every stage
passed.
"""

from __future__ import annotations

import logging
import shlex
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from release_orchestrator.types import (
    Severity,
    ValidationIssue,
    ValidationResult,
    ValidationTier,
)
from release_orchestrator.validation.parsers import (
    Parser,
    parse_eslint_json,
    parse_generic_output,
    parse_stage_output,
    parse_tsc_output,
)

logger = logging.getLogger(__name__)

# Runner contract: (command, cwd, timeout) -> (exit_code, combined output)
CommandRunner = Callable[[Sequence[str], Path, float], tuple[int, str]]


@dataclass(frozen=True)
class Stage:
    """One validation gate."""

    name: str
    command: tuple[str, ...]
    parser: Parser
    tiers: frozenset[ValidationTier]


ALL_TIERS = frozenset({ValidationTier.QUICK, ValidationTier.FULL})
FULL_ONLY = frozenset({ValidationTier.FULL})

DEFAULT_STAGES: tuple[Stage, ...] = (
    Stage(
        "typescript",
        ("npx", "tsc", "--noEmit", "--skipLibCheck"),
        parse_tsc_output,
        ALL_TIERS,
    ),
    Stage(
        "eslint",
        ("npx", "eslint", "src/", "--ext", ".ts,.tsx", "--format", "json"),
        parse_eslint_json,
        ALL_TIERS,
    ),
    Stage(
        "expo-prebuild",
        ("npx", "expo", "prebuild", "--no-install"),
        parse_generic_output,
        FULL_ONLY,
    ),
    Stage(
        "metro-bundle",
        ("npx", "expo", "export", "--output-dir", ".validation-export"),
        parse_generic_output,
        FULL_ONLY,
    ),
)


def run_command(command: Sequence[str], cwd: Path, timeout: float) -> tuple[int, str]:
    """Run a command and capture combined stdout/stderr."""
    result = subprocess.run(
        list(command),
        cwd=cwd,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        timeout=timeout,
        check=False,
    )
    return result.returncode, result.stdout or ""


class ValidationPipeline:
    """Ordered set of validation stages.

    Args:
        stages: Stages in execution order.
        timeout: Per-stage timeout in seconds.
        output_limit: Characters kept for unparseable failures.
        runner: Command runner, injectable for tests.
    """

    def __init__(
        self,
        stages: Sequence[Stage] = DEFAULT_STAGES,
        timeout: float = 300.0,
        output_limit: int = 500,
        runner: CommandRunner = run_command,
    ) -> None:
        self.stages = tuple(stages)
        self.timeout = timeout
        self.output_limit = output_limit
        self.runner = runner

    def stages_for(self, tier: ValidationTier) -> list[Stage]:
        """Stages belonging to ``tier``, in order."""
        return [stage for stage in self.stages if tier in stage.tiers]

    def _run_stage(self, stage: Stage, project_path: Path) -> list[ValidationIssue]:
        logger.info("Running validation stage %s: %s", stage.name, shlex.join(stage.command))
        try:
            exit_code, output = self.runner(stage.command, project_path, self.timeout)
        except subprocess.TimeoutExpired:
            return [
                ValidationIssue(
                    file="", message=f"Stage timed out after {self.timeout:.0f}s"
                )
            ]
        except OSError as e:
            return [ValidationIssue(file="", message=f"Failed to run stage: {e}")]
        return parse_stage_output(stage.parser, output, exit_code, self.output_limit)

    def run_tier(
        self, project_path: Path | str, tier: ValidationTier = ValidationTier.FULL
    ) -> ValidationResult:
        """Run every stage of ``tier`` against a project.

        Args:
            project_path: Project source directory.
            tier: Validation depth.

        Returns:
            ValidationResult; ``passed`` is False if any stage reported an
            error.
        """
        project_path = Path(project_path)
        started = time.monotonic()
        result = ValidationResult(passed=True)

        for stage in self.stages_for(tier):
            issues = self._run_stage(stage, project_path)
            for issue in issues:
                issue.stage = stage.name
                if issue.severity == Severity.ERROR:
                    result.errors.append(issue)
                else:
                    result.warnings.append(issue)
            stage_errors = sum(1 for i in issues if i.severity == Severity.ERROR)
            if stage_errors:
                result.passed = False
                logger.warning(
                    "Validation stage %s failed with %d errors", stage.name, stage_errors
                )
            result.stages_run.append(stage.name)

        result.duration_seconds = time.monotonic() - started
        logger.info(
            "Validation %s for %s: %d errors, %d warnings in %.1fs",
            "passed" if result.passed else "failed",
            project_path,
            len(result.errors),
            len(result.warnings),
            result.duration_seconds,
        )
        return result


__all__ = [
    "CommandRunner",
    "DEFAULT_STAGES",
    "Stage",
    "ValidationPipeline",
    "run_command",
]
