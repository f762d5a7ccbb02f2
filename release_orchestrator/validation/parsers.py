"""Parsers turning tool output into validation issues.

Parsing is best effort: tool output formats drift between versions, so
``parse_stage_output`` guarantees at least one error whenever a tool
exits non-zero, even if none of its lines could be parsed.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable

from release_orchestrator.types import Severity, ValidationIssue

logger = logging.getLogger(__name__)

Parser = Callable[[str], list[ValidationIssue]]

# src/App.tsx(12,5): error TS2322: Type 'string' is not assignable ...
TSC_PATTERN = re.compile(
    r"^(.+?)\((\d+),(\d+)\):\s*(error|warning)\s+(TS\d+):\s*(.+)$", re.MULTILINE
)

# path/to/file.js:10:4: message  or  path/to/file.js:10: message
LOCATION_PATTERN = re.compile(r"^(\S+?):(\d+)(?::(\d+))?:?\s+(.+)$")
ERROR_PATTERN = re.compile(r"^\s*(?:error|Error|ERROR)\b:?\s*(.+)$")


def parse_tsc_output(output: str) -> list[ValidationIssue]:
    """Parse ``tsc --noEmit`` diagnostics."""
    issues = []
    for match in TSC_PATTERN.finditer(output):
        file, line, column, severity, code, message = match.groups()
        issues.append(
            ValidationIssue(
                file=file.strip(),
                line=int(line),
                column=int(column),
                code=code,
                message=message.strip(),
                severity=Severity.ERROR if severity == "error" else Severity.WARNING,
            )
        )
    return issues


def parse_eslint_json(output: str) -> list[ValidationIssue]:
    """Parse ``eslint --format json`` output.

    ESLint severity 2 is an error, 1 a warning. Output that is not a JSON
    report yields no issues.
    """
    start = output.find("[")
    if start == -1:
        return []
    try:
        report = json.loads(output[start:])
    except json.JSONDecodeError:
        logger.debug("ESLint output is not JSON; skipping structured parse")
        return []
    if not isinstance(report, list):
        return []

    issues = []
    for result in report:
        if not isinstance(result, dict):
            continue
        file = result.get("filePath", "")
        for message in result.get("messages", []):
            issues.append(
                ValidationIssue(
                    file=file,
                    line=message.get("line"),
                    column=message.get("column"),
                    code=message.get("ruleId"),
                    message=message.get("message", ""),
                    severity=(
                        Severity.ERROR
                        if message.get("severity") == 2
                        else Severity.WARNING
                    ),
                )
            )
    return issues


def parse_generic_output(output: str) -> list[ValidationIssue]:
    """Pick error lines out of free-form tool output.

    Recognises ``file:line[:col]: message`` lines that mention an error
    and bare ``Error: message`` lines.
    """
    issues = []
    for raw in output.splitlines():
        line = raw.strip()
        if not line:
            continue
        located = LOCATION_PATTERN.match(line)
        if located and "error" in located.group(4).lower():
            file, line_no, column, message = located.groups()
            issues.append(
                ValidationIssue(
                    file=file,
                    line=int(line_no),
                    column=int(column) if column else None,
                    message=message.strip(),
                )
            )
            continue
        bare = ERROR_PATTERN.match(line)
        if bare:
            issues.append(ValidationIssue(file="", message=bare.group(1).strip()))
    return issues


def fallback_issue(output: str, limit: int = 500) -> ValidationIssue:
    """Synthetic error holding the head of unparseable failure output."""
    text = output.strip()
    message = text[:limit] if text else "Command failed without output"
    return ValidationIssue(file="", message=message)


def parse_stage_output(
    parser: Parser, output: str, exit_code: int, limit: int = 500
) -> list[ValidationIssue]:
    """Run ``parser`` and apply the non-zero-exit fallback.

    Args:
        parser: Tool-specific parser.
        output: Combined stdout/stderr.
        exit_code: Process exit code.
        limit: Characters kept by the fallback issue.

    Returns:
        Parsed issues; contains at least one error if ``exit_code`` != 0.
    """
    try:
        issues = parser(output)
    except Exception:
        logger.exception("Validation output parser failed")
        issues = []
    has_error = any(issue.severity == Severity.ERROR for issue in issues)
    if exit_code != 0 and not has_error:
        issues.append(fallback_issue(output, limit))
    return issues


__all__ = [
    "Parser",
    "fallback_issue",
    "parse_eslint_json",
    "parse_generic_output",
    "parse_stage_output",
    "parse_tsc_output",
]
