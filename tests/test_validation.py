"""Tests for validation parsers and the validation pipeline."""

import json
import subprocess

import pytest

from release_orchestrator.types import Severity, ValidationTier
from release_orchestrator.validation import (
    DEFAULT_STAGES,
    Stage,
    ValidationPipeline,
    fallback_issue,
    parse_eslint_json,
    parse_generic_output,
    parse_stage_output,
    parse_tsc_output,
)

TSC_OUTPUT = """\
src/App.tsx(12,5): error TS2322: Type 'string' is not assignable to type 'number'.
src/util.ts(3,1): warning TS6133: 'x' is declared but never read.
Found 1 error.
"""

ESLINT_REPORT = [
    {
        "filePath": "/app/src/App.tsx",
        "messages": [
            {"ruleId": "no-unused-vars", "severity": 2, "message": "'a' is unused", "line": 4, "column": 7},
            {"ruleId": "eqeqeq", "severity": 1, "message": "Expected '==='", "line": 9, "column": 12},
        ],
    },
    {"filePath": "/app/src/ok.ts", "messages": []},
]


class FakeRunner:
    """Command runner returning canned results per stage command."""

    def __init__(self, results):
        self.results = results
        self.calls = []

    def __call__(self, command, cwd, timeout):
        self.calls.append(tuple(command))
        outcome = self.results.get(command[1], (0, ""))
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class TestParsers:
    """Tests for the tool output parsers."""

    def test_parse_tsc(self):
        """tsc diagnostics map to issues with location and code."""
        issues = parse_tsc_output(TSC_OUTPUT)

        assert len(issues) == 2
        error, warning = issues
        assert error.file == "src/App.tsx"
        assert (error.line, error.column, error.code) == (12, 5, "TS2322")
        assert error.severity == Severity.ERROR
        assert warning.severity == Severity.WARNING

    def test_parse_eslint_json(self):
        """ESLint severity 2 is an error and 1 a warning."""
        output = "npm notice\n" + json.dumps(ESLINT_REPORT)

        issues = parse_eslint_json(output)

        assert [i.severity for i in issues] == [Severity.ERROR, Severity.WARNING]
        assert issues[0].code == "no-unused-vars"
        assert issues[0].file == "/app/src/App.tsx"
        assert issues[1].line == 9

    def test_parse_eslint_garbage(self):
        """Non-JSON output yields no issues."""
        assert parse_eslint_json("Oops! Something went wrong!") == []
        assert parse_eslint_json("[not json") == []

    def test_parse_generic_output(self):
        """Located error lines and bare Error lines are picked up."""
        output = "\n".join(
            [
                "Starting Metro Bundler",
                "app.json:3:7: error invalid plugin config",
                "src/index.ts:10: note nothing wrong",
                "Error: Unable to resolve module ./missing",
            ]
        )

        issues = parse_generic_output(output)

        assert len(issues) == 2
        assert issues[0].file == "app.json"
        assert (issues[0].line, issues[0].column) == (3, 7)
        assert issues[1].file == ""
        assert issues[1].message == "Unable to resolve module ./missing"

    def test_fallback_issue(self):
        """The fallback keeps the head of the output."""
        assert fallback_issue("  x" * 400, limit=10).message == "x  x  x  x"
        assert fallback_issue("").message == "Command failed without output"


class TestParseStageOutput:
    """Tests for the non-zero exit fallback."""

    def test_nonzero_exit_without_parsed_errors(self):
        """A failing tool always yields at least one error."""
        issues = parse_stage_output(parse_tsc_output, "segfault", exit_code=1)

        assert len(issues) == 1
        assert issues[0].message == "segfault"

    def test_warnings_alone_do_not_satisfy_fallback(self):
        """Only error-severity issues count towards the fallback."""
        output = "src/util.ts(3,1): warning TS6133: unused."

        issues = parse_stage_output(parse_tsc_output, output, exit_code=2)

        assert [i.severity for i in issues] == [Severity.WARNING, Severity.ERROR]

    def test_zero_exit_no_fallback(self):
        """A clean exit adds nothing."""
        assert parse_stage_output(parse_tsc_output, "", exit_code=0) == []

    def test_raising_parser(self):
        """A parser crash degrades to the fallback issue."""

        def broken(output):
            raise ValueError("bad")

        issues = parse_stage_output(broken, "out", exit_code=1)

        assert [i.message for i in issues] == ["out"]


class TestValidationPipeline:
    """Tests for ValidationPipeline.run_tier."""

    def test_tiers_select_stages(self):
        """Quick runs type check and lint; full adds prebuild and bundle."""
        pipeline = ValidationPipeline()

        assert [s.name for s in pipeline.stages_for(ValidationTier.QUICK)] == [
            "typescript",
            "eslint",
        ]
        assert [s.name for s in pipeline.stages_for(ValidationTier.FULL)] == [
            s.name for s in DEFAULT_STAGES
        ]

    def test_all_pass(self, tmp_path):
        """Clean stages pass and are all recorded."""
        runner = FakeRunner({})
        pipeline = ValidationPipeline(runner=runner)

        result = pipeline.run_tier(tmp_path, ValidationTier.FULL)

        assert result.passed
        assert result.errors == []
        assert result.stages_run == ["typescript", "eslint", "expo-prebuild", "metro-bundle"]
        assert len(runner.calls) == 4

    def test_runs_every_stage_after_failure(self, tmp_path):
        """A failing stage does not stop later stages."""
        runner = FakeRunner({"tsc": (2, TSC_OUTPUT), "eslint": (1, json.dumps(ESLINT_REPORT))})
        pipeline = ValidationPipeline(runner=runner)

        result = pipeline.run_tier(tmp_path, ValidationTier.QUICK)

        assert not result.passed
        assert result.stages_run == ["typescript", "eslint"]
        assert [e.stage for e in result.errors] == ["typescript", "eslint"]
        assert len(result.warnings) == 2

    def test_warnings_only_passes(self, tmp_path):
        """Warnings from a clean exit do not fail validation."""
        report = [{"filePath": "a.ts", "messages": [{"severity": 1, "message": "meh"}]}]
        runner = FakeRunner({"eslint": (0, json.dumps(report))})

        result = ValidationPipeline(runner=runner).run_tier(tmp_path, ValidationTier.QUICK)

        assert result.passed
        assert len(result.warnings) == 1

    def test_timeout_becomes_error(self, tmp_path):
        """A timed out stage is reported as an error."""
        runner = FakeRunner({"tsc": subprocess.TimeoutExpired(["npx"], 5)})
        pipeline = ValidationPipeline(timeout=5, runner=runner)

        result = pipeline.run_tier(tmp_path, ValidationTier.QUICK)

        assert not result.passed
        assert result.errors[0].message == "Stage timed out after 5s"
        assert result.stages_run == ["typescript", "eslint"]

    def test_missing_tool_becomes_error(self, tmp_path):
        """An OSError launching the tool is reported as an error."""
        runner = FakeRunner({"tsc": FileNotFoundError("npx")})

        result = ValidationPipeline(runner=runner).run_tier(tmp_path, ValidationTier.QUICK)

        assert not result.passed
        assert result.errors[0].message.startswith("Failed to run stage")

    def test_custom_stages(self, tmp_path):
        """Custom stage lists run in order."""
        stage = Stage("custom", ("tool", "check"), parse_generic_output, frozenset({ValidationTier.QUICK}))
        runner = FakeRunner({"check": (1, "")})

        result = ValidationPipeline([stage], runner=runner).run_tier(tmp_path, ValidationTier.QUICK)

        assert not result.passed
        assert result.errors[0].message == "Command failed without output"
        assert result.errors[0].stage == "custom"


@pytest.mark.parametrize("tier", list(ValidationTier))
def test_duration_recorded(tmp_path, tier):
    """Every run records a non-negative duration."""
    result = ValidationPipeline(runner=FakeRunner({})).run_tier(tmp_path, tier)

    assert result.duration_seconds >= 0
