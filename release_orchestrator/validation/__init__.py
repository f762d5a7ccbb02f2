"""Pre-build validation: tool runners and diagnostic parsers."""

from release_orchestrator.validation.parsers import (
    fallback_issue,
    parse_eslint_json,
    parse_generic_output,
    parse_stage_output,
    parse_tsc_output,
)
from release_orchestrator.validation.pipeline import (
    DEFAULT_STAGES,
    Stage,
    ValidationPipeline,
    run_command,
)

__all__ = [
    "DEFAULT_STAGES",
    "Stage",
    "ValidationPipeline",
    "fallback_issue",
    "parse_eslint_json",
    "parse_generic_output",
    "parse_stage_output",
    "parse_tsc_output",
    "run_command",
]
