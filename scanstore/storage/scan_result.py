"""Pydantic models for the finished scan handed over by the analysis pipeline.

The pipeline speaks camelCase (``testsPassed``, ``scoreModifier``); both that
and the snake_case field names are accepted.
"""

from __future__ import annotations

from typing import Any, Mapping

import pydantic
from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

from scanstore.errors import ValidationError
from scanstore.storage.lifecycle import (
    ALGORITHM_VERSION,
    FAILED_WITHOUT_SCORE,
    ScanState,
    terminal_state_for,
)


class CheckOutcome(BaseModel):
    """Outcome of one named security check.

    Keys other than the four columns below are kept verbatim and stored in
    the serialized ``output`` blob. ``scoreDescription`` is display text and
    is dropped.
    """

    model_config = ConfigDict(
        extra="allow", populate_by_name=True, alias_generator=to_camel
    )

    expectation: str | None = None
    result: str | None = None
    passed: bool = Field(False, alias="pass")
    score_modifier: int = 0
    score_description: str | None = None

    def output(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class ScanSummary(BaseModel):
    """Scan-level totals and terminal fields."""

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    tests_failed: int = Field(0, ge=0)
    tests_passed: int = Field(0, ge=0)
    tests_quantity: int = Field(0, ge=0)
    grade: str | None = None
    score: int | None = None
    algorithm_version: int = ALGORITHM_VERSION
    status_code: int | None = None
    response_headers: dict[str, Any] | None = None
    error: str | None = None

    @model_validator(mode="after")
    def _grade_and_score_together(self) -> "ScanSummary":
        if (self.grade is None) != (self.score is None):
            raise ValueError("grade and score must both be set or both be null")
        return self


class ScanResult(BaseModel):
    """A completed scan: per-check outcomes plus the scan summary."""

    scan: ScanSummary
    tests: dict[str, CheckOutcome] = Field(default_factory=dict)

    @property
    def terminal_state(self) -> ScanState:
        return terminal_state_for(self.scan.score)

    @property
    def error_message(self) -> str | None:
        if self.terminal_state is ScanState.FAILED:
            return self.scan.error or FAILED_WITHOUT_SCORE
        return self.scan.error

    def outcome_rows(self) -> list[dict[str, Any]]:
        """Flatten tests into the column set shared by both backends."""
        return [
            {
                "name": name,
                "expectation": outcome.expectation,
                "result": outcome.result,
                "pass": outcome.passed,
                "score_modifier": outcome.score_modifier,
                "output": outcome.output(),
            }
            for name, outcome in self.tests.items()
        ]


def parse_scan_result(value: ScanResult | Mapping[str, Any]) -> ScanResult:
    """Accept a ScanResult or a raw mapping, raising the store's ValidationError."""
    if isinstance(value, ScanResult):
        return value
    try:
        return ScanResult.model_validate(value)
    except pydantic.ValidationError as e:
        raise ValidationError(f"Invalid scan result: {e}") from e
