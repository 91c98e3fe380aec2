"""Tests for subswarm.models — execution units, outcomes and options."""

from __future__ import annotations

import re

import pytest
from pydantic import ValidationError

from subswarm.generation import GenerationResult, summarize_text
from subswarm.models import (
    ExecutionOptions,
    ExecutionUnit,
    Outcome,
    OutcomeStatus,
    SubagentDefinition,
)


class TestExecutionUnit:
    def test_execution_id_format(self) -> None:
        unit = ExecutionUnit(definition=SubagentDefinition(type="researcher"), prompt="look")
        assert re.fullmatch(r"exec-[0-9a-f]{12}", unit.execution_id)
        assert unit.subagent_type == "researcher"

    def test_ids_are_unique(self) -> None:
        definition = SubagentDefinition(type="x")
        ids = {ExecutionUnit(definition=definition, prompt="p").execution_id for _ in range(50)}
        assert len(ids) == 50

    def test_unit_is_frozen(self) -> None:
        unit = ExecutionUnit(definition=SubagentDefinition(type="x"), prompt="p")
        with pytest.raises(ValidationError):
            unit.prompt = "other"


class TestSubagentDefinition:
    def test_defaults_inherit_from_parent(self) -> None:
        definition = SubagentDefinition(type="general-purpose")
        assert definition.tools is None
        assert definition.model is None
        assert definition.max_steps is None


class TestOutcomeStatus:
    @pytest.mark.parametrize(
        "status, terminal",
        [
            (OutcomeStatus.PENDING, False),
            (OutcomeStatus.RUNNING, False),
            (OutcomeStatus.SUCCESS, True),
            (OutcomeStatus.FAILURE, True),
            (OutcomeStatus.TIMEOUT, True),
            (OutcomeStatus.CANCELLED, True),
        ],
    )
    def test_is_terminal(self, status: OutcomeStatus, terminal: bool) -> None:
        assert status.is_terminal is terminal


class TestOutcome:
    def test_text_comes_from_result(self) -> None:
        outcome = Outcome(
            execution_id="exec-1",
            status=OutcomeStatus.SUCCESS,
            result=GenerationResult(text="answer"),
        )
        assert outcome.succeeded
        assert outcome.text == "answer"

    def test_text_empty_without_result(self) -> None:
        outcome = Outcome(execution_id="exec-1", status=OutcomeStatus.FAILURE, error="boom")
        assert not outcome.succeeded
        assert outcome.text == ""


def test_execution_options_defaults() -> None:
    options = ExecutionOptions()
    assert options.max_concurrency is None
    assert options.per_task_timeout is None
    assert options.fail_fast is False


def test_summarize_text() -> None:
    assert summarize_text("short") == "short"
    long = "x" * 250
    assert summarize_text(long) == "x" * 200 + "..."
    assert summarize_text(long, limit=None) == long
