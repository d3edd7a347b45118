"""Tests for procedure parsing."""

from __future__ import annotations

import json
from typing import Any

import pytest

from src.governance.models import (
    ApprovalStep,
    InformationStep,
    ProcedurePriority,
    QuizStep,
    ToolStep,
    WaitStep,
    WaitType,
)
from src.governance.parser import ProcedureParseError, ProcedureParser


@pytest.fixture
def parser() -> ProcedureParser:
    return ProcedureParser()


class TestParseProcedure:
    def test_parses_protocol_document(
        self,
        parser: ProcedureParser,
        export_procedure_raw: dict[str, Any],
        create_procedure_raw: dict[str, Any],
    ) -> None:
        procedures = parser.parse_protocols(json.dumps([export_procedure_raw, create_procedure_raw]))

        assert [p.id for p in procedures] == ["PROC-EXPORT-V1", "PROC-CREATE-DATASET-V1"]
        create = procedures[1]
        assert create.version == "1.2.0"
        assert create.metadata.priority == ProcedurePriority.HIGH
        assert create.constraints.allowed_datasets == ["Sales", "Inventory"]
        assert isinstance(create.steps[0], InformationStep)
        assert isinstance(create.steps[2], ToolStep)
        assert create.steps[2].validation_rules[0].field == "name"

    def test_single_object_document(
        self, parser: ProcedureParser, export_procedure_raw: dict[str, Any]
    ) -> None:
        procedures = parser.parse_protocols(json.dumps(export_procedure_raw))
        assert len(procedures) == 1
        assert procedures[0].triggers.enforce_on_read is True

    def test_durations_are_converted_to_seconds(self, parser: ProcedureParser) -> None:
        procedure = parser.parse_procedure({
            "id": "P1",
            "name": "Timed",
            "steps": [
                {"id": "s1", "name": "Cool down", "type": "wait", "duration": 1500, "timeout": 60000},
                {"id": "s2", "name": "Fetch", "toolName": "get-datasets"},
            ],
        })
        wait = procedure.steps[0]
        assert isinstance(wait, WaitStep)
        assert wait.wait_type == WaitType.TIME
        assert wait.duration_seconds == 1.5
        assert wait.timeout_seconds == 60.0
        assert wait.check_interval_seconds == 5.0
        assert procedure.steps[1].timeout_seconds == 300.0

    def test_missing_steps_raises(self, parser: ProcedureParser) -> None:
        with pytest.raises(ProcedureParseError) as exc_info:
            parser.parse_procedure({"id": "P1", "name": "No steps", "steps": []})
        assert exc_info.value.procedure_id == "P1"

    def test_duplicate_step_ids_raise(self, parser: ProcedureParser) -> None:
        with pytest.raises(ProcedureParseError, match="Duplicate step id"):
            parser.parse_procedure({
                "id": "P1",
                "name": "Dupes",
                "steps": [
                    {"id": "s1", "name": "One", "toolName": "get-datasets"},
                    {"id": "s1", "name": "Two", "toolName": "get-accounts"},
                ],
            })

    def test_text_step_raises(self, parser: ProcedureParser) -> None:
        with pytest.raises(ProcedureParseError, match="Step 1 must be an object"):
            parser.parse_procedure({"id": "P-BAD", "name": "Legacy", "steps": ["Read the guide"]})

    def test_non_object_sections_are_ignored(self, parser: ProcedureParser) -> None:
        procedure = parser.parse_procedure({
            "id": "P1",
            "name": "Loose",
            "metadata": "high",
            "constraints": ["none"],
            "steps": [{"id": "s1", "name": "Go", "toolName": "get-datasets", "validation": "strict"}],
        })
        assert procedure.steps[0].tool_name == "get-datasets"

    def test_invalid_json_raises(self, parser: ProcedureParser) -> None:
        with pytest.raises(ProcedureParseError, match="Invalid procedures protocol JSON"):
            parser.parse_protocols("{not json")

    def test_unknown_priority_defaults_to_normal(self, parser: ProcedureParser) -> None:
        procedure = parser.parse_procedure({
            "id": "P1",
            "name": "Odd",
            "metadata": {"priority": "urgent"},
            "steps": [{"id": "s1", "name": "Do", "toolName": "get-datasets"}],
        })
        assert procedure.metadata.priority == ProcedurePriority.NORMAL

    def test_allowed_tools_merge_into_step_tools(self, parser: ProcedureParser) -> None:
        procedure = parser.parse_procedure({
            "id": "P1",
            "name": "Merge",
            "steps": [{
                "id": "s1",
                "name": "Upload",
                "toolName": "upload-dataset-rows",
                "tools": ["get-datasets"],
                "validation": {"allowedTools": ["get-dataset-targetfields", "get-datasets"]},
            }],
        })
        step = procedure.steps[0]
        assert step.tools == ["get-datasets", "get-dataset-targetfields"]
        assert step.declared_tools == [
            "get-datasets", "get-dataset-targetfields", "upload-dataset-rows"
        ]


class TestTriggers:
    def test_legacy_array(self, parser: ProcedureParser) -> None:
        triggers = parser.parse_triggers(["create-dataset", {"name": "delete-dataset"}])
        assert triggers.tools == ["create-dataset", "delete-dataset"]
        assert triggers.operations == []

    def test_object_form_uppercases_operations(self, parser: ProcedureParser) -> None:
        triggers = parser.parse_triggers({"operations": ["write"], "enforceOnRead": True})
        assert triggers.operations == ["WRITE"]
        assert triggers.enforce_on_read is True

    def test_empty(self, parser: ProcedureParser) -> None:
        assert parser.parse_triggers(None).tools == []


class TestStepTypes:
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ({"type": "approval"}, "approval"),
            ({"quiz": {"question": "Q?"}}, "quiz"),
            ({"question": "Q?", "options": ["A", "B"]}, "quiz"),
            ({"approvers": ["alice"]}, "approval"),
            ({"waitType": "external"}, "wait"),
            ({"duration": 1000}, "wait"),
            ({"content": "Read me", "acknowledgmentRequired": False}, "information"),
            ({"toolName": "get-datasets"}, "tool"),
            ({"name": "Anything else"}, "tool"),
        ],
    )
    def test_determine_step_type(self, raw: dict[str, Any], expected: str) -> None:
        assert ProcedureParser.determine_step_type(raw) == expected

    def test_nested_quiz(self, parser: ProcedureParser) -> None:
        step = parser.parse_step({
            "id": "q1",
            "name": "Check",
            "quiz": {"question": "Which?", "options": ["A", "B"], "correctAnswer": "B"},
        })
        assert isinstance(step, QuizStep)
        assert step.options == ["A", "B"]
        assert step.correct_answer == "B"

    def test_nested_approval(self, parser: ProcedureParser) -> None:
        step = parser.parse_step({
            "name": "Sign off",
            "approval": {"approvers": ["alice", "bob"], "approvalType": "unanimous"},
        }, index=4)
        assert isinstance(step, ApprovalStep)
        assert step.id == "step-5"
        assert step.approval_type.value == "unanimous"


class TestRows:
    def test_bad_rows_are_skipped(
        self, parser: ProcedureParser, export_procedure_raw: dict[str, Any]
    ) -> None:
        rows = [
            {"procedures_protocols": "not json"},
            {"unrelated": True},
            "not a row",
            {"procedures_protocols": json.dumps({"id": "P-BAD", "name": "Legacy", "steps": ["Read the guide"]})},
            {"procedures_protocols": json.dumps(export_procedure_raw)},
        ]
        procedures = parser.parse_rows(rows)
        assert [p.id for p in procedures] == ["PROC-EXPORT-V1"]

    def test_bootstrap_row(self, parser: ProcedureParser) -> None:
        row = {
            "procedure_id": "PROC-BOOT-1",
            "title": "Governance bootstrap",
            "purpose": "Set up governance",
            "steps": "1. Review the policy\n2) Confirm ownership\n\n",
            "triggers": "WRITE",
            "procedure_owner": "ops",
            "procedure_status": "Active",
        }
        [procedure] = parser.parse_row(row)

        assert procedure.name == "Governance bootstrap"
        assert procedure.triggers.operations == ["WRITE"]
        assert procedure.metadata.created_by == "ops"
        assert [s.name for s in procedure.steps] == ["Review the policy", "Confirm ownership"]
        assert all(isinstance(s, InformationStep) for s in procedure.steps)
        assert all(s.acknowledgment_required for s in procedure.steps)

    def test_inactive_bootstrap_row_is_ignored(self, parser: ProcedureParser) -> None:
        row = {"procedure_id": "PROC-OLD", "title": "Old", "steps": "1. x", "procedure_status": "Draft"}
        assert parser.parse_row(row) == []


class TestValidateProcedure:
    def test_reports_structural_problems(self, parser: ProcedureParser) -> None:
        procedure = parser.parse_procedure({
            "id": "P1",
            "name": "Broken",
            "steps": [
                {"id": "s1", "name": "Quiz", "type": "quiz", "question": "Why?"},
                {"id": "s2", "name": "Approve", "type": "approval"},
            ],
        })
        errors = parser.validate_procedure(procedure)
        assert "Quiz step Quiz must have options" in errors
        assert "Approval step Approve must have approvers" in errors

    def test_valid_procedure_has_no_errors(
        self, parser: ProcedureParser, create_procedure_raw: dict[str, Any]
    ) -> None:
        assert parser.validate_procedure(parser.parse_procedure(create_procedure_raw)) == []
