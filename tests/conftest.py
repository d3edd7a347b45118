"""Shared fixtures: procedure definitions in the dataset's raw format."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from src.governance.audit import AuditLog
from src.governance.sources import StaticProcedureSource

DATASET = "AI_Agent_Procedures"


@pytest.fixture
def export_procedure_raw() -> dict[str, Any]:
    """A read-enforcing export procedure with a single tool step."""
    return {
        "id": "PROC-EXPORT-V1",
        "name": "Data Export",
        "description": "Export published data",
        "triggers": {"tools": ["get-dataset-output"], "enforceOnRead": True},
        "steps": [
            {"id": "step-1", "type": "tool", "name": "Export rows", "toolName": "get-dataset-output"},
        ],
    }


@pytest.fixture
def create_procedure_raw() -> dict[str, Any]:
    """Dataset creation: acknowledge, inspect (wildcard tools), then create."""
    return {
        "id": "PROC-CREATE-DATASET-V1",
        "name": "Create Dataset",
        "version": "1.2.0",
        "triggers": {"tools": ["create-dataset"]},
        "constraints": {"allowedDatasets": ["Sales", "Inventory"]},
        "metadata": {"priority": "high", "riskLevel": "medium"},
        "steps": [
            {
                "id": "step-1",
                "type": "information",
                "name": "Read the naming guidelines",
                "content": "Dataset names must be singular nouns.",
                "acknowledgmentRequired": True,
            },
            {
                "id": "step-2",
                "type": "tool",
                "name": "Inspect existing datasets",
                "toolName": "get-datasets",
                "tools": ["get-*"],
            },
            {
                "id": "step-3",
                "type": "tool",
                "name": "Create the dataset",
                "toolName": "create-dataset",
                "validationRules": ["name"],
            },
        ],
    }


@pytest.fixture
def procedure_rows(
    export_procedure_raw: dict[str, Any],
    create_procedure_raw: dict[str, Any],
) -> list[dict[str, Any]]:
    return [{"procedures_protocols": json.dumps([export_procedure_raw, create_procedure_raw])}]


@pytest.fixture
def source(procedure_rows: list[dict[str, Any]]) -> StaticProcedureSource:
    return StaticProcedureSource({DATASET: procedure_rows})


@pytest.fixture
def audit(tmp_path: Path) -> AuditLog:
    """Audit log kept in memory only."""
    return AuditLog(tmp_path / "audit", enabled=False)
