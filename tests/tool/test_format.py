"""Tests for the format library."""

import io

import pytest

from component_installer.conditions import READY, Condition, ConditionStatus
from component_installer.manifest import (
    Component,
    ComponentSpec,
    ComponentStatus,
    Platform,
    PlatformSpec,
    Unstructured,
)
from component_installer.status import ComponentPhase
from component_installer.tool.format import (
    PrintFormatter,
    YamlFormatter,
    format_columns,
    status_row,
)


def test_format_columns_empty_rows() -> None:
    """Tests with no rows."""
    assert list(format_columns(["a", "b", "c"], [])) == ["a   b   c"]


def test_format_columns_rows() -> None:
    """Tests format with normal rows."""
    assert list(
        format_columns(
            ["kind", "phase"], [["Pipeline", "Ready"], ["Trigger", "Waiting"]]
        )
    ) == [
        "kind       phase",
        "Pipeline   Ready",
        "Trigger    Waiting",
    ]


def test_print_formatter() -> None:
    """Print formatting with empty data."""
    assert list(PrintFormatter(["kind"]).format([])) == []


def test_print_formatter_keys() -> None:
    """Print formatting selected keys, with missing values blank."""
    formatter = PrintFormatter(["kind", "version"])
    assert list(
        formatter.format(
            [
                {"kind": "Pipeline", "version": "v1", "phase": "Ready"},
                {"kind": "Trigger", "version": None},
            ]
        )
    ) == [
        "KIND       VERSION",
        "Pipeline   v1",
        "Trigger",
    ]


def test_print_to_file() -> None:
    """Print formatting to an explicit file."""
    out = io.StringIO()
    PrintFormatter(["kind"]).print([{"kind": "Pipeline"}], file=out)
    assert out.getvalue() == "KIND\nPipeline\n"


def test_yaml_formatter() -> None:
    """YAML formatting of a list of rows."""
    data = [{"kind": "Pipeline", "phase": "Ready"}]
    assert list(YamlFormatter().format(data)) == [
        "---",
        "- kind: Pipeline",
        "  phase: Ready",
    ]
    out = io.StringIO()
    YamlFormatter().print(data, file=out)
    assert out.getvalue() == "---\n- kind: Pipeline\n  phase: Ready\n"


def test_status_row_component() -> None:
    """Test the status of a component that is not Ready."""
    component = Component(
        kind="Pipeline",
        name="pipeline",
        spec=ComponentSpec(version="v2"),
        status=ComponentStatus(
            phase=ComponentPhase.UPGRADING,
            installer_set="pipeline-pipeline-0123456789",
            version="v1",
            conditions=[
                Condition(
                    type=READY,
                    status=ConditionStatus.UNKNOWN,
                    reason="Waiting",
                    message="1 of 3 items not ready",
                )
            ],
        ),
    )
    assert status_row(component) == {
        "kind": "Pipeline",
        "name": "pipeline",
        "phase": "Upgrading",
        "version": "v1",
        "installerset": "pipeline-pipeline-0123456789",
        "message": "1 of 3 items not ready",
    }


def test_status_row_platform() -> None:
    """Test the status of a new platform."""
    platform = Platform(name="platform", spec=PlatformSpec(version="v1"))
    assert status_row(platform) == {
        "kind": "Platform",
        "name": "platform",
        "phase": "Pending",
        "version": "v1",
        "installerset": None,
        "message": "",
    }


def test_status_row_unexpected() -> None:
    """Test only Platforms and Components have a status row."""
    obj = Unstructured.parse_doc(
        {"apiVersion": "v1", "kind": "ConfigMap", "metadata": {"name": "a"}}
    )
    with pytest.raises(ValueError, match="Unexpected object"):
        status_row(obj)
