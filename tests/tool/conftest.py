"""Test fixtures for the command line tool."""

import pathlib
from typing import Any

import pytest
import yaml


def _write(path: pathlib.Path, docs: list[dict[str, Any]]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump_all(docs, explicit_start=True))


def _deployment(name: str) -> dict[str, Any]:
    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": name},
        "spec": {
            "template": {
                "spec": {
                    "containers": [
                        {"name": "controller", "image": f"example.com/{name}:${{VERSION}}"}
                    ]
                }
            }
        },
    }


@pytest.fixture
def manifests(tmp_path: pathlib.Path) -> pathlib.Path:
    """A manifest directory with Pipeline and Trigger releases."""
    root = tmp_path / "manifests"
    _write(
        root / "pipeline" / "v1" / "pipeline.yaml",
        [
            {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "pipelines"}},
            {
                "apiVersion": "v1",
                "kind": "ConfigMap",
                "metadata": {"name": "pipeline-config"},
                "data": {"version": "${VERSION}"},
            },
            _deployment("pipeline-controller"),
        ],
    )
    _write(root / "trigger" / "v1" / "trigger.yaml", [_deployment("trigger-controller")])
    return root


@pytest.fixture
def config_file(tmp_path: pathlib.Path) -> pathlib.Path:
    """Operator configuration with short delays."""
    path = tmp_path / "config.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "dependencies": {"Pipeline": [], "Trigger": ["Pipeline"]},
                "controller": {
                    "resync_interval": None,
                    "backoff_base": 0.01,
                    "backoff_max": 0.1,
                    "dependency_requeue_interval": 0.05,
                },
                "installer_set": {
                    "item_base_delay": 0.01,
                    "item_max_delay": 0.1,
                    "readiness_poll_interval": 0.05,
                },
            }
        )
    )
    return path


def write_platform(root: pathlib.Path, version: str = "v1") -> pathlib.Path:
    """Write a Platform enabling Pipeline and Trigger at the version."""
    path = root / "resources" / "platform.yaml"
    _write(
        path,
        [
            {
                "apiVersion": "installer.dev/v1alpha1",
                "kind": "Platform",
                "metadata": {"name": "platform"},
                "spec": {
                    "targetNamespace": "pipelines",
                    "version": version,
                    "components": [{"kind": "Pipeline"}, {"kind": "Trigger"}],
                },
            }
        ],
    )
    return path
