"""
Tests for CLI commands — validate, plan, apply, destroy, refresh, state.
"""

import json
import textwrap
from pathlib import Path

from click.testing import CliRunner

from converge.main import cli

COUNTED = """\
    resources:
      compute_instance:
        srv:
          count: 2
          name: {"$format": ["srv-{}", {"$ref": count.index}]}
"""


def _make_project(tmp_path: Path, content: str = COUNTED) -> Path:
    """Write a converge.yml into tmp_path."""
    config = tmp_path / "converge.yml"
    config.write_text(textwrap.dedent(content))
    return config


def _run(config: Path, *args: str):
    runner = CliRunner()
    return runner.invoke(cli, ["--config", str(config), *args])


class TestCLIGlobal:
    def test_help(self):
        result = CliRunner().invoke(cli, ["--help"])
        assert result.exit_code == 0
        assert "declarative infrastructure reconciliation" in result.output

    def test_version(self):
        result = CliRunner().invoke(cli, ["--version"])
        assert result.exit_code == 0
        assert "0.1.0" in result.output

    def test_missing_config(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        result = CliRunner().invoke(cli, ["plan"])
        assert result.exit_code == 1
        assert "No converge.yml" in result.output


class TestValidate:
    def test_valid(self, tmp_path: Path):
        result = _run(_make_project(tmp_path), "validate")
        assert result.exit_code == 0
        assert "Configuration is valid" in result.output

    def test_valid_json(self, tmp_path: Path):
        result = _run(_make_project(tmp_path), "validate", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["resources"] == 1
        assert data["order"] == ["compute_instance.srv"]

    def test_cycle(self, tmp_path: Path):
        config = _make_project(tmp_path, """\
            resources:
              compute_instance:
                a: {peer: {"$ref": compute_instance.b.id}}
                b: {peer: {"$ref": compute_instance.a.id}}
        """)
        result = _run(config, "validate")
        assert result.exit_code == 1
        assert "Dependency cycle" in result.output

    def test_missing_variable(self, tmp_path: Path):
        config = _make_project(tmp_path, """\
            variables:
              size: {type: number}
            resources:
              compute_disk:
                d: {size: {"$ref": var.size}}
        """)
        result = _run(config, "validate")
        assert result.exit_code == 1
        assert "No value for required variable 'size'" in result.output


class TestPlanApply:
    def test_plan_shows_creates(self, tmp_path: Path):
        config = _make_project(tmp_path)
        result = _run(config, "plan")
        assert result.exit_code == 0
        assert "+ compute_instance.srv[0]" in result.output
        assert "Plan: 2 to create" in result.output
        assert not (tmp_path / ".converge" / "state.json").exists()

    def test_plan_json(self, tmp_path: Path):
        result = _run(_make_project(tmp_path), "plan", "--json")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["plan"]["summary"]["create"] == 2

    def test_apply_then_plan_is_clean(self, tmp_path: Path):
        config = _make_project(tmp_path)
        result = _run(config, "apply")
        assert result.exit_code == 0
        assert "2/2 succeeded" in result.output
        assert (tmp_path / ".converge" / "state.json").is_file()
        assert (tmp_path / ".converge" / "audit.ndjson").is_file()

        result = _run(config, "plan")
        assert result.exit_code == 0
        assert "No changes" in result.output

    def test_apply_json(self, tmp_path: Path):
        result = _run(_make_project(tmp_path), "apply", "--json", "-p", "1")
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["apply"]["status"] == "ok"
        assert data["apply"]["succeeded"] == 2

    def test_var_override(self, tmp_path: Path):
        config = _make_project(tmp_path, """\
            variables:
              size: {type: number}
            resources:
              compute_disk:
                d: {size: {"$ref": var.size}}
        """)
        assert _run(config, "apply", "--var", "size=3").exit_code == 0
        result = _run(config, "state", "show", "compute_disk.d", "--json")
        assert json.loads(result.output)["record"]["attributes"]["size"] == 3

    def test_var_file(self, tmp_path: Path):
        config = _make_project(tmp_path, """\
            variables:
              size: {type: number, default: 1}
            resources:
              compute_disk:
                d: {size: {"$ref": var.size}}
        """)
        var_file = tmp_path / "prod.yml"
        var_file.write_text("size: 7\n")
        assert _run(config, "apply", "--var-file", str(var_file)).exit_code == 0
        result = _run(config, "state", "show", "compute_disk.d", "--json")
        assert json.loads(result.output)["record"]["attributes"]["size"] == 7

        # back to the default: an in-place update
        result = _run(config, "plan", "--json")
        action = json.loads(result.output)["plan"]["actions"][0]
        assert action["action"] == "update"
        assert action["changes"][0]["after"] == 1

    def test_protected_destroy_refused(self, tmp_path: Path):
        config = _make_project(tmp_path, """\
            resources:
              compute_disk:
                d:
                  size: 1
                  lifecycle: {prevent_destroy: true}
        """)
        assert _run(config, "apply").exit_code == 0
        result = _run(config, "destroy")
        assert result.exit_code == 1
        assert "protected resource" in result.output


class TestStateCommands:
    def test_list_and_show(self, tmp_path: Path):
        config = _make_project(tmp_path)
        _run(config, "apply")

        result = _run(config, "state", "list")
        assert result.exit_code == 0
        assert result.output.split() == ["compute_instance.srv[0]", "compute_instance.srv[1]"]

        result = _run(config, "state", "show", "compute_instance.srv[1]")
        assert result.exit_code == 0
        assert "external id:" in result.output
        assert '"srv-1"' in result.output

    def test_show_missing(self, tmp_path: Path):
        config = _make_project(tmp_path)
        result = _run(config, "state", "show", "compute_instance.nope")
        assert result.exit_code == 1
        assert "No state record" in result.output

    def test_destroy_empties_state(self, tmp_path: Path):
        config = _make_project(tmp_path)
        _run(config, "apply")
        result = _run(config, "destroy")
        assert result.exit_code == 0

        result = _run(config, "state", "list", "--json")
        assert json.loads(result.output)["state"]["addresses"] == []

    def test_refresh_reports_drift(self, tmp_path: Path):
        config = _make_project(tmp_path, """\
            resources:
              compute_disk:
                d: {size: 1}
        """)
        _run(config, "apply")
        cloud = tmp_path / ".converge" / "mock-cloud.json"
        data = json.loads(cloud.read_text())
        for obj in data["objects"].values():
            obj["attributes"]["size"] = 9
        cloud.write_text(json.dumps(data))

        result = _run(config, "refresh")
        assert result.exit_code == 0
        assert "compute_disk.d drifted" in result.output

        result = _run(config, "plan", "--json")
        action = json.loads(result.output)["plan"]["actions"][0]
        assert action["action"] == "update"
        assert action["changes"][0]["before"] == 9
