"""CLI tests for the hierarchy commands."""

import json

from typer.testing import CliRunner

from permgate.cli import app

runner = CliRunner()


def write(tmp_path, data, name="hierarchy.json"):
    path = tmp_path / name
    path.write_text(json.dumps(data))
    return str(path)


def test_validate_accepts_good_hierarchy(tmp_path, company_hierarchy):
    result = runner.invoke(app, ["hierarchy", "validate", write(tmp_path, company_hierarchy)])
    assert result.exit_code == 0
    assert "is valid" in result.output


def test_validate_reads_config_file_layout(tmp_path, company_hierarchy):
    path = write(tmp_path, {"security": {"enable_caching": True}, "role_hierarchy": company_hierarchy})
    result = runner.invoke(app, ["hierarchy", "validate", path])
    assert result.exit_code == 0


def test_validate_reports_cycle(tmp_path):
    path = write(tmp_path, {
        "admin": {"level": 100, "inherits": ["user"]},
        "user": {"level": 1, "inherits": ["admin"]},
    })

    result = runner.invoke(app, ["hierarchy", "validate", path])

    assert result.exit_code == 1
    assert "Cycle detected in role hierarchy" in result.output


def test_validate_reports_malformed_entries(tmp_path):
    result = runner.invoke(app, ["hierarchy", "validate", write(tmp_path, {"admin": {"inherits": []}})])
    assert result.exit_code == 1
    assert "admin.level" in result.output


def test_validate_reports_invalid_json(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{")
    result = runner.invoke(app, ["hierarchy", "validate", str(path)])
    assert result.exit_code == 1
    assert "Invalid JSON" in result.output
