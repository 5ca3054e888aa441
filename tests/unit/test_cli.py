from typer.testing import CliRunner

from dxgraph.cli import app

PLUGIN_MODULE = '''
def discovery(context, inputs):
    return [{"area": "discovery", "severity": "minor", "title": "Tool without description"}]


def protocol(context, inputs):
    return []


def streaming(context, inputs):
    return [{"area": "streaming", "severity": "info", "title": "SSE keepalive observed"}]


def governance(context, inputs):
    return []


PLUGINS = {
    "discovery": discovery,
    "protocol": protocol,
    "streaming": streaming,
    "governance": governance,
}
'''

INVALID_YAML = """
id: broken
stages:
  - id: a
    plugin_id: a
dependencies:
  - from_stage: ghost
    to_stage: a
"""


def _clean_env(monkeypatch, tmp_path):
    monkeypatch.delenv("DXGRAPH_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("DXGRAPH_CONFIG", str(tmp_path / "absent.yaml"))


def test_workflow_list_shows_builtins():
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, result.output
    assert "workflow.baseline" in result.output
    assert "agent.security" in result.output


def test_workflow_plan_prints_batches_and_critical_path():
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "plan", "workflow.security-sprint"])
    assert result.exit_code == 0, result.output
    assert "batch 2: ratelimit, permissioning" in result.output
    assert "critical path: auth -> ratelimit -> threat -> dependencies" in result.output


def test_workflow_validate_reports_errors(tmp_path):
    path = tmp_path / "broken.yaml"
    path.write_text(INVALID_YAML)

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "validate", str(path)])

    assert result.exit_code == 1
    assert "broken: invalid" in result.output
    assert "Dependency references unknown stage: ghost" in result.output


def test_workflow_validate_builtin():
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "validate", "agent.baseline"])
    assert result.exit_code == 0, result.output
    assert "agent.baseline: ok" in result.output


def test_unknown_workflow_source():
    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "plan", "does.not.exist"])
    assert result.exit_code == 1
    assert "No workflow file or built-in workflow named does.not.exist" in result.output


def test_workflow_run_then_inspect_sessions_and_checkpoint(tmp_path, monkeypatch):
    _clean_env(monkeypatch, tmp_path)
    (tmp_path / "cli_diag_plugins.py").write_text(PLUGIN_MODULE)
    monkeypatch.syspath_prepend(str(tmp_path))
    database_url = f"sqlite://{tmp_path / 'runs.db'}"

    runner = CliRunner()
    result = runner.invoke(
        app,
        [
            "workflow",
            "run",
            "workflow.baseline",
            "--endpoint",
            "http://localhost:3000",
            "--plugins",
            "cli_diag_plugins:PLUGINS",
            "--thread-id",
            "t1",
            "--database-url",
            database_url,
        ],
    )
    assert result.exit_code == 0, result.output
    assert "Workflow workflow.baseline thread t1: completed" in result.output
    assert "Path: discovery -> protocol -> streaming -> governance" in result.output
    assert "- [minor] discovery: Tool without description" in result.output

    sessions = runner.invoke(
        app, ["session", "list", "workflow.baseline", "--database-url", database_url]
    )
    assert sessions.exit_code == 0, sessions.output
    assert "t1\tcompleted\tt1" in sessions.output

    checkpoint = runner.invoke(
        app,
        [
            "checkpoint",
            "show",
            "workflow.baseline",
            "--thread-id",
            "t1",
            "--database-url",
            database_url,
        ],
    )
    assert checkpoint.exit_code == 0, checkpoint.output
    assert "Checkpoint t1 (t1)" in checkpoint.output
    assert '"current_node": "governance"' in checkpoint.output
    assert '"findings": 2' in checkpoint.output


def test_workflow_run_missing_plugin_fails(tmp_path, monkeypatch):
    _clean_env(monkeypatch, tmp_path)
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["workflow", "run", "workflow.baseline", "--endpoint", "http://localhost:3000"],
    )
    assert result.exit_code == 1
    assert "Node discovery failed: Plugin not found: discovery" in result.output


def test_checkpoint_show_missing(tmp_path, monkeypatch):
    _clean_env(monkeypatch, tmp_path)
    runner = CliRunner()
    result = runner.invoke(
        app,
        ["checkpoint", "show", "workflow.baseline", "--database-url", f"sqlite://{tmp_path / 'x.db'}"],
    )
    assert result.exit_code == 1
    assert "Checkpoint not found" in result.output
