"""Tests for the command line interface."""

import json
import textwrap
from pathlib import Path

import pytest
from click.testing import CliRunner

from actionci.cli import cli, find_workflow_files

PASSING = """
    name: demo
    on: [push, workflow_dispatch]
    jobs:
      build:
        runs-on: local
        steps:
          - run: echo "building ${{ github.event_name }}"
      test:
        runs-on: local
        needs: build
        steps:
          - run: echo "token=${{ secrets.TOKEN }}"
"""

FAILING = """
    on: push
    jobs:
      build:
        runs-on: local
        steps:
          - run: exit 4
"""


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def write_workflow(tmp_path):
    def _write(text, name="ci.yml"):
        path = tmp_path / name
        path.write_text(textwrap.dedent(text))
        return str(path)
    return _write


def run_args(path, tmp_path, *extra):
    return ["run", path, "--no-git", "--workspace", str(tmp_path), *extra]


class TestRun:
    """`actionci run`."""

    def test_successful_run(self, runner, write_workflow, tmp_path):
        result = runner.invoke(cli, run_args(write_workflow(PASSING), tmp_path))
        assert result.exit_code == 0, result.output
        assert "building push" in result.output
        assert "RUN: SUCCESS" in result.output

    def test_failed_run_exits_one(self, runner, write_workflow, tmp_path):
        result = runner.invoke(cli, run_args(write_workflow(FAILING), tmp_path))
        assert result.exit_code == 1
        assert "STEP FAILED" in result.output
        assert "RUN: FAILURE" in result.output

    def test_secrets_are_masked_in_output_and_json(self, runner, write_workflow, tmp_path):
        out = tmp_path / "result.json"
        result = runner.invoke(
            cli,
            run_args(write_workflow(PASSING), tmp_path, "--secret", "TOKEN=abc123", "--json", str(out)),
        )
        assert result.exit_code == 0, result.output
        assert "abc123" not in result.output
        assert "token=***" in result.output
        data = json.loads(out.read_text())
        assert data["status"] == "success"
        assert "abc123" not in out.read_text()

    def test_secrets_and_vars_files(self, runner, write_workflow, tmp_path):
        secrets = tmp_path / "secrets.yml"
        secrets.write_text("TOKEN: from-file\n")
        result = runner.invoke(
            cli, run_args(write_workflow(PASSING), tmp_path, "--secrets-file", str(secrets)),
        )
        assert result.exit_code == 0, result.output
        assert "from-file" not in result.output

    def test_dispatch_inputs(self, runner, write_workflow, tmp_path):
        path = write_workflow("""
            on:
              workflow_dispatch:
                inputs:
                  who:
                    required: true
            jobs:
              hello:
                runs-on: local
                steps:
                  - run: echo "hello ${{ inputs.who }}"
        """)
        result = runner.invoke(cli, run_args(path, tmp_path, "--event", "workflow_dispatch", "--input", "who=world"))
        assert result.exit_code == 0, result.output
        assert "hello world" in result.output

    def test_missing_required_input(self, runner, write_workflow, tmp_path):
        path = write_workflow("""
            on:
              workflow_dispatch:
                inputs:
                  who:
                    required: true
            jobs:
              hello:
                runs-on: local
                steps: [{run: 'true'}]
        """)
        result = runner.invoke(cli, run_args(path, tmp_path, "--event", "workflow_dispatch"))
        assert result.exit_code == 1
        assert "required input" in result.output

    def test_bad_pair_is_a_usage_error(self, runner, write_workflow, tmp_path):
        result = runner.invoke(cli, run_args(write_workflow(PASSING), tmp_path, "--secret", "novalue"))
        assert result.exit_code == 2

    def test_quiet_hides_command_output(self, runner, write_workflow, tmp_path):
        result = runner.invoke(cli, run_args(write_workflow(PASSING), tmp_path, "--quiet"))
        assert result.exit_code == 0
        assert "building push" not in result.output
        assert "STEP:" in result.output

    def test_actions_file(self, runner, write_workflow, tmp_path):
        actions = tmp_path / "acts.py"
        actions.write_text(textwrap.dedent("""
            def register(registry):
                @registry.action("acme/hello")
                def hello(inputs, ctx):
                    ctx.log("handler says " + inputs["who"])
        """))
        path = write_workflow("""
            on: push
            jobs:
              a:
                runs-on: local
                steps:
                  - uses: acme/hello@v1
                    with:
                      who: you
        """)
        result = runner.invoke(cli, run_args(path, tmp_path, "--actions", str(actions)))
        assert result.exit_code == 0, result.output
        assert "handler says you" in result.output

    def test_missing_workflow_file(self, runner, tmp_path):
        result = runner.invoke(cli, ["run", str(tmp_path / "nope.yml"), "--no-git"])
        assert result.exit_code == 1
        assert "Workflow file not found" in result.output


class TestValidateAndPlan:
    """`actionci validate` and `actionci plan`."""

    def test_validate_ok(self, runner, write_workflow):
        result = runner.invoke(cli, ["validate", write_workflow(PASSING)])
        assert result.exit_code == 0
        assert "OK: demo (2 jobs; on: push, workflow_dispatch)" in result.output

    def test_validate_cycle(self, runner, write_workflow):
        path = write_workflow("""
            on: push
            jobs:
              a:
                runs-on: x
                needs: b
                steps: [{run: 'true'}]
              b:
                runs-on: x
                needs: a
                steps: [{run: 'true'}]
        """)
        result = runner.invoke(cli, ["validate", path])
        assert result.exit_code == 1
        assert "cycle_error" in result.output

    def test_plan(self, runner, write_workflow):
        result = runner.invoke(cli, ["plan", write_workflow(PASSING)])
        assert result.exit_code == 0
        assert "Stage 1:" in result.output
        assert "test: 1 instance(s) (needs: build)" in result.output


class TestDiscovery:
    """Finding the workflow when none is given."""

    def test_find_workflow_files(self, tmp_path):
        (tmp_path / ".github" / "workflows").mkdir(parents=True)
        (tmp_path / ".github" / "workflows" / "ci.yml").write_text("")
        (tmp_path / "release_workflow.py").write_text("")
        (tmp_path / "other.py").write_text("")
        names = sorted(p.name for p in find_workflow_files(tmp_path))
        assert names == ["ci.yml", "release_workflow.py"]

    def test_single_workflow_is_picked_up(self, runner, tmp_path):
        with runner.isolated_filesystem(temp_dir=tmp_path):
            Path(".github/workflows").mkdir(parents=True)
            Path(".github/workflows/ci.yml").write_text(textwrap.dedent(PASSING))
            result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 0
        assert "OK: demo" in result.output

    def test_no_workflow(self, runner, tmp_path):
        with runner.isolated_filesystem(temp_dir=tmp_path):
            result = runner.invoke(cli, ["validate"])
        assert result.exit_code == 1
        assert "No workflow file found" in result.output
