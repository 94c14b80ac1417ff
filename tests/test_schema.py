"""Tests for workflow document parsing and validation."""

import textwrap
from pathlib import Path

import pytest

from actionci.errors import CycleError, SchemaError
from actionci.model import TriggerKind
from actionci.runner import load_workflow
from actionci.schema import load_yaml, parse_workflow, parse_workflow_text


def parse(text):
    return parse_workflow_text(textwrap.dedent(text))


MINIMAL = """
on: push
jobs:
  build:
    runs-on: ubuntu-latest
    steps:
      - run: echo hi
"""


class TestParsing:
    """Documents that should parse."""

    def test_minimal_document(self):
        doc = parse(MINIMAL)
        assert doc.name == "workflow"
        assert [t.kind for t in doc.triggers] == [TriggerKind.PUSH]
        job = doc.jobs["build"]
        assert job.timeout_minutes == 360
        assert job.steps[0].run == "echo hi"

    def test_bare_on_key_is_not_boolean(self):
        """YAML 1.1 reads `on` as True; the parser maps it back."""
        doc = parse(MINIMAL)
        assert doc.trigger(TriggerKind.PUSH) is not None

    def test_event_list_and_filters(self):
        doc = parse("""
            name: CI
            on:
              push:
                branches: [main, 'release/**']
                paths-ignore: docs/**
              pull_request:
                types: [opened]
              schedule:
                - cron: '0 3 * * 1-5'
              workflow_dispatch:
                inputs:
                  target:
                    type: choice
                    options: [dev, prod]
                    default: dev
            jobs:
              a:
                runs-on: [self-hosted, linux]
                steps:
                  - uses: actions/checkout@v4
                    with:
                      depth: 1
        """)
        push = doc.trigger(TriggerKind.PUSH)
        assert push.branches == ["main", "release/**"]
        assert push.paths_ignore == ["docs/**"]
        assert doc.trigger(TriggerKind.SCHEDULE).crons == ["0 3 * * 1-5"]
        target = doc.trigger(TriggerKind.WORKFLOW_DISPATCH).inputs["target"]
        assert target.options == ("dev", "prod")
        assert doc.jobs["a"].runs_on == ["self-hosted", "linux"]
        assert doc.jobs["a"].steps[0].with_ == {"depth": 1}

    def test_hyphenated_keys(self):
        doc = parse("""
            on: [push]
            defaults:
              run:
                shell: sh
            jobs:
              a:
                runs-on: x
                timeout-minutes: 5
                continue-on-error: true
                strategy:
                  fail-fast: false
                  max-parallel: 2
                  matrix:
                    v: [1, 2]
                steps:
                  - run: echo
                    working-directory: sub
                    continue-on-error: ${{ matrix.v == 2 }}
                    timeout-minutes: 1
        """)
        job = doc.jobs["a"]
        assert doc.defaults.shell == "sh"
        assert job.timeout_minutes == 5
        assert job.continue_on_error is True
        assert job.matrix.fail_fast is False
        assert job.matrix.max_parallel == 2
        assert job.steps[0].working_directory == "sub"
        assert job.steps[0].continue_on_error == "${{ matrix.v == 2 }}"

    def test_needs_string_is_listified(self):
        doc = parse("""
            on: push
            jobs:
              a:
                runs-on: x
                steps: [{run: echo}]
              b:
                runs-on: x
                needs: a
                steps: [{run: echo}]
        """)
        assert doc.jobs["b"].needs == ["a"]

    def test_dynamic_matrix_expression(self):
        doc = parse("""
            on: push
            jobs:
              a:
                runs-on: x
                strategy:
                  matrix: ${{ fromJSON(needs.setup.outputs.m) }}
                steps: [{run: echo}]
        """)
        assert doc.jobs["a"].matrix.dynamic

    def test_boolean_if_becomes_text(self):
        doc = parse("""
            on: push
            jobs:
              a:
                runs-on: x
                if: false
                steps: [{run: echo}]
        """)
        assert doc.jobs["a"].condition == "false"


class TestRejections:
    """Malformed documents raise SchemaError before anything runs."""

    def test_unknown_top_level_key(self):
        with pytest.raises(SchemaError):
            parse(MINIMAL + "surprise: 1\n")

    def test_unknown_step_key(self):
        with pytest.raises(SchemaError):
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    steps:
                      - run: echo
                        runn: typo
            """)

    def test_step_needs_run_xor_uses(self):
        with pytest.raises(SchemaError):
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    steps:
                      - run: echo
                        uses: actions/checkout@v4
            """)
        with pytest.raises(SchemaError):
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    steps:
                      - name: nothing
            """)

    def test_missing_runs_on(self):
        with pytest.raises(SchemaError):
            parse("""
                on: push
                jobs:
                  a:
                    steps: [{run: echo}]
            """)

    def test_duplicate_job_id(self):
        with pytest.raises(SchemaError, match="duplicate key"):
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    steps: [{run: echo}]
                  a:
                    runs-on: y
                    steps: [{run: echo}]
            """)

    def test_duplicate_step_id(self):
        with pytest.raises(SchemaError, match="duplicate step id"):
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    steps:
                      - {id: s, run: echo}
                      - {id: s, run: echo}
            """)

    def test_unknown_event(self):
        with pytest.raises(SchemaError, match="unsupported trigger"):
            parse(MINIMAL.replace("on: push", "on: release"))

    def test_invalid_cron(self):
        with pytest.raises(SchemaError, match="cron"):
            parse(MINIMAL.replace("on: push", "on:\n  schedule:\n    - cron: '61 * * * *'"))

    def test_missing_need(self):
        with pytest.raises(SchemaError, match="missing job"):
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    needs: [ghost]
                    steps: [{run: echo}]
            """)

    def test_cycle_names_the_jobs(self):
        with pytest.raises(CycleError) as info:
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    needs: [b]
                    steps: [{run: echo}]
                  b:
                    runs-on: x
                    needs: [a]
                    steps: [{run: echo}]
            """)
        assert info.value.cycle == ["a", "b", "a"]
        assert "a -> b -> a" in info.value.message

    def test_cycle_error_is_a_schema_error(self):
        assert issubclass(CycleError, SchemaError)

    def test_branches_and_branches_ignore_conflict(self):
        with pytest.raises(SchemaError):
            parse_workflow({
                "on": {"push": {"branches": ["a"], "branches-ignore": ["b"]}},
                "jobs": {"a": {"runs-on": "x", "steps": [{"run": "echo"}]}},
            })

    def test_choice_input_requires_options(self):
        with pytest.raises(SchemaError):
            parse_workflow({
                "on": {"workflow_dispatch": {"inputs": {"t": {"type": "choice"}}}},
                "jobs": {"a": {"runs-on": "x", "steps": [{"run": "echo"}]}},
            })

    def test_matrix_exclude_on_unknown_axis(self):
        with pytest.raises(SchemaError, match="unknown axes"):
            parse("""
                on: push
                jobs:
                  a:
                    runs-on: x
                    strategy:
                      matrix:
                        os: [a]
                        exclude:
                          - arch: x86
                    steps: [{run: echo}]
            """)

    def test_invalid_yaml(self):
        with pytest.raises(SchemaError, match="invalid YAML"):
            parse_workflow_text("jobs: [unclosed")

    def test_not_a_mapping(self):
        with pytest.raises(SchemaError):
            parse_workflow(["a"])


class TestYamlLoading:
    """Anchors, merge keys and duplicate detection."""

    def test_merge_key(self):
        data = load_yaml("base: &b {x: 1}\nother:\n  <<: *b\n  y: 2\n")
        assert data["other"] == {"x": 1, "y": 2}

    def test_explicit_key_overrides_merged_one(self):
        data = load_yaml("base: &b {x: 1}\nother:\n  <<: *b\n  x: 3\n")
        assert data["other"] == {"x": 3}

    def test_duplicate_next_to_merge_key(self):
        with pytest.raises(SchemaError, match="duplicate key"):
            load_yaml("base: &b {x: 1}\nother:\n  <<: *b\n  y: 2\n  y: 3\n")

    def test_jobs_sharing_an_anchor(self):
        doc = parse("""
            on: push
            jobs:
              a: &job
                runs-on: x
                env:
                  MODE: fast
                steps: [{run: echo}]
              b:
                <<: *job
                needs: a
        """)
        assert doc.jobs["b"].env == {"MODE": "fast"}
        assert doc.jobs["b"].needs == ["a"]


class TestLoadWorkflow:
    """Loading from files."""

    def test_yaml_file_uses_file_name_as_default_name(self, tmp_path):
        path = tmp_path / "ci.yml"
        path.write_text(textwrap.dedent(MINIMAL))
        assert load_workflow(path).name == "ci.yml"

    def test_python_file_with_workflow_function(self, tmp_path):
        path = tmp_path / "my_workflow.py"
        path.write_text(textwrap.dedent("""
            from actionci import wf, job, sh

            def workflow():
                return wf(job("build", sh("Build", "echo build")), name="py")
        """))
        doc = load_workflow(path)
        assert doc.name == "py"
        assert list(doc.jobs) == ["build"]

    def test_python_file_with_workflow_constant(self, tmp_path):
        path = tmp_path / "const_workflow.py"
        path.write_text(textwrap.dedent("""
            from actionci import wf, job, sh
            WORKFLOW = wf(job("a", sh(None, "true")))
        """))
        assert "a" in load_workflow(path).jobs

    def test_project_workflow_loads(self):
        doc = load_workflow(Path(__file__).resolve().parents[1] / "actionci_workflow.py")
        assert doc.name == "actionci"
        assert doc.jobs["test"].needs == ["install"]

    def test_python_file_without_workflow(self, tmp_path):
        path = tmp_path / "empty_workflow.py"
        path.write_text("X = 1\n")
        with pytest.raises(TypeError):
            load_workflow(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_workflow(tmp_path / "nope.yml")
