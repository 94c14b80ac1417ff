"""Tests for secrets redaction, the run log, the outputs ledger and context snapshots."""

import pytest

from actionci.context import ExecutionContext, OutputsLedger, RunLog, SecretStore, StatusView
from actionci.errors import UndefinedContextError
from actionci.model import Status


class TestSecretStore:
    """Redaction of registered values."""

    def test_mask_replaces_every_occurrence(self):
        store = SecretStore({"TOKEN": "s3cr3t"})
        assert store.mask("a s3cr3t b s3cr3t") == "a *** b ***"

    def test_longest_value_wins(self):
        store = SecretStore({"A": "abc", "B": "abcdef"})
        assert store.mask("abcdef") == "***"

    def test_multiline_secret_masks_each_line(self):
        store = SecretStore({"KEY": "line-one\nline-two"})
        assert store.mask("got line-two here") == "got *** here"

    def test_blank_values_are_not_masks(self):
        store = SecretStore({"EMPTY": "", "SPACE": "  "})
        assert store.mask("a  b") == "a  b"

    def test_add_mask(self):
        store = SecretStore()
        store.add_mask("dynamic-value")
        assert store.mask("x dynamic-value") == "x ***"

    def test_mask_data_is_recursive(self):
        store = SecretStore({"T": "pw"})
        data = {"a": ["pw", {"b": "xpwx"}], "n": 1}
        assert store.mask_data(data) == {"a": ["***", {"b": "x***x"}], "n": 1}

    def test_get_is_case_insensitive(self):
        store = SecretStore({"Token": "v"})
        assert store.get("TOKEN") == "v"
        assert store.names() == ["Token"]


class TestRunLog:
    """Lines are masked before anyone sees them."""

    def test_emit_masks_before_listeners(self):
        seen = []
        log = RunLog(SecretStore({"T": "hunter2"}), [seen.append])
        log.emit("password is hunter2", job="build")
        assert seen[0].message == "password is ***"
        assert log.text() == "password is ***"
        assert "hunter2" not in log.text("build")

    def test_records_filter_by_job(self):
        log = RunLog(SecretStore())
        log.emit("a", job="x")
        log.emit("b", job="y")
        assert [r.message for r in log.records("y")] == ["b"]


class TestOutputsLedger:
    """Single write per instance; readable once the job is complete."""

    def test_outputs_visible_only_when_complete(self):
        ledger = OutputsLedger()
        ledger.expect("build", 2)
        ledger.commit("build", 0, Status.SUCCESS, {"v": "1"})
        assert ledger.result("build") is None
        assert ledger.outputs("build") == {}
        ledger.commit("build", 1, Status.SUCCESS, {"v": "2"})
        assert ledger.result("build") == Status.SUCCESS
        assert ledger.outputs("build") == {"v": "2"}

    def test_empty_value_does_not_override(self):
        ledger = OutputsLedger()
        ledger.expect("b", 2)
        ledger.commit("b", 0, Status.SUCCESS, {"v": "x"})
        ledger.commit("b", 1, Status.SUCCESS, {"v": ""})
        assert ledger.outputs("b") == {"v": "x"}

    def test_failed_instances_contribute_no_outputs(self):
        ledger = OutputsLedger()
        ledger.expect("b", 2)
        ledger.commit("b", 0, Status.SUCCESS, {"v": "ok"})
        ledger.commit("b", 1, Status.FAILURE, {"v": "bad"})
        assert ledger.result("b") == Status.FAILURE
        assert ledger.outputs("b") == {"v": "ok"}

    def test_double_commit_is_rejected(self):
        ledger = OutputsLedger()
        ledger.expect("b", 1)
        ledger.commit("b", 0, Status.SUCCESS, {})
        with pytest.raises(RuntimeError):
            ledger.commit("b", 0, Status.SUCCESS, {})

    def test_all_skipped(self):
        ledger = OutputsLedger()
        ledger.expect("b", 2)
        ledger.commit("b", 0, Status.SKIPPED, {})
        ledger.commit("b", 1, Status.SKIPPED, {})
        assert ledger.result("b") == Status.SKIPPED

    def test_needs_view(self):
        ledger = OutputsLedger()
        ledger.expect("a", 1)
        ledger.commit("a", 0, Status.SUCCESS, {"x": "5"})
        view = ledger.needs_view(["a"])
        assert view["a"]["result"] == "success"
        assert view["a"]["outputs"]["x"] == "5"


class TestExecutionContext:
    """Snapshots are immutable and enrich into new snapshots."""

    def make(self):
        return ExecutionContext.create(github={"ref": "r"}, secrets=SecretStore({"S": "v"}), env={"A": "1"})

    def test_lookup(self):
        ctx = self.make()
        assert ctx.lookup("GITHUB")["ref"] == "r"
        assert ctx.lookup("secrets")["S"] == "v"

    def test_job_scoped_contexts_outside_job(self):
        ctx = self.make()
        for name in ("steps", "matrix", "job", "runner", "strategy"):
            with pytest.raises(UndefinedContextError):
                ctx.lookup(name)

    def test_with_env_returns_new_snapshot(self):
        ctx = self.make()
        newer = ctx.with_env({"B": "2"}, None)
        assert dict(newer.env) == {"A": "1", "B": "2"}
        assert dict(ctx.env) == {"A": "1"}

    def test_mappings_are_read_only(self):
        ctx = self.make()
        with pytest.raises(TypeError):
            ctx.env["A"] = "x"

    def test_enter_job_and_with_step(self):
        ctx = self.make().enter_job(job={"status": "success"}, runner={}, matrix={"v": 1}, strategy={})
        assert dict(ctx.lookup("steps")) == {}
        ctx = ctx.with_step("s1", Status.FAILURE, Status.SUCCESS, {"o": "x"})
        step = ctx.lookup("steps")["s1"]
        assert step["outcome"] == "failure"
        assert step["conclusion"] == "success"
        assert step["outputs"]["o"] == "x"
        assert ctx.lookup("matrix")["v"] == 1

    def test_with_status(self):
        ctx = self.make().with_status(StatusView(success=False, failure=True))
        assert ctx.status.failure
