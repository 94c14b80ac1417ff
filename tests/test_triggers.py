"""Tests for trigger matching, inputs and cron validation."""

import pytest

from actionci.errors import SchemaError
from actionci.model import InputSpec, Trigger, TriggerKind
from actionci.triggers import (
    Event,
    check_required_secrets,
    filter_matches,
    pattern_matches,
    resolve_inputs,
    trigger_matches,
    validate_cron,
)


class TestPatterns:
    """Branch/path filter patterns."""

    def test_single_star_stops_at_slash(self):
        assert pattern_matches("feature/*", "feature/x")
        assert not pattern_matches("feature/*", "feature/x/y")

    def test_double_star_crosses_slashes(self):
        assert pattern_matches("docs/**", "docs/a/b.md")
        assert pattern_matches("**.md", "a/b/c.md")

    def test_question_and_plus(self):
        assert pattern_matches("v1.?0", "v1.0")
        assert pattern_matches("v1+", "v111")
        assert not pattern_matches("v1+", "v")

    def test_negation_applies_in_order(self):
        patterns = ["release/**", "!release/**-alpha"]
        assert filter_matches(patterns, "release/1.0")
        assert not filter_matches(patterns, "release/1.0-alpha")


class TestTriggerMatching:
    """Which events start the workflow."""

    def test_push_branch_filter(self):
        trigger = Trigger(TriggerKind.PUSH, branches=["main"])
        assert trigger_matches(trigger, Event("push", ref="refs/heads/main"))
        assert not trigger_matches(trigger, Event("push", ref="refs/heads/dev"))

    def test_push_branches_ignore(self):
        trigger = Trigger(TriggerKind.PUSH, branches_ignore=["wip/*"])
        assert not trigger_matches(trigger, Event("push", ref="refs/heads/wip/x"))
        assert trigger_matches(trigger, Event("push", ref="refs/heads/main"))

    def test_tag_push_with_only_branch_filters_does_not_match(self):
        trigger = Trigger(TriggerKind.PUSH, branches=["main"])
        assert not trigger_matches(trigger, Event("push", ref="refs/tags/v1"))

    def test_tag_filter(self):
        trigger = Trigger(TriggerKind.PUSH, tags=["v*"])
        assert trigger_matches(trigger, Event("push", ref="refs/tags/v1.2"))
        assert not trigger_matches(trigger, Event("push", ref="refs/heads/main"))

    def test_event_name_must_match(self):
        assert not trigger_matches(Trigger(TriggerKind.PUSH), Event("pull_request"))

    def test_paths_filter(self):
        trigger = Trigger(TriggerKind.PUSH, paths=["src/**"])
        assert trigger_matches(trigger, Event("push", changed_files=["src/a.py", "README"]))
        assert not trigger_matches(trigger, Event("push", changed_files=["README"]))
        # unknown changes never filter a run out
        assert trigger_matches(trigger, Event("push", changed_files=None))

    def test_paths_ignore_needs_one_unignored_file(self):
        trigger = Trigger(TriggerKind.PUSH, paths_ignore=["docs/**"])
        assert not trigger_matches(trigger, Event("push", changed_files=["docs/x.md"]))
        assert trigger_matches(trigger, Event("push", changed_files=["docs/x.md", "app.py"]))

    def test_pull_request_types_and_base(self):
        trigger = Trigger(TriggerKind.PULL_REQUEST, branches=["main"])
        assert trigger_matches(trigger, Event("pull_request", action="opened", base_ref="main"))
        assert not trigger_matches(trigger, Event("pull_request", action="closed", base_ref="main"))
        assert not trigger_matches(trigger, Event("pull_request", action="opened", base_ref="dev"))

    def test_schedule(self):
        trigger = Trigger(TriggerKind.SCHEDULE, crons=["0 0 * * *"])
        assert trigger_matches(trigger, Event("schedule"))
        assert trigger_matches(trigger, Event("schedule", schedule="0 0 * * *"))
        assert not trigger_matches(trigger, Event("schedule", schedule="5 0 * * *"))

    def test_event_ref_helpers(self):
        assert Event("push", ref="refs/tags/v1").ref_name == "v1"
        assert Event("push", ref="refs/tags/v1").ref_type == "tag"
        assert Event("push", ref="refs/heads/a/b").ref_name == "a/b"


class TestInputs:
    """workflow_dispatch inputs."""

    def dispatch(self, **inputs):
        return Trigger(TriggerKind.WORKFLOW_DISPATCH, inputs={n: InputSpec(name=n, **kw) for n, kw in inputs.items()})

    def test_defaults_and_coercion(self):
        trigger = self.dispatch(
            debug={"type": "boolean"},
            count={"type": "number", "default": "3"},
            target={"type": "choice", "options": ("dev", "prod"), "default": "dev"},
        )
        assert resolve_inputs(trigger, {"debug": "true"}) == {"debug": True, "count": 3, "target": "dev"}

    def test_required_input_missing(self):
        with pytest.raises(SchemaError, match="required input"):
            resolve_inputs(self.dispatch(name={"required": True}), {})

    def test_unknown_input(self):
        with pytest.raises(SchemaError, match="unexpected inputs"):
            resolve_inputs(self.dispatch(), {"x": "1"})

    def test_choice_outside_options(self):
        trigger = self.dispatch(target={"type": "choice", "options": ("dev",)})
        with pytest.raises(SchemaError):
            resolve_inputs(trigger, {"target": "prod"})

    def test_bad_boolean(self):
        with pytest.raises(SchemaError):
            resolve_inputs(self.dispatch(flag={"type": "boolean"}), {"flag": "maybe"})

    def test_other_events_pass_inputs_through(self):
        assert resolve_inputs(Trigger(TriggerKind.PUSH), {"a": 1}) == {"a": 1}

    def test_required_secrets_of_workflow_call(self):
        trigger = Trigger(TriggerKind.WORKFLOW_CALL, secrets={"TOKEN": True, "OPTIONAL": False})
        check_required_secrets(trigger, ["TOKEN"])
        with pytest.raises(SchemaError, match="TOKEN"):
            check_required_secrets(trigger, [])


class TestCron:
    """5-field cron validation."""

    @pytest.mark.parametrize("expr", ["* * * * *", "*/15 0-6 1,15 jan-mar mon-fri", "0 0 * * 0"])
    def test_valid(self, expr):
        validate_cron(expr)

    @pytest.mark.parametrize("expr", ["* * * *", "60 * * * *", "* 24 * * *", "*/0 * * * *", "5-1 * * * *"])
    def test_invalid(self, expr):
        with pytest.raises(SchemaError):
            validate_cron(expr)
