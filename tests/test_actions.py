"""Tests for the action registry boundary."""

import textwrap
from pathlib import Path

import pytest

from actionci.actions import ActionContext, ActionRegistry, ActionResult, load_registry, split_ref
from actionci.errors import ActionExecutionError
from actionci.model import Status


def action_ctx(lines=None):
    return ActionContext(
        job="build",
        step="step",
        workspace=Path("."),
        env={},
        log=(lines.append if lines is not None else (lambda _msg: None)),
        add_mask=lambda _value: None,
    )


class TestRegistry:
    """Resolution and invocation."""

    def test_split_ref(self):
        assert split_ref("actions/checkout@v4") == ("actions/checkout", "v4")
        assert split_ref("./local") == ("./local", None)

    def test_exact_version_wins(self):
        registry = ActionRegistry()
        registry.register("acme/x", lambda i, c: {"which": "any"})
        registry.register("acme/x@v2", lambda i, c: {"which": "v2"})
        assert registry.invoke("acme/x@v2", {}, action_ctx()).outputs == {"which": "v2"}
        assert registry.invoke("acme/x@v1", {}, action_ctx()).outputs == {"which": "any"}
        assert registry.resolve("ACME/X@v9") is not None
        assert registry.resolve("acme/y@v1") is None

    def test_handler_return_values(self):
        registry = ActionRegistry()
        registry.register("a/none", lambda i, c: None)
        registry.register("a/result", lambda i, c: ActionResult(outputs={"k": "v"}))
        assert registry.invoke("a/none", {}, action_ctx()).status == Status.SUCCESS
        assert registry.invoke("a/result", {}, action_ctx()).outputs == {"k": "v"}

    def test_handler_exception_becomes_action_error(self):
        registry = ActionRegistry()

        def broken(inputs, ctx):
            raise ValueError("nope")

        registry.register("a/broken", broken)
        with pytest.raises(ActionExecutionError, match="ValueError: nope"):
            registry.invoke("a/broken", {}, action_ctx())

    def test_reported_failure(self):
        registry = ActionRegistry()
        registry.register("a/fail", lambda i, c: ActionResult(status=Status.FAILURE, message="bad input"))
        with pytest.raises(ActionExecutionError, match="bad input"):
            registry.invoke("a/fail", {}, action_ctx())

    def test_unsupported_return_value(self):
        registry = ActionRegistry()
        registry.register("a/odd", lambda i, c: 42)
        with pytest.raises(ActionExecutionError):
            registry.invoke("a/odd", {}, action_ctx())

    def test_register_requires_callable(self):
        with pytest.raises(TypeError):
            ActionRegistry().register("a/b", "not callable")


class TestLoadRegistry:
    """Handlers loaded from python files."""

    def test_register_function(self, tmp_path):
        path = tmp_path / "acts.py"
        path.write_text(textwrap.dedent("""
            def register(registry):
                registry.register("acme/hello", lambda inputs, ctx: {"msg": "hi " + inputs["who"]})
        """))
        registry = load_registry(path)
        assert registry.invoke("acme/hello@v1", {"who": "x"}, action_ctx()).outputs == {"msg": "hi x"}

    def test_actions_mapping(self, tmp_path):
        path = tmp_path / "acts.py"
        path.write_text('ACTIONS = {"acme/noop": lambda inputs, ctx: None}\n')
        assert "acme/noop" in load_registry(path)

    def test_file_without_handlers(self, tmp_path):
        path = tmp_path / "acts.py"
        path.write_text("X = 1\n")
        with pytest.raises(TypeError):
            load_registry(path)

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_registry(tmp_path / "nope.py")
