import textwrap

import pytest

from actionci.context import ExecutionContext, SecretStore
from actionci.runner import run_workflow
from actionci.schema import parse_workflow_text
from actionci.triggers import Event


@pytest.fixture
def make_ctx(tmp_path):
    """Build an ExecutionContext outside of any job."""
    def _make(secrets=None, **kwargs):
        kwargs.setdefault("github", {"event_name": "push", "ref": "refs/heads/main"})
        kwargs.setdefault("workspace", tmp_path)
        return ExecutionContext.create(secrets=SecretStore(secrets), **kwargs)
    return _make


@pytest.fixture
def run_yaml(tmp_path):
    """Parse a YAML workflow and run it in tmp_path for a push to main."""
    def _run(text, event=None, **kwargs):
        document = parse_workflow_text(textwrap.dedent(text))
        kwargs.setdefault("workspace", tmp_path)
        kwargs.setdefault("max_workers", 4)
        return run_workflow(document, event or Event(name="push", ref="refs/heads/main"), **kwargs)
    return _run
