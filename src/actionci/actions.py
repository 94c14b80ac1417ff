# actions.py
from __future__ import annotations

import runpy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Mapping, Optional, Union

from .errors import ActionExecutionError
from .model import Status


@dataclass
class ActionResult:
    """What an action handler reports back: a status and its outputs."""
    status: Status = Status.SUCCESS
    outputs: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None


@dataclass(frozen=True)
class ActionContext:
    """Everything a handler may use. Handlers must not touch engine state."""
    job: str
    step: str
    workspace: Path
    env: Mapping[str, str]
    log: Callable[[str], None]
    add_mask: Callable[[str], None]


ActionHandler = Callable[[Mapping[str, Any], ActionContext], Union[ActionResult, Mapping[str, Any], None]]


def split_ref(ref: str) -> tuple[str, Optional[str]]:
    """`actions/checkout@v4` -> ("actions/checkout", "v4")."""
    name, sep, version = ref.strip().partition("@")
    return name, (version if sep else None)


class ActionRegistry:
    """
    Handlers for `uses:` references.

      registry.register("actions/checkout@v4", handler)   # exact version
      registry.register("actions/checkout", handler)      # any version

    The exact reference wins over the bare name.
    """

    def __init__(self):
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, ref: str, handler: ActionHandler) -> None:
        if not callable(handler):
            raise TypeError(f"handler for {ref!r} is not callable")
        self._handlers[ref.strip().lower()] = handler

    def action(self, ref: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator form of register()."""
        def deco(fn: ActionHandler) -> ActionHandler:
            self.register(ref, fn)
            return fn
        return deco

    def resolve(self, ref: str) -> Optional[ActionHandler]:
        key = ref.strip().lower()
        if key in self._handlers:
            return self._handlers[key]
        name, _version = split_ref(key)
        return self._handlers.get(name)

    def invoke(self, ref: str, inputs: Mapping[str, Any], ctx: ActionContext) -> ActionResult:
        """Run the handler for ref; failures raise ActionExecutionError."""
        handler = self.resolve(ref)
        if handler is None:
            raise ActionExecutionError(
                f"no handler registered for action '{ref}'",
                job=ctx.job,
                step=ctx.step,
                details={"hint": "register one with ActionRegistry.register() or --actions"},
            )
        try:
            raw = handler(inputs, ctx)
        except ActionExecutionError:
            raise
        except Exception as e:
            raise ActionExecutionError(
                f"action '{ref}' raised {type(e).__name__}: {e}",
                job=ctx.job,
                step=ctx.step,
            ) from e

        if raw is None:
            result = ActionResult()
        elif isinstance(raw, ActionResult):
            result = raw
        elif isinstance(raw, Mapping):
            result = ActionResult(outputs=dict(raw))
        else:
            raise ActionExecutionError(
                f"action '{ref}' returned unsupported value of type {type(raw).__name__}",
                job=ctx.job,
                step=ctx.step,
            )

        if result.status == Status.FAILURE:
            raise ActionExecutionError(
                result.message or f"action '{ref}' reported failure",
                job=ctx.job,
                step=ctx.step,
                details={"outputs": result.outputs} if result.outputs else None,
            )
        return result


def load_registry(path: str | Path, registry: Optional[ActionRegistry] = None) -> ActionRegistry:
    """
    Load action handlers from a python file.

    The file must define either:
      - register(registry) -> None
      - ACTIONS = {"owner/name@v1": handler, ...}
    """
    registry = registry or ActionRegistry()
    p = Path(path).expanduser().resolve()
    if not p.exists():
        raise FileNotFoundError(f"Actions file not found: {p}")
    if p.suffix != ".py":
        raise ValueError(f"Actions file must be a .py file, got: {p.name}")

    globals_dict = runpy.run_path(str(p), run_name=f"actionci_actions_{p.stem}")
    if callable(globals_dict.get("register")):
        globals_dict["register"](registry)
    elif isinstance(globals_dict.get("ACTIONS"), Mapping):
        for ref, handler in globals_dict["ACTIONS"].items():
            registry.register(ref, handler)
    else:
        raise TypeError("Actions file must define register(registry) or ACTIONS = {ref: handler}.")
    return registry
