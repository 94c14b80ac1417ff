# matrix.py
from __future__ import annotations

from dataclasses import replace
from itertools import product
from typing import Any, Dict, List, Mapping, Optional

from .errors import SchemaError
from .expressions import evaluate_template, to_str
from .model import MatrixSpec

Combination = Dict[str, Any]


def _same(a: Any, b: Any) -> bool:
    # true and 1 are different matrix values
    if isinstance(a, bool) or isinstance(b, bool):
        return a is b
    if isinstance(a, list) and isinstance(b, list):
        return len(a) == len(b) and all(_same(x, y) for x, y in zip(a, b))
    if isinstance(a, Mapping) and isinstance(b, Mapping):
        return a.keys() == b.keys() and all(_same(a[k], b[k]) for k in a)
    return a == b


def _matches(combo: Mapping[str, Any], entry: Mapping[str, Any]) -> bool:
    return all(k in combo and _same(combo[k], v) for k, v in entry.items())


def _unique(values: List[Any]) -> List[Any]:
    kept: List[Any] = []
    for v in values:
        if not any(_same(v, seen) for seen in kept):
            kept.append(v)
    return kept


def expand_matrix(spec: Optional[MatrixSpec], *, job_id: str = "") -> List[Combination]:
    """
    Expand a static matrix into its ordered combinations.

      1. cartesian product in axis order (last axis varies fastest);
         a value repeated within an axis counts once
      2. exclude: drop combinations matching every key of an exclude entry
      3. include: merge an entry into every original combination whose axis
         values it matches; unmatched entries become new combinations

    Original axis values are never overwritten by an include; values added
    by an earlier include can be.

    No axes and no includes -> a single empty combination.
    """
    if spec is None:
        return [{}]
    if spec.dynamic:
        raise SchemaError(
            "matrix contains unresolved expressions; resolve it before expanding",
            job=job_id or None,
        )

    axes = spec.axes
    for name, values in axes.items():
        if not isinstance(values, list):
            raise SchemaError(f"matrix axis {name!r} must be a list", job=job_id or None)
        if not values:
            raise SchemaError(f"matrix axis {name!r} has no values", job=job_id or None)

    names = list(axes.keys())
    combos: List[Combination] = []
    if names:
        for values in product(*(_unique(axes[n]) for n in names)):
            combos.append(dict(zip(names, values)))

    combos = [c for c in combos if not any(_matches(c, ex) for ex in spec.exclude)]

    original = len(combos)
    added: List[Combination] = []
    for entry in spec.include:
        axis_part = {k: v for k, v in entry.items() if k in axes}
        extra = {k: v for k, v in entry.items() if k not in axes}
        matched = False
        for combo in combos[:original]:
            if _matches(combo, axis_part):
                combo.update(extra)
                matched = True
        if not matched:
            added.append(dict(entry))

    if not names:
        # include-only matrix: every include is its own combination
        combos = added
    else:
        combos.extend(added)

    if not combos:
        if names:
            raise SchemaError("matrix produced no combinations after exclude", job=job_id or None)
        return [{}]
    return combos


def combination_label(combo: Mapping[str, Any]) -> str:
    """`build (ubuntu, 3.11)` style suffix used in job instance names."""
    return ", ".join(to_str(v) for v in combo.values())


def _as_entries(value: Any, what: str, job_id: str) -> List[Dict[str, Any]]:
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(e, Mapping) for e in value):
        raise SchemaError(f"matrix '{what}' must be a list of mappings", job=job_id or None)
    return [dict(e) for e in value]


def resolve_matrix(spec: MatrixSpec, ctx: Any, *, job_id: str = "") -> MatrixSpec:
    """
    Evaluate the expressions of a dynamic matrix (whole-matrix or per-axis)
    against ctx, typically once the job's needs are known.
    """
    if not spec.dynamic:
        return spec

    if spec.expression is not None:
        value = evaluate_template(spec.expression, ctx)
        if not isinstance(value, Mapping):
            raise SchemaError(
                f"matrix expression must evaluate to a mapping, got {to_str(value)!r}",
                job=job_id or None,
            )
        raw = dict(value)
        include = _as_entries(raw.pop("include", None), "include", job_id)
        exclude = _as_entries(raw.pop("exclude", None), "exclude", job_id)
        axes: Dict[str, Any] = {}
        for name, values in raw.items():
            if not isinstance(values, list):
                raise SchemaError(f"matrix axis {name!r} must be a list", job=job_id or None)
            axes[name] = list(values)
        include = spec.include + include
        exclude = spec.exclude + exclude
    else:
        axes = {}
        for name, values in spec.axes.items():
            if isinstance(values, str):
                values = evaluate_template(values, ctx)
                if not isinstance(values, list):
                    raise SchemaError(
                        f"matrix axis {name!r} must evaluate to a list, got {to_str(values)!r}",
                        job=job_id or None,
                    )
            axes[name] = list(values)
        include, exclude = spec.include, spec.exclude

    return replace(spec, axes=axes, include=include, exclude=exclude, expression=None)
