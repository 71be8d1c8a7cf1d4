# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List, Mapping, Optional

from .errors import MalformedMatrix
from .model import MatrixSpec


def expand_matrix(spec: Optional[MatrixSpec], *, job: str = "") -> List[Dict[str, Any]]:
    """
    Expand a matrix into ordered variable mappings.

    Order: axes in declaration order, nested product, later axes vary fastest.

    Include overlays follow one rule: an overlay matches an instance when every
    overlay key that names a base axis equals the instance's value for it.
      - matches one or more instances -> its other keys are merged into each
        (never overwriting original axis values)
      - matches nothing -> appended as a new instance made of the overlay keys

    Pure function: the same MatrixSpec always yields the same list.
    """
    if spec is None:
        return [{}]

    axes = {name: list(values) for name, values in spec.axes.items()}
    for name, values in axes.items():
        if not values:
            raise MalformedMatrix(f"matrix axis '{name}' has no values", job=job, axis=name)

    if axes:
        names = list(axes)
        base = [dict(zip(names, combo)) for combo in product(*(axes[n] for n in names))]
    else:
        base = []

    for entry in spec.exclude:
        _check_overlay(entry, "exclude", job)
        unknown = sorted(set(entry) - set(axes))
        if unknown:
            raise MalformedMatrix(f"exclude names unknown axes {unknown}", job=job)
        base = [inst for inst in base if not _matches(entry, inst)]

    # overlays only ever match the product, never instances appended by other overlays
    base_count = len(base)
    out = base
    for overlay in spec.include:
        _check_overlay(overlay, "include", job)
        axis_keys = {k: v for k, v in overlay.items() if k in axes}
        extra = {k: v for k, v in overlay.items() if k not in axes}

        matched = False
        for inst in out[:base_count]:
            if _matches(axis_keys, inst):
                matched = True
                inst.update(extra)

        if not matched:
            out.append(dict(overlay))

    if not axes and not spec.include:
        return [{}]
    return out


def _matches(entry: Mapping[str, Any], inst: Mapping[str, Any]) -> bool:
    return all(k in inst and inst[k] == v for k, v in entry.items())


def _check_overlay(entry: Any, where: str, job: str) -> None:
    if not isinstance(entry, Mapping):
        raise MalformedMatrix(f"matrix {where} entries must be mappings, got {type(entry).__name__}", job=job)
    if not entry:
        raise MalformedMatrix(f"empty matrix {where} entry", job=job)
