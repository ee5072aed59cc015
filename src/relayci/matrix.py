# matrix.py
from __future__ import annotations

import itertools
from typing import Dict, Iterable, List

from .errors import ConfigError
from .model import Coordinates, MatrixSpec, StageInstance, StageTemplate


def _matches(combo: Dict[str, str], pattern: Dict[str, str]) -> bool:
    return all(combo.get(k) == str(v) for k, v in pattern.items())


def combinations(spec: MatrixSpec) -> List[Coordinates]:
    """
    Ordered coordinate tuples for a matrix.

    Lexicographic over dimensions in declaration order, values in declared
    order. Excluded combinations are dropped, includes appended.
    """
    dims = list(spec.dimensions.items())
    for dim, values in dims:
        if not values:
            raise ConfigError(f"Matrix dimension '{dim}' has no values")

    out: List[Coordinates] = []
    if dims:
        names = [d for d, _ in dims]
        for values in itertools.product(*[[str(v) for v in vs] for _, vs in dims]):
            combo = dict(zip(names, values))
            if any(_matches(combo, ex) for ex in spec.exclude):
                continue
            out.append(tuple(zip(names, values)))

    for extra in spec.include:
        coords = tuple((str(k), str(v)) for k, v in extra.items())
        if coords not in out:
            out.append(coords)

    if not out:
        raise ConfigError("Matrix expands to zero combinations")
    return out


def expand(template: StageTemplate) -> List[StageInstance]:
    """Materialize one StageInstance per matrix combination (one if no matrix)."""
    if not template.matrix:
        return [StageInstance(template=template)]
    return [StageInstance(template=template, coordinates=c) for c in combinations(template.matrix)]


def expand_all(templates: Iterable[StageTemplate]) -> List[StageInstance]:
    instances: List[StageInstance] = []
    for t in templates:
        instances.extend(expand(t))
    return instances
