"""
resolver.py

Responsibility: Decide the install order for a formula and its declared dependencies.

Dependencies that have a formula in the local catalog (the formula files sitting
next to the one being installed) are installed first. Any other name is an
external requirement expected on PATH; it is reported, never installed.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Mapping

from keg.errors import DependencyError
from keg.formula_parser import FormulaDescriptor, formula_format, parse_formula

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolutionPlan:
    order: tuple[str, ...]
    external: tuple[str, ...]


def load_catalog(directory: str | Path) -> dict[str, Path]:
    """
    Map formula names to formula files in `directory` (by file stem, sorted).
    """
    root = Path(directory)
    catalog: dict[str, Path] = {}
    if not root.is_dir():
        return catalog
    for path in sorted(root.iterdir()):
        if path.is_file() and formula_format(path) is not None:
            catalog.setdefault(path.stem, path)
    return catalog


def resolve(
    descriptor: FormulaDescriptor,
    catalog: Mapping[str, Path],
    *,
    load: Callable[[Path], FormulaDescriptor] = parse_formula,
) -> ResolutionPlan:
    """
    Return dependencies-first install order ending with `descriptor`, plus external names.

    Siblings at the same depth are visited in name order, so the plan is deterministic.
    """
    loaded: dict[str, FormulaDescriptor] = {descriptor.name: descriptor}
    order: list[str] = []
    external: set[str] = set()
    done: set[str] = set()

    def visit(name: str, stack: list[str]) -> None:
        if name in done:
            return
        if name in stack:
            cycle = " -> ".join(stack[stack.index(name) :] + [name])
            raise DependencyError(f"Dependency cycle: {cycle}")
        if name not in loaded:
            if name not in catalog:
                external.add(name)
                done.add(name)
                return
            loaded[name] = load(catalog[name])
        for dep in sorted(loaded[name].dependencies):
            visit(dep, stack + [name])
        done.add(name)
        order.append(name)

    visit(descriptor.name, [])
    plan = ResolutionPlan(order=tuple(order), external=tuple(sorted(external)))
    logger.debug("Resolved %s: order=%s external=%s", descriptor.name, plan.order, plan.external)
    return plan


def missing_external(names: Iterable[str], *, which: Callable[[str], str | None] | None = None) -> list[str]:
    which = which or shutil.which
    return [name for name in names if which(name) is None]
