"""
pipeline.py

Responsibility: Run the install pipeline for one formula.

    parse -> resolve -> fetch/verify -> install -> link -> caveats -> smoke test

Stages run strictly in order and the first error aborts the install. A
checksum mismatch is raised before anything is written under the root.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from keg.config import Settings
from keg.errors import DependencyError, KegError
from keg.fetcher import Fetcher, fetch_and_verify
from keg.formula_parser import FormulaDescriptor, parse_formula
from keg.installer import install, is_linked, link_opt
from keg.renderer import render_caveats, render_string, template_context
from keg.resolver import load_catalog, missing_external, resolve
from keg.smoke import SmokeTestResult, run_smoke_test

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstallResult:
    descriptor: FormulaDescriptor
    prefix: Path
    verified: bool
    installed_files: tuple[str, ...]
    caveats: str | None = None
    test_result: SmokeTestResult | None = None
    dependencies_installed: tuple[str, ...] = ()


def _receipt(descriptor: FormulaDescriptor) -> dict[str, object]:
    return {
        "name": descriptor.name,
        "version": descriptor.version,
        "url": descriptor.url,
        "sha256": descriptor.sha256,
        "verified": descriptor.verified,
        "dependencies": sorted(descriptor.dependencies),
    }


def _install_one(descriptor: FormulaDescriptor, settings: Settings, fetcher: Fetcher) -> tuple[Path, tuple[str, ...]]:
    layout = settings.layout
    prefix = layout.prefix_for(descriptor.name, descriptor.version)

    logger.info("Fetching %s %s", descriptor.name, descriptor.version)
    archive = fetch_and_verify(descriptor.url, descriptor.sha256, fetcher=fetcher)

    logger.info("Installing %s into %s", descriptor.name, prefix)
    report = install(
        archive,
        descriptor.install_steps,
        prefix,
        archive_name=descriptor.url.rstrip("/").rsplit("/", 1)[-1],
        formula_name=descriptor.name,
        receipt=_receipt(descriptor),
    )
    link_opt(prefix, layout.opt_prefix_for(descriptor.name))
    return prefix, report.installed_files


def _test(descriptor: FormulaDescriptor, settings: Settings) -> SmokeTestResult | None:
    if descriptor.test is None:
        logger.info("%s declares no smoke test", descriptor.name)
        return None
    context = template_context(descriptor, settings.layout)
    return run_smoke_test(
        render_string(descriptor.test.command, context, what="test command"),
        render_string(descriptor.test.expected, context, what="test expectation"),
        prefix=settings.layout.opt_prefix_for(descriptor.name),
        exit_status=descriptor.test.exit_status,
        timeout=settings.test_timeout,
    )


def caveats_for(descriptor: FormulaDescriptor, settings: Settings) -> str | None:
    if descriptor.caveats is None:
        return None
    return render_caveats(descriptor.caveats, template_context(descriptor, settings.layout))


def install_formula(
    formula_path: str | Path,
    settings: Settings,
    *,
    run_test: bool = True,
    fetcher: Fetcher | None = None,
) -> InstallResult:
    """
    Install the formula at `formula_path` (and catalog dependencies not yet linked).
    """
    path = Path(formula_path)
    descriptor = parse_formula(path)
    fetcher = fetcher or Fetcher(timeout=settings.fetch_timeout)
    layout = settings.layout

    catalog = load_catalog(path.parent)
    plan = resolve(descriptor, catalog)
    missing = missing_external(plan.external)
    if missing:
        message = f"{descriptor.name} requires {', '.join(missing)}, not found on PATH"
        if settings.strict_dependencies:
            raise DependencyError(message)
        logger.warning(message)

    deps_installed: list[str] = []
    for name in plan.order[:-1]:
        if is_linked(layout, name):
            logger.info("Dependency %s already installed", name)
            continue
        dep = parse_formula(catalog[name])
        _install_one(dep, settings, fetcher)
        deps_installed.append(name)

    prefix, files = _install_one(descriptor, settings, fetcher)
    caveats = caveats_for(descriptor, settings)
    test_result = _test(descriptor, settings) if run_test else None

    return InstallResult(
        descriptor=descriptor,
        prefix=prefix,
        verified=descriptor.verified,
        installed_files=files,
        caveats=caveats,
        test_result=test_result,
        dependencies_installed=tuple(deps_installed),
    )


def run_installed_test(formula_path: str | Path, settings: Settings) -> SmokeTestResult | None:
    """
    Run the smoke test of an already-installed formula.
    """
    descriptor = parse_formula(formula_path)
    prefix = settings.layout.prefix_for(descriptor.name, descriptor.version)
    if not prefix.is_dir():
        raise KegError(f"{descriptor.name} {descriptor.version} is not installed under {settings.layout.root}")
    opt = settings.layout.opt_prefix_for(descriptor.name)
    if not opt.exists() or opt.resolve() != prefix.resolve():
        raise KegError(f"{descriptor.name} {descriptor.version} is installed but not linked at {opt}")
    return _test(descriptor, settings)
