"""
cli.py

Responsibility: CLI entrypoint for keg.

High-level flow (command `install`):
1) Parse formula file -> `FormulaDescriptor`
2) Resolve dependencies against sibling formula files
3) Fetch archive, verify sha256 when declared
4) Install declared files into `<root>/Cellar/<name>/<version>`, link `<root>/opt/<name>`
5) Print caveats, run the smoke test

This module should orchestrate behavior but keep concerns isolated:
- Formula parsing: `formula_parser.py`
- Downloads and checksums: `fetcher.py`
- File installation: `installer.py`
- Templates: `renderer.py`
- Smoke tests: `smoke.py`
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Any

import yaml

from keg import __version__
from keg.config import Settings, load_settings
from keg.errors import KegError
from keg.fetcher import Fetcher, sha256_hex
from keg.formula_parser import parse_formula
from keg.installer import uninstall
from keg.pipeline import caveats_for, install_formula, run_installed_test

logger = logging.getLogger(__name__)


class CLIError(KegError):
    pass


def _settings(args: argparse.Namespace) -> Settings:
    overrides: dict[str, Any] = {}
    if getattr(args, "root", None):
        overrides["root"] = args.root
    if getattr(args, "strict_deps", False):
        overrides["strict_dependencies"] = True
    if args.verbose:
        overrides["log_level"] = "DEBUG" if args.verbose > 1 else "INFO"
    elif args.quiet:
        overrides["log_level"] = "ERROR"
    return load_settings(overrides, config_path=args.config)


def _configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level), format="%(levelname)s %(name)s: %(message)s", force=True)


def _print_caveats(text: str | None) -> None:
    if text:
        print("==> Caveats")
        print(text.rstrip("\n"))


def install_cmd(args: argparse.Namespace, settings: Settings) -> int:
    result = install_formula(args.formula, settings, run_test=not bool(args.skip_test))

    for name in result.dependencies_installed:
        print(f"==> Installed dependency {name}")
    d = result.descriptor
    status = "verified" if result.verified else "UNVERIFIED"
    print(f"==> Installed {d.name} {d.version} ({status}) -> {result.prefix}")
    _print_caveats(result.caveats)
    if result.test_result is not None:
        print(f"==> Test passed: {result.test_result.command}")
    return 0


def info_cmd(args: argparse.Namespace, settings: Settings) -> int:
    descriptor = parse_formula(args.formula)
    sys.stdout.write(yaml.safe_dump(descriptor.to_dict(), sort_keys=False, allow_unicode=True))
    return 0


def fetch_cmd(args: argparse.Namespace, settings: Settings) -> int:
    descriptor = parse_formula(args.formula)
    data = Fetcher(timeout=settings.fetch_timeout).fetch(descriptor.url)
    actual = sha256_hex(data)
    print(f"{actual}  {descriptor.url}")
    if descriptor.sha256 is not None and descriptor.sha256 != actual:
        raise CLIError(f"sha256 of {descriptor.url} does not match the formula (declared {descriptor.sha256})")
    return 0


def caveats_cmd(args: argparse.Namespace, settings: Settings) -> int:
    descriptor = parse_formula(args.formula)
    text = caveats_for(descriptor, settings)
    if text:
        sys.stdout.write(text)
    return 0


def test_cmd(args: argparse.Namespace, settings: Settings) -> int:
    result = run_installed_test(args.formula, settings)
    if result is None:
        print("==> No test declared")
    else:
        print(f"==> Test passed: {result.command}")
    return 0


def uninstall_cmd(args: argparse.Namespace, settings: Settings) -> int:
    removed = uninstall(settings.layout, args.name)
    for prefix in removed:
        print(f"==> Removed {prefix}")
    return 0


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="keg", description="keg - install packages from declarative formulas")
    p.add_argument("--version", action="version", version=f"keg {__version__}")
    p.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeat for debug)")
    p.add_argument("-q", "--quiet", action="store_true", help="Only log errors")
    p.add_argument("--config", default=None, help="YAML config file (or set env KEG_CONFIG)")
    sub = p.add_subparsers(dest="command", required=True)

    def formula_cmd(name: str, help_text: str) -> argparse.ArgumentParser:
        c = sub.add_parser(name, help=help_text)
        c.add_argument("formula", help="Path to a formula file (.rb, .yaml, .yml or .md)")
        c.add_argument("--root", default=None, help="Install root (or set env KEG_ROOT; default: ~/.keg)")
        return c

    i = formula_cmd("install", "Fetch, verify, install and test a formula")
    i.add_argument("--skip-test", action="store_true", help="Do not run the formula's smoke test")
    i.add_argument("--strict-deps", action="store_true", help="Fail when a dependency is not found on PATH")
    i.set_defaults(func=install_cmd)

    formula_cmd("info", "Print the parsed formula").set_defaults(func=info_cmd)
    formula_cmd("fetch", "Download the source archive and print its sha256").set_defaults(func=fetch_cmd)
    formula_cmd("caveats", "Print the formula's rendered caveats").set_defaults(func=caveats_cmd)
    formula_cmd("test", "Run the smoke test against an installed formula").set_defaults(func=test_cmd)

    u = sub.add_parser("uninstall", help="Remove every installed version of a formula")
    u.add_argument("name", help="Formula name")
    u.add_argument("--root", default=None, help="Install root (or set env KEG_ROOT; default: ~/.keg)")
    u.set_defaults(func=uninstall_cmd)
    return p


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        settings = _settings(args)
        _configure_logging(settings.log_level)
        return int(args.func(args, settings))
    except KegError as e:
        print(f"error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
