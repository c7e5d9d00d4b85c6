"""
renderer.py

Responsibility: Deterministically render formula text templates (caveats, test commands).

Rules:
- Templates are rendered with Jinja2 using only the explicit context mapping.
- Undefined placeholders are errors, never empty strings.
- Rendering has no side effects: same template and context, same text.

This module intentionally does NOT know about downloads, installs or the CLI.
"""

from __future__ import annotations

from typing import Any, Mapping

from jinja2 import Environment, StrictUndefined, TemplateError

from keg.config import Layout
from keg.errors import RenderError
from keg.formula_parser import FormulaDescriptor

_ENV = Environment(
    autoescape=False,
    undefined=StrictUndefined,
    keep_trailing_newline=True,
)


def render_string(template: str, context: Mapping[str, Any], *, what: str = "template") -> str:
    if not any(marker in template for marker in ("{{", "{%", "{#")):
        return template
    try:
        return _ENV.from_string(template).render(**context)
    except TemplateError as e:
        raise RenderError(f"Failed rendering {what}: {e}") from e


def render_caveats(template: str, context: Mapping[str, Any]) -> str:
    """
    Substitute placeholders (e.g. `{{ opt_prefix }}`) into a caveats template.
    """
    return render_string(template, context, what="caveats")


def template_context(descriptor: FormulaDescriptor, layout: Layout) -> dict[str, str]:
    """
    Build the placeholder mapping for a formula installed under `layout`.
    """
    prefix = layout.prefix_for(descriptor.name, descriptor.version)
    opt_prefix = layout.opt_prefix_for(descriptor.name)
    return {
        "name": descriptor.name,
        "version": descriptor.version,
        "prefix": str(prefix),
        "opt_prefix": str(opt_prefix),
        "bin": str(prefix / "bin"),
        "opt_bin": str(opt_prefix / "bin"),
        "libexec": str(prefix / "libexec"),
        "share": str(prefix / "share"),
        "pkgshare": str(prefix / "share" / descriptor.name),
        "etc": str(layout.etc),
        "homebrew_prefix": str(layout.root),
    }
