"""
formula_parser.py

Responsibility: Load and parse a formula file into a deterministic, typed descriptor.

Two input syntaxes are accepted:
- YAML (`.yaml` / `.yml`), or Markdown with YAML frontmatter (`.md`).
- The subset of the Homebrew Ruby DSL used by simple script formulas (`.rb`):
  string fields, `depends_on`, `<dest>.install`, a `<<~EOS` caveats heredoc and
  an `assert_match ..., shell_output(...)` test.

Ruby `#{name}` interpolations are rewritten as Jinja2 `{{ name }}` placeholders so
the renderer treats both syntaxes the same way. A commented-out `sha256` line is
simply absent: the descriptor is then unverified, which is not an error.

The rest of the pipeline treats the parsed descriptor as the single source of truth.
"""

from __future__ import annotations

import logging
import re
import textwrap
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import yaml

from keg.errors import ParseError

logger = logging.getLogger(__name__)

# Install destination -> directory relative to the prefix.
DESTINATIONS: dict[str, str] = {
    "prefix": "",
    "bin": "bin",
    "libexec": "libexec",
    "share": "share",
    "pkgshare": "share/{name}",
    "etc": "etc",
    "doc": "share/doc/{name}",
    "man1": "share/man/man1",
    "zsh_completion": "share/zsh/site-functions",
    "bash_completion": "etc/bash_completion.d",
    "fish_completion": "share/fish/vendor_completions.d",
}

_SHA256_RE = re.compile(r"^[0-9a-f]{64}$")
_ARCHIVE_SUFFIXES = (".tar.gz", ".tar.bz2", ".tar.xz", ".tgz", ".tbz", ".txz", ".tar", ".zip")
_VERSION_AT_END_RE = re.compile(r"v?(\d+(?:\.\d+)+(?:[-.]?(?:alpha|beta|rc|pre)\.?\d*)?)$")
_VERSION_IN_PATH_RE = re.compile(r"/v?(\d+(?:\.\d+)+)/")


@dataclass(frozen=True)
class InstallStep:
    """Copy `source` (relative to the extracted archive) into a prefix destination."""

    source: str
    destination: str = "prefix"
    glob: bool = False


@dataclass(frozen=True)
class SmokeTest:
    command: str
    expected: str
    exit_status: int = 0


@dataclass(frozen=True)
class FormulaDescriptor:
    """Parsed formula contents used to fetch, install and test one package."""

    name: str
    version: str
    description: str
    homepage: str
    url: str
    license: str
    install_steps: tuple[InstallStep, ...]
    sha256: str | None = None
    dependencies: frozenset[str] = field(default_factory=frozenset)
    caveats: str | None = None
    test: SmokeTest | None = None

    @property
    def verified(self) -> bool:
        return self.sha256 is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "desc": self.description,
            "homepage": self.homepage,
            "url": self.url,
            "sha256": self.sha256,
            "license": self.license,
            "depends_on": sorted(self.dependencies),
            "install": [
                {("glob" if s.glob else "path"): s.source, "to": s.destination} for s in self.install_steps
            ],
            "caveats": self.caveats,
            "test": (
                {"command": self.test.command, "expect": self.test.expected, "exit_status": self.test.exit_status}
                if self.test
                else None
            ),
        }


def version_from_url(url: str) -> str | None:
    """
    Derive a version from an archive URL the way Homebrew does for tagged releases.

    `.../archive/refs/tags/v0.2.1.tar.gz` -> `0.2.1`
    `.../tool-1.4.0.zip` -> `1.4.0`
    """
    path = urlparse(url).path or url
    base = path.rstrip("/").rsplit("/", 1)[-1]
    for suffix in _ARCHIVE_SUFFIXES:
        if base.endswith(suffix):
            base = base[: -len(suffix)]
            break
    m = _VERSION_AT_END_RE.search(base)
    if m:
        return m.group(1)
    m = _VERSION_IN_PATH_RE.search(path)
    return m.group(1) if m else None


def _class_to_name(class_name: str) -> str:
    # FooBar -> foo-bar
    return re.sub(r"(?<!^)(?=[A-Z])", "-", class_name).lower()


def _required_str(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    if value is None or not str(value).strip():
        raise ParseError(key, "required field is missing or empty.")
    if not isinstance(value, str):
        raise ParseError(key, f"must be a string, got {type(value).__name__}.")
    return value.strip()


def _normalize_sha256(value: Any) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ParseError("sha256", "must be a hex string.")
    digest = value.strip().lower()
    if not _SHA256_RE.match(digest):
        raise ParseError("sha256", f"expected 64 hex characters, got {value!r}.")
    return digest


def _check_destination(destination: str, *, line: int | None = None) -> str:
    if destination not in DESTINATIONS:
        raise ParseError(
            "install",
            f"unknown destination {destination!r} (expected one of: {', '.join(sorted(DESTINATIONS))}).",
            line=line,
        )
    return destination


def is_path_component(value: str) -> bool:
    """True if `value` can name exactly one directory level (no separators, not `.`/`..`)."""
    return value not in ("", ".", "..") and not any(ch in value for ch in ("/", "\\", "\0"))


def _check_path_component(key: str, value: str) -> str:
    if not is_path_component(value):
        raise ParseError(key, f"{value!r} cannot be used as a directory name.")
    return value


def _build_descriptor(data: dict[str, Any], *, default_name: str) -> FormulaDescriptor:
    name = str(data.get("name") or default_name or "").strip()
    if not name:
        raise ParseError("name", "formula name could not be determined.")
    _check_path_component("name", name)

    url = _required_str(data, "url")
    version = data.get("version")
    if version is not None:
        version = str(version).strip()
    else:
        version = version_from_url(url)
    if not version:
        raise ParseError("version", f"not declared and cannot be derived from url {url!r}.")
    _check_path_component("version", version)

    dependencies = frozenset(data.get("depends_on") or ())
    for dep in sorted(dependencies):
        _check_path_component("depends_on", dep)

    steps = data.get("install_steps")
    if not steps:
        raise ParseError("install", "at least one install step is required.")

    return FormulaDescriptor(
        name=name,
        version=version,
        description=_required_str(data, "desc"),
        homepage=_required_str(data, "homepage"),
        url=url,
        license=_required_str(data, "license"),
        install_steps=tuple(steps),
        sha256=_normalize_sha256(data.get("sha256")),
        dependencies=dependencies,
        caveats=data.get("caveats"),
        test=data.get("test"),
    )


# ---------------------------------------------------------------------------
# YAML / Markdown frontmatter
# ---------------------------------------------------------------------------


def _parse_yaml_frontmatter(text: str) -> tuple[dict[str, Any] | None, str]:
    """
    If the markdown begins with YAML frontmatter delimited by '---', parse it.
    Returns (frontmatter_dict_or_none, remaining_markdown_text).
    """
    if not text.startswith("---\n"):
        return None, text

    end = text.find("\n---\n", 4)
    if end == -1:
        raise ParseError("frontmatter", "starts with '---' but no closing '---' was found.")

    fm_text = text[4:end]
    rest = text[end + len("\n---\n") :]
    try:
        data = yaml.safe_load(fm_text) or {}
    except yaml.YAMLError as e:
        raise ParseError("frontmatter", f"not valid YAML: {e}") from e
    if not isinstance(data, dict):
        raise ParseError("frontmatter", "must be a mapping/object at the top level.")
    return data, rest


def _yaml_install_steps(raw: Any) -> list[InstallStep]:
    if raw is None:
        return []
    if not isinstance(raw, list):
        raise ParseError("install", "must be a list of paths or {path|glob, to} mappings.")
    steps: list[InstallStep] = []
    for item in raw:
        if isinstance(item, str):
            steps.append(InstallStep(source=item))
            continue
        if not isinstance(item, dict):
            raise ParseError("install", f"unsupported entry {item!r}.")
        has_path, has_glob = "path" in item, "glob" in item
        if has_path == has_glob:
            raise ParseError("install", f"entry must set exactly one of `path` or `glob`: {item!r}.")
        source = str(item["glob" if has_glob else "path"]).strip()
        if not source:
            raise ParseError("install", "entry has an empty source path.")
        destination = _check_destination(str(item.get("to") or "prefix"))
        steps.append(InstallStep(source=source, destination=destination, glob=has_glob))
    return steps


def _yaml_test(raw: Any) -> SmokeTest | None:
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ParseError("test", "must be a mapping with `command` and `expect`.")
    command = str(raw.get("command") or "").strip()
    expected = str(raw.get("expect") or "")
    if not command:
        raise ParseError("test", "`command` is required.")
    if not expected:
        raise ParseError("test", "`expect` is required.")
    try:
        exit_status = int(raw.get("exit_status", 0))
    except (TypeError, ValueError) as e:
        raise ParseError("test", "`exit_status` must be an integer.") from e
    return SmokeTest(command=command, expected=expected, exit_status=exit_status)


def _parse_yaml_formula(data: dict[str, Any], *, default_name: str) -> FormulaDescriptor:
    deps_raw = data.get("depends_on") or []
    if isinstance(deps_raw, str):
        deps_raw = [deps_raw]
    if not isinstance(deps_raw, list) or not all(isinstance(d, str) and d.strip() for d in deps_raw):
        raise ParseError("depends_on", "must be a name or a list of names.")

    caveats = data.get("caveats")
    if caveats is not None and not isinstance(caveats, str):
        raise ParseError("caveats", "must be a string.")

    fields = dict(data)
    fields["depends_on"] = [d.strip() for d in deps_raw]
    fields["install_steps"] = _yaml_install_steps(data.get("install"))
    fields["test"] = _yaml_test(data.get("test"))
    fields["caveats"] = caveats
    return _build_descriptor(fields, default_name=default_name)


# ---------------------------------------------------------------------------
# Ruby formula DSL subset
# ---------------------------------------------------------------------------

_RB_STR = r'"((?:[^"\\]|\\.)*)"'
_RB_SQ_STR = r"'((?:[^'\\]|\\.)*)'"
_RB_FIELDS = ("desc", "homepage", "url", "sha256", "license", "version")
_RB_CLASS_RE = re.compile(r"^class\s+([A-Z]\w*)\s*<\s*Formula\s*$")
_RB_FIELD_RE = re.compile(r"^(" + "|".join(_RB_FIELDS) + r")\s+(?:" + _RB_STR + "|" + _RB_SQ_STR + r")\s*$")
_RB_FIELD_NAME_RE = re.compile(r"^(" + "|".join(_RB_FIELDS) + r")\b")
_RB_DEPENDS_RE = re.compile(r"^depends_on\s+" + _RB_STR + r"(?:\s*=>\s*(?::\w+|\[[^\]]*\]))?\s*$")
_RB_INSTALL_RE = re.compile(r"^(\w+)\.install\s+(.+)$")
_RB_INSTALL_ARG_RE = re.compile(r"\s*(?:Dir\[\s*" + _RB_STR + r"\s*\]|" + _RB_STR + r")\s*(?:,|$)")
_RB_HEREDOC_RE = re.compile(r"^<<[~-]?([A-Z_]+)$")
_RB_ASSERT_RE = re.compile(
    r"^assert_match\s*\(?\s*" + _RB_STR + r"\s*,\s*shell_output\(\s*" + _RB_STR + r"\s*(?:,\s*(\d+)\s*)?\)\s*\)?\s*$"
)
_RB_INTERP_RE = re.compile(r"(?<!\\)#\{\s*([^}]*?)\s*\}")
_RB_ESCAPES = {'"': '"', "\\": "\\", "n": "\n", "t": "\t", "#": "#"}
_RB_BLOCK_OPENERS = re.compile(r"^(def|if|unless|case|while|until|begin|class|module)\b|\bdo(\s*\|[^|]*\|)?$")
_RB_NAME_ALIASES = {"HOMEBREW_PREFIX": "homebrew_prefix"}
_JINJA_MARKERS = ("{{", "{%", "{#")


def _jinja_literal(text: str) -> str:
    """Protect literal text (e.g. shell `${#arr[@]}`) from being read as template syntax."""
    if any(marker in text for marker in _JINJA_MARKERS):
        return "{% raw %}" + text + "{% endraw %}"
    return text


def _rb_unescape(text: str) -> str:
    return re.sub(r"\\(.)", lambda m: _RB_ESCAPES.get(m.group(1), "\\" + m.group(1)), text)


def _rb_unescape_single(text: str) -> str:
    return re.sub(r"\\([\\'])", r"\1", text)


def _rb_template(raw: str, *, field_name: str, line: int, unescape: bool = True) -> str:
    """
    Turn a double-quoted Ruby string body into a Jinja2 template: `#{name}` becomes
    `{{ name }}` and every literal segment is kept verbatim.
    """
    out: list[str] = []
    pos = 0
    for m in _RB_INTERP_RE.finditer(raw):
        literal = raw[pos : m.start()]
        out.append(_jinja_literal(_rb_unescape(literal) if unescape else literal))
        expr = _RB_NAME_ALIASES.get(m.group(1), m.group(1))
        if not re.fullmatch(r"[a-z_]\w*", expr):
            raise ParseError(field_name, f"unsupported interpolation #{{{m.group(1)}}}.", line=line)
        out.append("{{ " + expr + " }}")
        pos = m.end()
    literal = raw[pos:]
    out.append(_jinja_literal(_rb_unescape(literal) if unescape else literal))
    return "".join(out)


def _rb_literal(raw: str, *, field_name: str, line: int) -> str:
    """A double-quoted Ruby string used as plain data: interpolation is not supported."""
    if _RB_INTERP_RE.search(raw):
        raise ParseError(field_name, "interpolation is not supported in this field.", line=line)
    return _rb_unescape(raw)


def _rb_strip_comment(line: str) -> str:
    """Drop a trailing `# ...` comment that is not inside a string literal."""
    quote: str | None = None
    i = 0
    while i < len(line):
        ch = line[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
        elif ch in ('"', "'"):
            quote = ch
        elif ch == "#":
            return line[:i].rstrip()
        i += 1
    return line.rstrip()


def _rb_install_args(receiver: str, args: str, *, line: int) -> list[InstallStep]:
    destination = _check_destination(receiver, line=line)
    steps: list[InstallStep] = []
    pos = 0
    while pos < len(args):
        m = _RB_INSTALL_ARG_RE.match(args, pos)
        if not m or m.end() == pos:
            raise ParseError("install", f"unsupported install argument: {args[pos:].strip()!r}", line=line)
        if m.group(1) is not None:
            source = _rb_literal(m.group(1), field_name="install", line=line)
            steps.append(InstallStep(source=source, destination=destination, glob=True))
        else:
            source = _rb_literal(m.group(2), field_name="install", line=line)
            steps.append(InstallStep(source=source, destination=destination))
        pos = m.end()
    if not steps:
        raise ParseError("install", "install directive without arguments.", line=line)
    return steps


def _parse_ruby_formula(text: str, *, default_name: str) -> FormulaDescriptor:
    lines = text.splitlines()
    data: dict[str, Any] = {"depends_on": [], "install_steps": []}
    class_name: str | None = None

    block: str | None = None  # install | caveats | test | skip
    depth = 0
    i = 0
    while i < len(lines):
        lineno = i + 1
        stmt = _rb_strip_comment(lines[i]).strip()
        i += 1
        if not stmt:
            continue

        if block is None:
            if m := _RB_CLASS_RE.match(stmt):
                class_name = m.group(1)
            elif stmt == "end":
                continue
            elif m := _RB_FIELD_RE.match(stmt):
                key = m.group(1)
                if key in data:
                    raise ParseError(key, "declared more than once.", line=lineno)
                if m.group(3) is not None:
                    data[key] = _rb_unescape_single(m.group(3))
                else:
                    data[key] = _rb_literal(m.group(2), field_name=key, line=lineno)
            elif m := _RB_FIELD_NAME_RE.match(stmt):
                raise ParseError(m.group(1), f"expected a single string literal: {stmt}", line=lineno)
            elif m := _RB_DEPENDS_RE.match(stmt):
                data["depends_on"].append(_rb_literal(m.group(1), field_name="depends_on", line=lineno))
            elif stmt == "def install":
                block, depth = "install", 1
            elif stmt == "def caveats":
                block, depth = "caveats", 1
            elif stmt == "test do":
                block, depth = "test", 1
            elif _RB_BLOCK_OPENERS.search(stmt):
                logger.debug("Skipping unsupported block at line %d: %s", lineno, stmt)
                block, depth = "skip", 1
            else:
                logger.debug("Ignoring unsupported statement at line %d: %s", lineno, stmt)
            continue

        if stmt == "end":
            depth -= 1
            if depth == 0:
                block = None
            continue

        if block == "skip":
            if re.match(r"^sha256\b", stmt):
                raise ParseError(
                    "sha256", "only a top-level `sha256` is supported; it would be ignored here.", line=lineno
                )
            if _RB_BLOCK_OPENERS.search(stmt):
                depth += 1
            continue

        if block == "install":
            m = _RB_INSTALL_RE.match(stmt)
            if not m:
                raise ParseError("install", f"unsupported statement: {stmt}", line=lineno)
            data["install_steps"].extend(_rb_install_args(m.group(1), m.group(2), line=lineno))
        elif block == "caveats":
            m = _RB_HEREDOC_RE.match(stmt)
            if m:
                terminator = m.group(1)
                body: list[str] = []
                while i < len(lines) and lines[i].strip() != terminator:
                    body.append(lines[i])
                    i += 1
                if i >= len(lines):
                    raise ParseError("caveats", f"heredoc is not terminated by {terminator}.", line=lineno)
                i += 1
                raw = textwrap.dedent("\n".join(body) + "\n")
                data["caveats"] = _rb_template(raw, field_name="caveats", line=lineno, unescape=False)
            elif sm := re.fullmatch(_RB_STR, stmt):
                data["caveats"] = _rb_template(sm.group(1), field_name="caveats", line=lineno)
            else:
                raise ParseError("caveats", f"unsupported statement: {stmt}", line=lineno)
        elif block == "test":
            m = _RB_ASSERT_RE.match(stmt)
            if not m:
                raise ParseError("test", f"unsupported statement: {stmt}", line=lineno)
            if data.get("test") is not None:
                raise ParseError("test", "only one assertion is supported.", line=lineno)
            data["test"] = SmokeTest(
                command=_rb_template(m.group(2), field_name="test", line=lineno),
                expected=_rb_template(m.group(1), field_name="test", line=lineno),
                exit_status=int(m.group(3) or 0),
            )

    if block is not None:
        raise ParseError(block, "block is not closed with `end`.")
    if class_name is None:
        raise ParseError("class", "expected `class <Name> < Formula`.")

    return _build_descriptor(data, default_name=_class_to_name(class_name) or default_name)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------


def parse_formula_text(text: str, *, fmt: str, default_name: str = "") -> FormulaDescriptor:
    """
    Parse formula text. `fmt` is one of `rb`, `yaml` or `md`.
    """
    if fmt == "rb":
        return _parse_ruby_formula(text, default_name=default_name)

    if fmt == "md":
        data, _rest = _parse_yaml_frontmatter(text)
        if data is None:
            raise ParseError("frontmatter", "markdown formulas must start with YAML frontmatter.")
    elif fmt == "yaml":
        try:
            data = yaml.safe_load(text) or {}
        except yaml.YAMLError as e:
            raise ParseError("formula", f"not valid YAML: {e}") from e
        if not isinstance(data, dict):
            raise ParseError("formula", "must be a mapping/object at the top level.")
    else:
        raise ParseError("formula", f"unsupported formula format {fmt!r}.")
    return _parse_yaml_formula(data, default_name=default_name)


def formula_format(path: Path) -> str | None:
    suffix = path.suffix.lower()
    if suffix == ".rb":
        return "rb"
    if suffix in (".yaml", ".yml"):
        return "yaml"
    if suffix == ".md":
        return "md"
    return None


def parse_formula(formula_path: str | Path) -> FormulaDescriptor:
    """
    Parse a formula file into a `FormulaDescriptor`, choosing the syntax by suffix.

    The file stem is the fallback name for YAML formulas without a `name` key.
    """
    path = Path(formula_path)
    if not path.exists():
        raise ParseError("formula", f"file does not exist: {path}")
    fmt = formula_format(path)
    if fmt is None:
        raise ParseError("formula", f"unrecognised file type: {path.name} (expected .rb, .yaml, .yml or .md)")
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ParseError("formula", f"{path} is not valid UTF-8 (byte {e.start}).") from e
    except OSError as e:
        raise ParseError("formula", f"cannot read {path}: {e.strerror or e}") from e
    descriptor = parse_formula_text(text, fmt=fmt, default_name=path.stem)
    logger.debug("Parsed formula %s %s from %s", descriptor.name, descriptor.version, path)
    return descriptor
