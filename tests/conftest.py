from __future__ import annotations

import io
import shlex
import sys
import tarfile
from pathlib import Path
from typing import Callable

import pytest
import yaml

from keg.config import Settings

CWT_SH = '#!/usr/bin/env zsh\ncwt() {\n  if [[ "$1" == "--version" ]]; then echo "cwt 0.2.1"; fi\n}\n'
PY = shlex.quote(sys.executable)


def make_tarball(files: dict[str, str | bytes], *, top: str | None = "cwt-0.2.1") -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w:gz") as tf:
        for rel, content in sorted(files.items()):
            data = content.encode("utf-8") if isinstance(content, str) else content
            info = tarfile.TarInfo(f"{top}/{rel}" if top else rel)
            info.size = len(data)
            info.mode = 0o644
            tf.addfile(info, io.BytesIO(data))
    return buf.getvalue()


CWT_FILES: dict[str, str | bytes] = {
    "cwt.sh": CWT_SH,
    "cwt.plugin.zsh": "source ${0:A:h}/cwt.sh\n",
    "completions/_cwt": "#compdef cwt\n_arguments '--version'\n",
    "README.md": "# cwt\n",
}


class FakeResponse:
    def __init__(self, body: bytes, status_code: int = 200) -> None:
        self._body = body
        self.status_code = status_code
        self.closed = False

    def iter_content(self, chunk_size: int = 1) -> list[bytes]:
        return [self._body[i : i + chunk_size] for i in range(0, len(self._body), chunk_size)]

    def close(self) -> None:
        self.closed = True


class FakeSession:
    """Stands in for `requests.Session`: maps URLs to bytes, status codes or exceptions."""

    def __init__(self, routes: dict[str, bytes | int | Exception] | None = None) -> None:
        self.routes = dict(routes or {})
        self.calls: list[dict[str, object]] = []

    def get(self, url: str, **kwargs: object) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        route = self.routes.get(url, 404)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, int):
            return FakeResponse(b"", status_code=route)
        return FakeResponse(route)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(root=tmp_path / "root", fetch_timeout=5.0, test_timeout=30.0)


@pytest.fixture
def cwt_archive() -> bytes:
    return make_tarball(CWT_FILES)


@pytest.fixture
def write_formula(tmp_path: Path) -> Callable[..., Path]:
    """Write a cwt-like YAML formula into `tmp_path/Formula` and return its path."""

    def _write(name: str = "cwt", **overrides: object) -> Path:
        data: dict[str, object] = {
            "name": name,
            "desc": "AI Worktree Manager - git worktrees for parallel coding sessions",
            "homepage": "https://github.com/IamGroooooot/cwt",
            "url": "https://github.com/IamGroooooot/cwt/archive/refs/tags/v0.2.1.tar.gz",
            "license": "MIT",
            "install": ["cwt.sh", "cwt.plugin.zsh", {"glob": "completions"}],
            "caveats": 'source "{{ opt_prefix }}/cwt.sh"\n',
            "test": {
                "command": PY + ' -c "import sys; print(open(sys.argv[1]).read())" {{ opt_prefix }}/cwt.sh',
                "expect": "cwt {{ version }}",
            },
        }
        data.update(overrides)
        data = {k: v for k, v in data.items() if v is not None}
        directory = tmp_path / "Formula"
        directory.mkdir(exist_ok=True)
        path = directory / f"{name}.yaml"
        path.write_text(yaml.safe_dump(data, sort_keys=False), encoding="utf-8")
        return path

    return _write
