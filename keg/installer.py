"""
installer.py

Responsibility: Extract a fetched archive and copy the declared files into a prefix.

Rules:
- Extraction happens in a scratch directory; a single top-level directory
  (e.g. GitHub's `cwt-0.2.1/`) is stripped so step sources are archive-relative.
- Every step is copied into a staging directory next to the prefix first.
- The staged tree replaces the prefix with a rename. On any failure the prefix
  is left exactly as it was before the attempt.
- Copies walk sources in sorted order so the same inputs yield the same tree.

This module intentionally does NOT know about downloads, checksums or formula syntax.
"""

from __future__ import annotations

import io
import json
import logging
import os
import shutil
import tarfile
import tempfile
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from keg.config import Layout
from keg.errors import InstallError, MissingSourceFile
from keg.formula_parser import DESTINATIONS, InstallStep, is_path_component

logger = logging.getLogger(__name__)

RECEIPT_NAME = "INSTALL_RECEIPT.json"


@dataclass(frozen=True)
class InstallReport:
    prefix: Path
    installed_files: tuple[str, ...]


def _extract(archive: bytes, archive_name: str, scratch: Path) -> Path:
    """
    Unpack `archive` under `scratch` and return the source root.
    """
    target = scratch / "src"
    target.mkdir()
    buf = io.BytesIO(archive)

    if zipfile.is_zipfile(buf):
        with zipfile.ZipFile(buf) as zf:
            root = target.resolve()
            for member in zf.namelist():
                dest = (target / member).resolve()
                if dest != root and root not in dest.parents:
                    raise InstallError(f"Archive member escapes extraction directory: {member}")
            zf.extractall(target)
    else:
        buf.seek(0)
        try:
            with tarfile.open(fileobj=buf, mode="r:*") as tf:
                tf.extractall(target, filter="data")
        except tarfile.ReadError:
            # Not an archive: a single downloaded file (e.g. a bare script).
            name = Path(archive_name).name or "download"
            (target / name).write_bytes(archive)
        except tarfile.TarError as e:
            raise InstallError(f"Cannot extract {archive_name}: {e}") from e

    children = [p for p in target.iterdir() if p.name not in (".DS_Store",)]
    if len(children) == 1 and children[0].is_dir():
        return children[0]
    return target


def _destination_dir(stage: Path, step: InstallStep, formula_name: str) -> Path:
    rel = DESTINATIONS[step.destination].format(name=formula_name)
    return stage / rel if rel else stage


def _resolve_sources(src_root: Path, step: InstallStep) -> list[Path]:
    if step.glob:
        matches = sorted(src_root.glob(step.source))
        if not matches:
            raise MissingSourceFile(step.source)
        return matches
    path = src_root / step.source
    if not path.exists():
        raise MissingSourceFile(step.source)
    return [path]


def _copy_into(source: Path, dest_dir: Path) -> None:
    dest_dir.mkdir(parents=True, exist_ok=True)
    dest = dest_dir / source.name
    if source.is_dir():
        shutil.copytree(source, dest, symlinks=True, dirs_exist_ok=True)
    else:
        shutil.copy2(source, dest, follow_symlinks=False)


def _list_files(root: Path) -> list[str]:
    files: list[str] = []
    for dirpath, _dirs, filenames in os.walk(root):
        for name in filenames:
            files.append((Path(dirpath) / name).relative_to(root).as_posix())
    return sorted(files)


def _remove_empty(directories: list[Path]) -> None:
    # deepest first; stop at the first directory that is not empty
    for directory in directories:
        try:
            directory.rmdir()
        except OSError:
            break


def _commit(stage: Path, prefix: Path) -> None:
    """
    Swap `stage` into place at `prefix`, keeping any previous install until the swap succeeds.
    """
    prefix.parent.mkdir(parents=True, exist_ok=True)
    backup: Path | None = None
    if prefix.exists() or prefix.is_symlink():
        backup = prefix.with_name(f".{prefix.name}.old-{uuid.uuid4().hex[:8]}")
        prefix.rename(backup)
    try:
        stage.rename(prefix)
    except OSError as e:
        if backup is not None:
            backup.rename(prefix)
        raise InstallError(f"Failed to move staged install into {prefix}: {e}") from e
    if backup is not None:
        shutil.rmtree(backup, ignore_errors=True)


def install(
    archive: bytes,
    steps: Iterable[InstallStep],
    prefix: str | Path,
    *,
    archive_name: str,
    formula_name: str,
    receipt: dict[str, Any] | None = None,
) -> InstallReport:
    """
    Install the files named by `steps` from `archive` into `prefix`, all or nothing.

    `receipt`, when given, is written to `INSTALL_RECEIPT.json` together with the
    list of installed files.
    """
    prefix = Path(prefix)
    staging_root = prefix.parent
    created = [p for p in (staging_root, *staging_root.parents) if not p.exists()]
    staging_root.mkdir(parents=True, exist_ok=True)

    with tempfile.TemporaryDirectory(prefix=".keg-scratch-") as scratch_name:
        scratch = Path(scratch_name)
        src_root = _extract(archive, archive_name, scratch)

        stage = Path(tempfile.mkdtemp(prefix=f".{formula_name}-staging-", dir=staging_root))
        try:
            stage.chmod(0o755)
            for step in steps:
                dest_dir = _destination_dir(stage, step, formula_name)
                for source in _resolve_sources(src_root, step):
                    logger.debug("Installing %s -> %s", source.relative_to(src_root), dest_dir.relative_to(stage))
                    _copy_into(source, dest_dir)

            installed = _list_files(stage)
            if receipt is not None:
                body = dict(receipt, installed_files=installed)
                (stage / RECEIPT_NAME).write_text(
                    json.dumps(body, indent=2, sort_keys=True) + "\n", encoding="utf-8"
                )
            _commit(stage, prefix)
        except BaseException:
            shutil.rmtree(stage, ignore_errors=True)
            _remove_empty(created)
            raise

    logger.info("Installed %d file(s) into %s", len(installed), prefix)
    return InstallReport(prefix=prefix, installed_files=tuple(installed))


def link_opt(prefix: str | Path, opt_prefix: str | Path) -> None:
    """
    Point the stable `opt/<name>` symlink at a versioned prefix, replacing any old link.
    """
    prefix = Path(prefix)
    opt_prefix = Path(opt_prefix)
    opt_prefix.parent.mkdir(parents=True, exist_ok=True)
    tmp = opt_prefix.with_name(f".{opt_prefix.name}.link-{uuid.uuid4().hex[:8]}")
    tmp.symlink_to(prefix, target_is_directory=True)
    try:
        os.replace(tmp, opt_prefix)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        raise InstallError(f"Cannot link {opt_prefix} -> {prefix}: {e}") from e


def is_linked(layout: Layout, name: str) -> bool:
    return layout.opt_prefix_for(name).exists()


def uninstall(layout: Layout, name: str) -> list[Path]:
    """
    Remove every installed version of `name` and its `opt` link. Returns removed prefixes.
    """
    if not is_path_component(name):
        raise InstallError(f"Invalid formula name: {name!r}")
    keg_dir = layout.cellar / name
    opt_link = layout.opt_prefix_for(name)
    if not keg_dir.exists() and not opt_link.is_symlink():
        raise InstallError(f"{name} is not installed under {layout.root}")

    if opt_link.is_symlink():
        opt_link.unlink()
    removed = sorted(p for p in keg_dir.iterdir() if p.is_dir() and not p.name.startswith(".")) if keg_dir.exists() else []
    if keg_dir.exists():
        shutil.rmtree(keg_dir)
    logger.info("Uninstalled %s (%d version(s))", name, len(removed))
    return removed
