from __future__ import annotations

import io
import json
import os
import zipfile
from pathlib import Path

import pytest

from conftest import CWT_FILES, make_tarball
from keg.config import Layout
from keg.errors import InstallError, MissingSourceFile
from keg.formula_parser import InstallStep
from keg.installer import RECEIPT_NAME, install, link_opt, uninstall

STEPS = (InstallStep("cwt.sh"), InstallStep("cwt.plugin.zsh"), InstallStep("completions", glob=True))


def _snapshot(root: Path) -> dict[str, bytes]:
    out: dict[str, bytes] = {}
    for dirpath, _dirs, files in os.walk(root):
        for name in files:
            p = Path(dirpath) / name
            out[p.relative_to(root).as_posix()] = p.read_bytes()
    return out


def test_install_copies_files_and_glob_directories(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    report = install(cwt_archive, STEPS, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt")

    assert report.installed_files == ("completions/_cwt", "cwt.plugin.zsh", "cwt.sh")
    assert (prefix / "cwt.sh").read_text(encoding="utf-8") == CWT_FILES["cwt.sh"]
    assert (prefix / "completions" / "_cwt").is_file()
    assert not (prefix / "README.md").exists()


def test_install_destinations(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    steps = (
        InstallStep("cwt.sh", destination="bin"),
        InstallStep("completions/_*", destination="zsh_completion", glob=True),
        InstallStep("README.md", destination="doc"),
    )
    install(cwt_archive, steps, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt")

    assert (prefix / "bin" / "cwt.sh").is_file()
    assert (prefix / "share" / "zsh" / "site-functions" / "_cwt").is_file()
    assert (prefix / "share" / "doc" / "cwt" / "README.md").is_file()


def test_install_writes_receipt(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    install(
        cwt_archive,
        STEPS,
        prefix,
        archive_name="v0.2.1.tar.gz",
        formula_name="cwt",
        receipt={"name": "cwt", "verified": False},
    )

    receipt = json.loads((prefix / RECEIPT_NAME).read_text(encoding="utf-8"))
    assert receipt["verified"] is False
    assert receipt["installed_files"] == ["completions/_cwt", "cwt.plugin.zsh", "cwt.sh"]


def test_missing_source_leaves_fresh_prefix_absent(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    steps = STEPS + (InstallStep("cwt-extra.sh"),)

    with pytest.raises(MissingSourceFile) as exc:
        install(cwt_archive, steps, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt")

    assert exc.value.source == "cwt-extra.sh"
    assert not prefix.exists()
    assert not prefix.parent.exists()
    assert not (tmp_path / "Cellar").exists()


def test_missing_source_keeps_previous_install(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    install(cwt_archive, STEPS, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt")
    before = _snapshot(prefix)

    broken = make_tarball({"cwt.sh": "changed\n"})
    with pytest.raises(MissingSourceFile):
        install(broken, STEPS, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt")

    assert _snapshot(prefix) == before


def test_glob_without_matches_is_missing(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    with pytest.raises(MissingSourceFile, match="man/"):
        install(
            cwt_archive,
            (InstallStep("man/*.1", glob=True),),
            prefix,
            archive_name="v0.2.1.tar.gz",
            formula_name="cwt",
        )
    assert not prefix.exists()


def test_reinstall_is_idempotent(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    receipt = {"name": "cwt", "version": "0.2.1"}
    install(cwt_archive, STEPS, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt", receipt=receipt)
    first = _snapshot(prefix)
    install(cwt_archive, STEPS, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt", receipt=receipt)

    assert _snapshot(prefix) == first
    assert sorted(p.name for p in prefix.parent.iterdir()) == ["0.2.1"]
    assert sorted(p.name for p in (tmp_path / "Cellar").iterdir()) == ["cwt"]


def test_archive_without_top_level_directory(tmp_path: Path) -> None:
    archive = make_tarball({"cwt.sh": "x\n", "completions/_cwt": "y\n"}, top=None)
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    install(archive, (InstallStep("cwt.sh"),), prefix, archive_name="cwt.tar.gz", formula_name="cwt")

    assert (prefix / "cwt.sh").read_text(encoding="utf-8") == "x\n"


def test_zip_archive(tmp_path: Path) -> None:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        zf.writestr("tool-1.0/tool", "#!/bin/sh\necho tool 1.0\n")
    prefix = tmp_path / "Cellar" / "tool" / "1.0"
    install(
        buf.getvalue(),
        (InstallStep("tool", destination="bin"),),
        prefix,
        archive_name="tool-1.0.zip",
        formula_name="tool",
    )

    assert (prefix / "bin" / "tool").is_file()


def test_plain_file_download(tmp_path: Path) -> None:
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"
    install(b"echo cwt\n", (InstallStep("cwt.sh"),), prefix, archive_name="cwt.sh", formula_name="cwt")

    assert (prefix / "cwt.sh").read_bytes() == b"echo cwt\n"


def test_link_opt_and_uninstall(tmp_path: Path, cwt_archive: bytes) -> None:
    layout = Layout(tmp_path)
    old = layout.prefix_for("cwt", "0.2.0")
    new = layout.prefix_for("cwt", "0.2.1")
    install(cwt_archive, STEPS, old, archive_name="v0.2.0.tar.gz", formula_name="cwt")
    install(cwt_archive, STEPS, new, archive_name="v0.2.1.tar.gz", formula_name="cwt")

    link_opt(old, layout.opt_prefix_for("cwt"))
    link_opt(new, layout.opt_prefix_for("cwt"))
    assert layout.opt_prefix_for("cwt").resolve() == new.resolve()
    assert (layout.opt_prefix_for("cwt") / "cwt.sh").is_file()

    removed = uninstall(layout, "cwt")
    assert removed == [old, new]
    assert not layout.opt_prefix_for("cwt").is_symlink()
    assert not (layout.cellar / "cwt").exists()


def test_uninstall_unknown(tmp_path: Path) -> None:
    with pytest.raises(InstallError, match="not installed"):
        uninstall(Layout(tmp_path), "cwt")


@pytest.mark.parametrize("name", ["", ".", "..", "cwt/0.2.1", "../Cellar"])
def test_uninstall_rejects_names_that_are_not_one_directory(tmp_path: Path, name: str) -> None:
    layout = Layout(tmp_path)
    keep = layout.prefix_for("other", "1.0")
    keep.mkdir(parents=True)

    with pytest.raises(InstallError, match="Invalid formula name"):
        uninstall(layout, name)

    assert keep.is_dir()


def test_staging_stays_beside_a_shallow_prefix(tmp_path: Path, cwt_archive: bytes) -> None:
    prefix = tmp_path / "out"
    install(cwt_archive, STEPS, prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt")

    assert sorted(p.name for p in tmp_path.iterdir()) == ["out"]
    assert (prefix / "cwt.sh").is_file()


def test_failed_install_keeps_existing_parent_directories(tmp_path: Path, cwt_archive: bytes) -> None:
    other = tmp_path / "Cellar" / "other" / "1.0"
    other.mkdir(parents=True)
    prefix = tmp_path / "Cellar" / "cwt" / "0.2.1"

    with pytest.raises(MissingSourceFile):
        install(cwt_archive, STEPS + (InstallStep("nope.sh"),), prefix, archive_name="v0.2.1.tar.gz", formula_name="cwt")

    assert sorted(p.name for p in (tmp_path / "Cellar").iterdir()) == ["other"]
