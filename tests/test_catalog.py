from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from caskup.backend.catalog import Catalog, audit_directory
from caskup.backend.errors import CatalogError

from conftest import CASKS


def test_load_repository_catalog():
    catalog = Catalog.load(CASKS)
    assert catalog.names() == ["mdiew", "mdview"]
    assert "mdiew" in catalog
    assert catalog.get("mdiew").version == "0.1.10"
    assert [m.name for m in catalog] == ["mdiew", "mdview"]
    with pytest.raises(CatalogError, match="No cask named nope"):
        catalog.get("nope")


def test_duplicate_names_are_rejected(tmp_path: Path):
    shutil.copy(CASKS / "mdiew.rb", tmp_path / "mdiew.rb")
    shutil.copy(CASKS / "mdiew.rb", tmp_path / "mdiew-copy.rb")
    with pytest.raises(CatalogError, match="Duplicate cask mdiew"):
        Catalog.load(tmp_path)


def test_missing_directory(tmp_path: Path):
    with pytest.raises(CatalogError, match="does not exist"):
        Catalog.load(tmp_path / "nowhere")


def test_audit_treats_placeholders_as_warnings_by_default():
    findings = audit_directory(CASKS)
    assert all(f.level == "warning" for f in findings)
    messages = {(Path(f.source).name, f.message) for f in findings}
    assert ("mdiew.rb", "placeholder checksum for intel") in messages
    assert ("mdview.rb", "placeholder checksum for arm, intel") in messages


def test_strict_audit_rejects_placeholders():
    errors = [f for f in audit_directory(CASKS, strict=True) if f.level == "error"]
    assert len(errors) == 2


def test_audit_collects_broken_and_misnamed_casks(tmp_path: Path):
    shutil.copy(CASKS / "mdiew.rb", tmp_path / "viewer.rb")
    (tmp_path / "broken.rb").write_text('cask "broken" do\n  version "1"\n', encoding="utf-8")
    findings = [str(f) for f in audit_directory(tmp_path) if f.level == "error"]
    assert any("broken.rb" in f and "missing 'end'" in f for f in findings)
    assert any("viewer.rb" in f and "does not match cask name mdiew" in f for f in findings)
