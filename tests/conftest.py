from __future__ import annotations

import hashlib
import stat
import zipfile
from pathlib import Path

import pytest

from caskup.frontend import Frontend, ProgressReportInterface


ROOT = Path(__file__).resolve().parents[1]
CASKS = ROOT / "Casks"

MDIEW_ARM_SHA256 = "b9422d0e0b1b16154919729c19137c9d8895121c5adf8522664b109b16332a7b"


class NullProgress(ProgressReportInterface):
    def __enter__(self):
        return self
    def __exit__(self, exception_type, exception_value, exception_traceback):
        pass
    def update(self, count=1):
        pass


class RecordingFrontend(Frontend):
    def __init__(self) -> None:
        self.notices = []
        self.warnings = []
        self.lines = []
    def notify(self, notice):
        self.notices.append(notice)
    def warn(self, warning):
        self.warnings.append(warning)
    def output(self, text):
        self.lines.append(text)
    def fatal(self, error):
        raise AssertionError("fatal: " + error)
    def pause(self):
        pass
    def progress(self, title, total=None, unit=None, leave=True):
        return NullProgress(title, total, unit, leave)


def make_app_zip(path: Path, app: str = "mdiew.app") -> str:
    '''Write a minimal application bundle archive and return its sha256.'''
    with zipfile.ZipFile(path, "w") as zf:
        binary = zipfile.ZipInfo(f"{app}/Contents/MacOS/mdiew")
        binary.external_attr = (stat.S_IFREG | 0o755) << 16
        zf.writestr(binary, "#!/bin/sh\necho mdiew\n")
        zf.writestr(f"{app}/Contents/Info.plist", "<plist/>")
        link = zipfile.ZipInfo(f"{app}/Contents/Resources/bin")
        link.external_attr = (stat.S_IFLNK | 0o777) << 16
        zf.writestr(link, "../MacOS")
    return hashlib.sha256(path.read_bytes()).hexdigest()


@pytest.fixture()
def frontend() -> RecordingFrontend:
    return RecordingFrontend()


@pytest.fixture()
def app_zip(tmp_path: Path) -> tuple[Path, str]:
    archive = tmp_path / "mdiew-aarch64-apple-darwin.app.zip"
    return archive, make_app_zip(archive)
