from __future__ import annotations

import asyncio
import io
import os
import stat
import sys
import tarfile
import zipfile
from pathlib import Path

import pytest
from aiohttp import web
from aiohttp import test_utils

from caskup.backend import InstallerBackend
from caskup.backend.errors import ChecksumMismatch, InstallationFailed, NetworkFailure, PostflightCommandFailed
from caskup.backend.filedb import FileDB
from caskup.backend.manifest import PostflightCommand
from caskup.backend.resolver import ResolvedInstall

from conftest import CASKS


def _serve(routes) -> test_utils.TestServer:
    app = web.Application()
    app.router.add_routes(routes)
    return test_utils.TestServer(app)


def _resolved(url, checksum, postflight=None) -> ResolvedInstall:
    return ResolvedInstall(name="mdiew", version="0.1.10", arch="arm", url=url, checksum=checksum,
                           app_bundle="mdiew.app", postflight=postflight)


def _install(frontend, app_zip, appdir, checksum="auto", postflight=None, db=None, force=False, strict=False):
    archive, sha = app_zip
    payload = archive.read_bytes()
    downloads = []

    async def handler(request):
        downloads.append(request.path)
        return web.Response(body=payload)

    async def scenario():
        async with _serve([web.get("/mdiew.app.zip", handler)]) as server:
            async with InstallerBackend(frontend, db=db, retries=1, retry_delay=0, strict=strict) as backend:
                resolved = _resolved(str(server.make_url("/mdiew.app.zip")), sha if checksum == "auto" else checksum,
                                     postflight)
                return await backend.install(resolved, appdir, force=force)

    result = asyncio.run(scenario())
    return result, downloads


def test_install_places_bundle_with_permissions_and_symlinks(frontend, app_zip, tmp_path: Path):
    appdir = tmp_path / "Applications"
    result, downloads = _install(frontend, app_zip, appdir)
    assert downloads == ["/mdiew.app.zip"]
    assert result.path == appdir / "mdiew.app"
    assert result.verified
    assert result.postflight_ok is None
    binary = appdir / "mdiew.app" / "Contents" / "MacOS" / "mdiew"
    assert os.access(binary, os.X_OK)
    link = appdir / "mdiew.app" / "Contents" / "Resources" / "bin"
    assert link.is_symlink() and os.readlink(link) == "../MacOS"
    assert frontend.warnings == []


def _extract(frontend, archive, appdir, staging=None):
    async def scenario():
        async with InstallerBackend(frontend) as backend:
            return backend.install_bundle(archive, "mdiew.app", appdir, staging=staging)
    return asyncio.run(scenario())


def _zip_with_link(path: Path, target: str):
    with zipfile.ZipFile(path, "w") as zf:
        link = zipfile.ZipInfo("mdiew.app/Contents/Resources")
        link.external_attr = (stat.S_IFLNK | 0o777) << 16
        zf.writestr(link, target)
        zf.writestr("mdiew.app/Contents/Resources/pwned", "gotcha")
        zf.writestr("mdiew.app/Contents/Info.plist", "<plist/>")


@pytest.mark.parametrize("relative", [False, True])
def test_symlink_member_cannot_redirect_later_members(frontend, tmp_path: Path, relative):
    outside = tmp_path / "outside"
    outside.mkdir()
    archive = tmp_path / "mdiew.app.zip"
    _zip_with_link(archive, "../../../../outside" if relative else str(outside))
    stage = tmp_path / "stage"
    stage.mkdir()
    with pytest.raises(InstallationFailed, match="points outside the archive"):
        _extract(frontend, archive, tmp_path / "Applications", staging=stage)
    assert list(outside.iterdir()) == []
    assert not (tmp_path / "Applications" / "mdiew.app").exists()


def test_parent_member_is_refused(frontend, tmp_path: Path):
    archive = tmp_path / "mdiew.app.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("mdiew.app/Contents/Info.plist", "<plist/>")
        zf.writestr("../evil", "gotcha")
    stage = tmp_path / "stage"
    stage.mkdir()
    with pytest.raises(InstallationFailed, match="escapes the extraction directory"):
        _extract(frontend, archive, tmp_path / "Applications", staging=stage)
    assert list(tmp_path.rglob("evil")) == []
    assert list(stage.iterdir()) == []


def test_install_from_tarball(frontend, tmp_path: Path):
    archive = tmp_path / "mdiew.tar.gz"
    payload = b"#!/bin/sh\necho mdiew\n"
    with tarfile.open(archive, "w:gz") as tf:
        for name in ("mdiew.app", "mdiew.app/Contents", "mdiew.app/Contents/MacOS"):
            info = tarfile.TarInfo(name)
            info.type = tarfile.DIRTYPE
            info.mode = 0o755
            tf.addfile(info)
        info = tarfile.TarInfo("mdiew.app/Contents/MacOS/mdiew")
        info.size = len(payload)
        info.mode = 0o755
        tf.addfile(info, io.BytesIO(payload))
    appdir = tmp_path / "Applications"
    target = _extract(frontend, archive, appdir)
    assert target == appdir / "mdiew.app"
    binary = target / "Contents" / "MacOS" / "mdiew"
    assert binary.read_bytes() == payload
    assert os.access(binary, os.X_OK)



def test_checksum_mismatch_installs_nothing(frontend, app_zip, tmp_path: Path):
    appdir = tmp_path / "Applications"
    with pytest.raises(ChecksumMismatch) as e:
        _install(frontend, app_zip, appdir, checksum="0" * 64)
    assert e.value.expected == "0" * 64
    assert e.value.actual == app_zip[1]
    assert not (appdir / "mdiew.app").exists()


def test_unverified_download_warns_and_installs(frontend, app_zip, tmp_path: Path):
    result, _ = _install(frontend, app_zip, tmp_path / "Applications", checksum=None)
    assert not result.verified
    assert any("Skipping checksum verification" in w for w in frontend.warnings)
    assert result.path.is_dir()


def test_strict_mode_refuses_unverified_download(frontend, app_zip, tmp_path: Path):
    with pytest.raises(InstallationFailed, match="unverified"):
        _install(frontend, app_zip, tmp_path / "Applications", checksum=None, strict=True)


def test_existing_bundle_needs_force(frontend, app_zip, tmp_path: Path):
    appdir = tmp_path / "Applications"
    (appdir / "mdiew.app").mkdir(parents=True)
    (appdir / "mdiew.app" / "old").write_text("old", encoding="utf-8")
    with pytest.raises(InstallationFailed, match="already exists"):
        _install(frontend, app_zip, appdir)
    assert (appdir / "mdiew.app" / "old").exists()
    result, _ = _install(frontend, app_zip, appdir, force=True)
    assert not (result.path / "old").exists()
    assert (result.path / "Contents" / "Info.plist").exists()


def test_postflight_runs_with_appdir(frontend, app_zip, tmp_path: Path):
    appdir = tmp_path / "Applications"
    command = PostflightCommand(sys.executable, ("-c", "open(r'#{appdir}/postflight-#{version}', 'w').close()"))
    result, _ = _install(frontend, app_zip, appdir, postflight=command)
    assert result.postflight_ok is True
    assert (appdir / "postflight-0.1.10").exists()


def test_failing_postflight_is_a_warning(frontend, app_zip, tmp_path: Path):
    appdir = tmp_path / "Applications"
    command = PostflightCommand(sys.executable, ("-c", "import sys; print('nope'); sys.exit(3)"))
    result, _ = _install(frontend, app_zip, appdir, postflight=command)
    assert result.postflight_ok is False
    assert (appdir / "mdiew.app").is_dir()
    assert any("exited with status 3: nope" in w for w in frontend.warnings)


def test_missing_postflight_executable(frontend, tmp_path: Path):
    async def scenario():
        async with InstallerBackend(frontend) as backend:
            await backend.run_postflight(PostflightCommand(str(tmp_path / "missing")), {"appdir": str(tmp_path)})
    with pytest.raises(PostflightCommandFailed, match="Cannot run"):
        asyncio.run(scenario())


def test_receipt_skips_reinstalling_same_version(frontend, app_zip, tmp_path: Path):
    appdir = tmp_path / "Applications"
    with FileDB(tmp_path / "state") as db:
        first, downloads = _install(frontend, app_zip, appdir, db=db)
        assert db.get_receipt("mdiew")[1] == "0.1.10"
        second, downloads = _install(frontend, app_zip, appdir, db=db)
    assert not first.skipped
    assert second.skipped
    assert downloads == []
    assert "mdiew 0.1.10 is already installed" in frontend.notices


def test_download_gives_up_after_retries(frontend, tmp_path: Path):
    async def scenario():
        async with _serve([]) as server:
            async with InstallerBackend(frontend, retries=2, retry_delay=0) as backend:
                await backend.download(str(server.make_url("/missing.zip")), tmp_path / "missing.zip")
    with pytest.raises(NetworkFailure, match="after 2 attempts"):
        asyncio.run(scenario())
    assert not (tmp_path / "missing.zip").exists()


def test_archive_without_bundle(frontend, app_zip, tmp_path: Path):
    archive, _ = app_zip
    async def scenario():
        async with InstallerBackend(frontend) as backend:
            return backend.install_bundle(archive, "Other.app", tmp_path / "Applications")
    with pytest.raises(InstallationFailed, match="Other.app was not found"):
        asyncio.run(scenario())


def test_unsupported_archive(frontend, tmp_path: Path):
    archive = tmp_path / "mdiew.dmg"
    archive.write_bytes(b"not an archive")
    async def scenario():
        async with InstallerBackend(frontend) as backend:
            return backend.install_bundle(archive, "mdiew.app", tmp_path / "Applications")
    with pytest.raises(InstallationFailed, match="Unsupported archive format"):
        asyncio.run(scenario())


def test_manifest_from_url_uses_etag_cache(frontend, tmp_path: Path):
    text = (CASKS / "mdiew.rb").read_text(encoding="utf-8")
    seen = []

    async def handler(request):
        seen.append(request.headers.get("If-None-Match"))
        if request.headers.get("If-None-Match") == '"v1"':
            return web.Response(status=304)
        return web.Response(text=text, headers={"Etag": '"v1"'})

    async def scenario(db):
        async with _serve([web.get("/mdiew.rb", handler)]) as server:
            async with InstallerBackend(frontend, db=db) as backend:
                url = str(server.make_url("/mdiew.rb"))
                return await backend.load_manifest_from_url(url), await backend.load_manifest_from_url(url)

    with FileDB(tmp_path) as db:
        first, second = asyncio.run(scenario(db))
    assert seen == [None, '"v1"']
    assert first.to_dict() == second.to_dict()
    assert first.version == "0.1.10"
