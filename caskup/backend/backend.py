import asyncio
import hashlib
import logging
import os
import shutil
import stat
import tarfile
import tempfile
import traceback
from dataclasses import dataclass
from pathlib import Path
from zipfile import ZipFile, is_zipfile

import aiohttp

from .. import __version__
from ..frontend import Frontend
from .errors import ChecksumMismatch, InstallationFailed, NetworkFailure, PostflightCommandFailed
from .filedb import FileDB
from .manifest import Manifest, PostflightCommand, loads_manifest
from .resolver import ResolvedInstall


logger = logging.getLogger(__name__)

def sha256sum(filename):
    with open(filename, 'rb', buffering=0) as f:
        return hashlib.file_digest(f, 'sha256').hexdigest()

def _archive_filename(url):
    return url.rpartition("/")[-1].partition("?")[0] or "download"

def _unzip(archive, dest):
    '''
    ZipFile.extractall drops unix permission bits and writes symlinks as plain files, both of
    which break application bundles. Restore them from the external attributes. Symlinks are
    created after every regular member so nothing is ever written through one, and both the
    link and its target have to stay inside `dest`.
    '''
    dest = Path(dest)
    root = dest.resolve()
    links = []
    with ZipFile(archive) as zf:
        for info in zf.infolist():
            member = Path(info.filename)
            if member.is_absolute() or ".." in member.parts:
                raise InstallationFailed("Archive member %s escapes the extraction directory" % info.filename)
            mode = info.external_attr >> 16
            if stat.S_ISLNK(mode):
                links.append((member, zf.read(info).decode("utf-8")))
                continue
            if not (dest / member).parent.resolve().is_relative_to(root):
                raise InstallationFailed("Archive member %s escapes the extraction directory" % info.filename)
            path = zf.extract(info, dest)
            if mode and not info.is_dir():
                os.chmod(path, stat.S_IMODE(mode))
    for member, target in links:
        link = dest / member
        link.parent.mkdir(parents=True, exist_ok=True)
        parent = link.parent.resolve()
        if os.path.isabs(target) or not parent.is_relative_to(root) \
                or not (parent / target).resolve().is_relative_to(root):
            raise InstallationFailed("Symlink %s -> %s points outside the archive" % (member, target))
        os.symlink(target, link)

def _untar(archive, dest):
    with tarfile.open(archive) as tf:
        tf.extractall(dest, filter="data")


@dataclass(frozen=True)
class InstallResult:
    name: str
    version: str
    path: Path
    verified: bool
    postflight_ok: bool | None = None
    skipped: bool = False


class InstallerBackend:
    '''
    Fetches, verifies and installs what the resolver picked. Use as an async context manager so
    the HTTP session is opened and closed inside the running loop.
    '''
    _tcp_connections: int
    _session: aiohttp.ClientSession | None

    _frontend: Frontend
    _db: FileDB | None
    _timeout: float | None
    _retries: int
    _retry_delay: float
    _strict: bool

    def __init__(self, frontend, db=None, tcp_connections=10, timeout=None, retries=5, retry_delay=1.0,
                 strict=False) -> None:
        self._frontend = frontend
        self._db = db
        self._tcp_connections = tcp_connections
        self._timeout = timeout
        self._retries = max(1, retries)
        self._retry_delay = retry_delay
        self._strict = strict
        self._session = None

    async def __aenter__(self):
        self._session = aiohttp.ClientSession(connector=aiohttp.TCPConnector(limit=self._tcp_connections),
                                              timeout=aiohttp.ClientTimeout(total=self._timeout),
                                              headers={"User-Agent": "caskup/" + __version__})
        return self

    async def __aexit__(self, exception_type, exception_value, exception_traceback):
        await self._close_session()

    async def _close_session(self):
        if self._session is not None and not self._session.closed:
            await self._session.close()

    async def get_text(self, url, headers=None):
        '''
        GET `url` as text. When a receipts database is attached the body is cached with its Etag
        and a 304 answer is served from the cache.
        '''
        etag_key, cached_key = f"http:{url}:etag", f"http:{url}:cached"
        etag = self._db.get_meta(etag_key) if self._db is not None else None
        headers = dict(headers or {})
        if etag is not None:
            logger.debug("Found Etag for previous download of %s", url)
            headers["If-None-Match"] = etag
        try:
            async with self._session.get(url, headers=headers) as response:
                if response.status == 304 and etag is not None:
                    logger.debug("%s is unchanged from a known state", url)
                    return self._db.get_meta(cached_key, "")
                response.raise_for_status()
                text = await response.text()
                if self._db is not None and "Etag" in response.headers:
                    logger.debug("Saving %s with Etag %s for later comparison", url, response.headers["Etag"])
                    self._db.set_meta(etag_key, response.headers["Etag"])
                    self._db.set_meta(cached_key, text)
                return text
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise NetworkFailure("Failed to load %s: %s" % (url, e)) from e

    async def load_manifest_from_url(self, url) -> Manifest:
        logger.info("Loading manifest %s", url)
        return loads_manifest(await self.get_text(url), source=url)

    async def _download_file(self, url, filename, title=None):
        async with self._session.get(url) as response:
            response.raise_for_status()
            size = int(response.headers.get("content-length", 0)) or None
            with self._frontend.progress(title if title else f"Downloading {Path(filename).name}",
                                         total=((size // 1024) if size else None), unit="KiB", leave=False) as p:
                with open(filename, mode="wb") as f:
                    async for chunk in response.content.iter_chunked(65536):
                        f.write(chunk)
                        p.update(len(chunk) // 1024)

    async def download(self, url, filename, title=None):
        ee = None
        for r in range(self._retries, 0, -1):
            try:
                return await self._download_file(url, filename, title)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                ee = e
                if logger.isEnabledFor(logging.DEBUG): traceback.print_exc()
                logger.warning("Failed to download URL %s: %s. %i retries left.", url, str(e) or type(e).__name__, r-1)
                if os.path.exists(filename): os.unlink(filename)
                if r > 1 and self._retry_delay: await asyncio.sleep(self._retry_delay)
        raise NetworkFailure("Failed to download %s after %i attempts. Last error was: %s"
                             % (url, self._retries, str(ee) or type(ee).__name__))

    def verify(self, filename, resolved: ResolvedInstall) -> bool:
        if not resolved.verified:
            self._frontend.warn(f"Skipping checksum verification for {resolved.name} {resolved.version}")
            return False
        actual = sha256sum(filename)
        if actual != resolved.checksum.lower():
            raise ChecksumMismatch(resolved.url, resolved.checksum, actual)
        logger.debug("Checksum of %s matches %s", filename, actual)
        return True

    def install_bundle(self, archive, app_bundle, appdir, force=False, staging=None) -> Path:
        '''
        Unpack `archive`, find `app_bundle` in it and move it into `appdir`.
        '''
        appdir = Path(appdir)
        target = appdir / app_bundle
        with tempfile.TemporaryDirectory(prefix="caskup-staging-", dir=staging) as tmp:
            staged = Path(tmp)
            logger.info("Extracting %s", Path(archive).name)
            try:
                if is_zipfile(archive):
                    _unzip(archive, staged)
                elif tarfile.is_tarfile(archive):
                    _untar(archive, staged)
                else:
                    raise InstallationFailed("Unsupported archive format: %s" % Path(archive).name)
            except (OSError, tarfile.TarError) as e:
                raise InstallationFailed("Failed to extract %s: %s" % (Path(archive).name, e)) from e
            candidates = sorted((p for p in staged.rglob(app_bundle) if p.is_dir()), key=lambda p: len(p.parts))
            if not candidates:
                raise InstallationFailed("%s was not found in %s" % (app_bundle, Path(archive).name))
            try:
                appdir.mkdir(parents=True, exist_ok=True)
                if target.exists() or target.is_symlink():
                    if not force:
                        raise InstallationFailed("%s already exists, use --force to replace it" % target)
                    logger.info("Removing existing %s", target)
                    if target.is_dir() and not target.is_symlink():
                        shutil.rmtree(target)
                    else:
                        target.unlink()
                logger.debug("Moving %s to %s", candidates[0], target)
                shutil.move(str(candidates[0]), str(target))
            except OSError as e:
                raise InstallationFailed("Failed to install %s: %s" % (target, e)) from e
        return target

    async def run_postflight(self, command: PostflightCommand, values):
        argv = command.expand(values)
        logger.info("Running postflight %s", " ".join(argv))
        try:
            proc = await asyncio.create_subprocess_exec(*argv, stdout=asyncio.subprocess.PIPE,
                                                        stderr=asyncio.subprocess.STDOUT)
        except OSError as e:
            raise PostflightCommandFailed("Cannot run %s: %s" % (argv[0], e)) from e
        output, _ = await proc.communicate()
        output = output.decode("utf-8", errors="replace").strip()
        if output:
            logger.debug("%s: %s", argv[0], output)
        if proc.returncode != 0:
            raise PostflightCommandFailed("%s exited with status %i%s"
                                          % (argv[0], proc.returncode, (": " + output) if output else ""))

    async def install(self, resolved: ResolvedInstall, appdir, force=False) -> InstallResult:
        appdir = Path(appdir)
        target = appdir / resolved.app_bundle
        if self._db is not None and not force:
            receipt = self._db.get_receipt(resolved.name)
            if receipt is not None and receipt[1] == resolved.version and target.exists():
                self._frontend.notify(f"{resolved.name} {resolved.version} is already installed")
                return InstallResult(resolved.name, resolved.version, target, verified=receipt[4] is not None,
                                     skipped=True)
        if target.exists() and not force:
            raise InstallationFailed("%s already exists, use --force to replace it" % target)
        if self._strict and not resolved.verified:
            raise InstallationFailed("%s %s has no checksum for %s, refusing to install unverified download"
                                     % (resolved.name, resolved.version, resolved.arch))
        with tempfile.TemporaryDirectory(prefix="caskup-") as tmp:
            archive = Path(tmp) / _archive_filename(resolved.url)
            logger.info("Downloading %s", resolved.url)
            await self.download(resolved.url, archive, title=f"Downloading {resolved.name} {resolved.version}")
            verified = await asyncio.to_thread(self.verify, archive, resolved)
            target = await asyncio.to_thread(self.install_bundle, archive, resolved.app_bundle, appdir, force, tmp)
        if self._db is not None:
            self._db.record_receipt(resolved.name, resolved.version, resolved.arch, resolved.url,
                                    resolved.checksum, target)
        postflight_ok = None
        if resolved.postflight is not None:
            try:
                await self.run_postflight(resolved.postflight, {"appdir": str(appdir), "version": resolved.version})
                postflight_ok = True
            except PostflightCommandFailed as e:
                self._frontend.warn(f"Postflight for {resolved.name} failed: {e}")
                postflight_ok = False
        self._frontend.notify(f"Installed {resolved.name} {resolved.version} to {target}")
        return InstallResult(resolved.name, resolved.version, target, verified=verified, postflight_ok=postflight_ok)
