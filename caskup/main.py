import argparse
import asyncio
import json
import logging
import sys
import traceback
from pathlib import Path

from . import __version__
from .backend import InstallerBackend
from .backend.catalog import Catalog, audit_directory
from .backend.errors import CaskError
from .backend.filedb import FileDB
from .backend.livecheck import livecheck_all
from .backend.macos import current_arch, current_os_version, format_version, parse_version
from .backend.manifest import load_manifest
from .backend.resolver import resolve
from .frontend import TUIFrontend

DEFAULT_APPDIR = "/Applications"
DEFAULT_STATEDIR = "~/.caskup"
DEFAULT_CATALOG = "Casks"

def os_version_arg(value):
    try:
        return parse_version(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))

def build_parser():
    parser = argparse.ArgumentParser(
        prog="caskup",
        description="Resolve and install applications described by cask files"
    )
    parser.add_argument("--version", action="version", version="%(prog)s " + __version__)
    parser.add_argument("-c", "--catalog", help="Directory holding the cask files", default=DEFAULT_CATALOG)
    parser.add_argument("-v", "--verbose", help="Enable verbose logging", action="store_true")
    parser.add_argument("--nopause", help="Don't wait for user input after an error, just exit the process", action="store_true")
    parser.add_argument("--no-progress", help="Don't draw progress bars", action="store_true")
    subparsers = parser.add_subparsers(dest="command", required=True)

    runtime = argparse.ArgumentParser(add_help=False)
    runtime.add_argument("cask", help="Cask file, manifest URL or cask name in the catalog")
    runtime.add_argument("--arch", help="Architecture tag to resolve for (default: this machine)", default=None)
    runtime.add_argument("--os-version", help="macOS version to resolve for (default: this machine)",
                         type=os_version_arg, default=None)

    resolve_parser = subparsers.add_parser("resolve", parents=[runtime], help="Print the download a cask resolves to")
    resolve_parser.add_argument("--json", help="Print the resolution as JSON", action="store_true")

    install_parser = subparsers.add_parser("install", parents=[runtime], help="Download, verify and install a cask")
    install_parser.add_argument("-a", "--appdir", help="Applications directory", default=DEFAULT_APPDIR)
    install_parser.add_argument("-s", "--statedir", help="Directory for install receipts", default=DEFAULT_STATEDIR)
    install_parser.add_argument("-f", "--force", help="Reinstall and replace an existing bundle", action="store_true")
    install_parser.add_argument("--strict", help="Refuse casks with placeholder checksums", action="store_true")
    install_parser.add_argument("--retries", help="Download attempts before giving up", type=int, default=5)
    install_parser.add_argument("--http-timeout", help="HTTP timeout in seconds", type=float, default=3600)

    audit_parser = subparsers.add_parser("audit", help="Check every cask in the catalog")
    audit_parser.add_argument("--strict", help="Treat placeholder checksums as errors", action="store_true")

    livecheck_parser = subparsers.add_parser("livecheck", help="Look for newer upstream releases")
    livecheck_parser.add_argument("casks", nargs="*", help="Cask names (default: the whole catalog)")
    livecheck_parser.add_argument("-s", "--statedir", help="Directory for the HTTP cache", default=DEFAULT_STATEDIR)

    list_parser = subparsers.add_parser("list", help="List installed casks")
    list_parser.add_argument("-s", "--statedir", help="Directory for install receipts", default=DEFAULT_STATEDIR)
    return parser

async def load_cask(args, backend, cask):
    if cask.startswith(("http://", "https://")):
        return await backend.load_manifest_from_url(cask)
    path = Path(cask)
    if path.is_file():
        return load_manifest(path)
    return Catalog.load(args.catalog).get(cask)

def runtime_target(args, manifest):
    arch = args.arch or current_arch()
    os_version = args.os_version or current_os_version()
    if os_version is None and manifest.minimum_os is not None:
        raise CaskError("Cannot detect the macOS version of this machine, pass --os-version")
    return arch, os_version

async def cmd_resolve(args, frontend):
    async with InstallerBackend(frontend) as backend:
        manifest = await load_cask(args, backend, args.cask)
    arch, os_version = runtime_target(args, manifest)
    resolved = resolve(manifest, arch, os_version)
    if args.json:
        frontend.output(json.dumps(resolved.to_dict(), indent=2))
        return
    system = f"macOS {format_version(os_version)}" if os_version else "any macOS"
    frontend.output(f"{resolved.name} {resolved.version} ({resolved.arch}, {system})")
    frontend.output(f"  url:    {resolved.url}")
    frontend.output(f"  sha256: {resolved.checksum if resolved.verified else 'unverified'}")
    frontend.output(f"  app:    {resolved.app_bundle}")
    if resolved.postflight is not None:
        frontend.output(f"  postflight: {' '.join((resolved.postflight.path,) + resolved.postflight.args)}")

async def cmd_install(args, frontend):
    with FileDB(Path(args.statedir).expanduser()) as db:
        async with InstallerBackend(frontend, db=db, timeout=args.http_timeout, retries=args.retries,
                                    strict=args.strict) as backend:
            manifest = await load_cask(args, backend, args.cask)
            arch, os_version = runtime_target(args, manifest)
            resolved = resolve(manifest, arch, os_version)
            result = await backend.install(resolved, Path(args.appdir).expanduser(), force=args.force)
    if result.postflight_ok is False:
        frontend.output(f"{result.name} {result.version} installed to {result.path} (postflight failed)")
    elif not result.skipped:
        frontend.output(f"{result.name} {result.version} installed to {result.path}")

async def cmd_audit(args, frontend):
    findings = audit_directory(args.catalog, strict=args.strict)
    errors = [f for f in findings if f.level == "error"]
    for finding in findings:
        frontend.output(str(finding))
    if errors:
        frontend.fatal(f"Audit found {len(errors)} error(s) in {args.catalog}")
    frontend.notify(f"Audit passed with {len(findings)} warning(s)")

async def cmd_livecheck(args, frontend):
    catalog = Catalog.load(args.catalog)
    manifests = [catalog.get(name) for name in args.casks] if args.casks else [m for m in catalog if m.livecheck]
    with FileDB(Path(args.statedir).expanduser()) as db:
        async with InstallerBackend(frontend, db=db) as backend:
            results = await livecheck_all(backend, manifests)
    for manifest, result in zip(manifests, results):
        if isinstance(result, CaskError):
            frontend.warn(f"{manifest.name}: {result}")
        elif isinstance(result, BaseException):
            raise result
        elif result.outdated:
            frontend.output(f"{result.name}: {result.current} ==> {result.latest}")
        else:
            frontend.output(f"{result.name}: {result.current} (up to date)")

async def cmd_list(args, frontend):
    with FileDB(Path(args.statedir).expanduser()) as db:
        receipts = db.get_receipts()
    for name, version, arch, url, sha256, path, installed in receipts:
        frontend.output(f"{name} {version} ({arch}) {path}{'' if sha256 else ' [unverified]'}")

COMMANDS = {
    "resolve": cmd_resolve,
    "install": cmd_install,
    "audit": cmd_audit,
    "livecheck": cmd_livecheck,
    "list": cmd_list,
}

async def amain(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(levelname)s: %(message)s")
    frontend = TUIFrontend(nopause=args.nopause or not sys.stdin.isatty(), quiet=args.no_progress)
    try:
        await COMMANDS[args.command](args, frontend)
    except CaskError as e:
        if args.verbose: traceback.print_exc()
        frontend.fatal(str(e))

def main(argv=None):
    asyncio.run(amain(argv))
