import logging
import platform
import re

from .errors import ManifestError


logger = logging.getLogger(__name__)

MACOS_RELEASES = {
    "el_capitan": (10, 11),
    "sierra": (10, 12),
    "high_sierra": (10, 13),
    "mojave": (10, 14),
    "catalina": (10, 15),
    "big_sur": (11,),
    "monterey": (12,),
    "ventura": (13,),
    "sonoma": (14,),
    "sequoia": (15,),
    "tahoe": (26,),
}

MACHINE_ARCHITECTURES = {
    "arm64": "arm",
    "aarch64": "arm",
    "x86_64": "intel",
    "amd64": "intel",
    "i386": "intel",
}

_VERSION_RE = re.compile(r"^\d+(\.\d+)*$")
_CONSTRAINT_RE = re.compile(r"^(?:(?P<op>[<>=!]=?)\s*)?:?(?P<version>[A-Za-z_0-9.]+)$")


def parse_version(value) -> tuple[int, ...]:
    '''
    Turn "12.6.1", "monterey" or (12, 6) into a comparable tuple. Trailing zeros are dropped
    so "12.0" and "12" compare equal.
    '''
    if isinstance(value, tuple):
        parts = list(value)
    else:
        value = str(value).strip().lstrip(":")
        if value in MACOS_RELEASES:
            return MACOS_RELEASES[value]
        if not _VERSION_RE.match(value):
            raise ValueError("Not a macOS version: " + repr(value))
        parts = [int(p) for p in value.split(".")]
    while len(parts) > 1 and parts[-1] == 0:
        parts.pop()
    return tuple(parts)


def format_version(version: tuple[int, ...]) -> str:
    for name, release in MACOS_RELEASES.items():
        if release == version:
            return "%s (%s)" % (".".join(map(str, version)), name)
    return ".".join(map(str, version))


def parse_os_constraint(constraint) -> tuple[int, ...]:
    '''
    Parse a `depends_on macos:` value into a version floor. Only ">=" (or a bare release) is a
    floor, anything else is rejected.
    '''
    m = _CONSTRAINT_RE.match(str(constraint).strip())
    if not m:
        raise ManifestError("Cannot parse macOS constraint " + repr(constraint))
    if m.group("op") not in (None, ">="):
        raise ManifestError("Unsupported macOS constraint operator %s in %r" % (m.group("op"), constraint))
    try:
        return parse_version(m.group("version"))
    except ValueError as e:
        raise ManifestError(str(e)) from e


def current_arch() -> str:
    machine = platform.machine().lower()
    arch = MACHINE_ARCHITECTURES.get(machine)
    if arch is None:
        logger.debug("Unknown machine type %s, passing it through", machine)
        return machine
    return arch


def current_os_version() -> tuple[int, ...] | None:
    release, _, _ = platform.mac_ver()
    if not release:
        return None
    return parse_version(release)
