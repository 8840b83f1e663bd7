import logging
from dataclasses import dataclass

from .errors import UnsupportedArchitecture, UnsupportedOS
from .macos import format_version, parse_version
from .manifest import Manifest, PostflightCommand, expand_template, is_unverified


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedInstall:
    name: str
    version: str
    arch: str
    url: str
    checksum: str | None
    app_bundle: str
    postflight: PostflightCommand | None = None

    @property
    def verified(self) -> bool:
        return self.checksum is not None

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "version": self.version,
            "arch": self.arch,
            "url": self.url,
            "sha256": self.checksum,
            "app": self.app_bundle,
            "postflight": [self.postflight.path, *self.postflight.args] if self.postflight else None,
        }


def resolve(manifest: Manifest, arch: str, os_version) -> ResolvedInstall:
    '''
    Pick the download URL and checksum of `manifest` for a machine with architecture tag `arch`
    running macOS `os_version`. Raises UnsupportedOS or UnsupportedArchitecture; an `os_version`
    that does not parse (None included) raises ValueError, but only when the manifest has a floor.
    '''
    if manifest.minimum_os is not None:
        running = parse_version(os_version)
        if running < manifest.minimum_os:
            raise UnsupportedOS(manifest.name, format_version(manifest.minimum_os), format_version(running))
    if arch not in manifest.arch_map:
        raise UnsupportedArchitecture(manifest.name, arch, manifest.architectures)
    values = {"arch": manifest.arch_map[arch], "version": manifest.version}
    url = expand_template(manifest.url_template, values)
    checksum = manifest.checksums[arch]
    if is_unverified(checksum):
        logger.warning("%s %s has no checksum for %s, download will not be verified",
                       manifest.name, manifest.version, arch)
        checksum = None
    return ResolvedInstall(
        name=manifest.name,
        version=manifest.version,
        arch=arch,
        url=url,
        checksum=checksum,
        app_bundle=expand_template(manifest.app_bundle, values),
        postflight=manifest.postflight,
    )
