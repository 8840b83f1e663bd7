import logging
from dataclasses import dataclass
from pathlib import Path

from .errors import CatalogError, ManifestError
from .manifest import Manifest, load_manifest


logger = logging.getLogger(__name__)

MANIFEST_SUFFIXES = (".rb", ".json")


@dataclass(frozen=True)
class Finding:
    source: str
    level: str
    message: str

    def __str__(self) -> str:
        return f"{self.source}: {self.level}: {self.message}"


class Catalog:
    '''A directory of cask files, keyed by cask name.'''
    _manifests: dict[str, Manifest]

    def __init__(self, manifests=()) -> None:
        self._manifests = {}
        for manifest in manifests:
            self.add(manifest)

    def add(self, manifest: Manifest):
        if manifest.name in self._manifests:
            other = self._manifests[manifest.name]
            raise CatalogError("Duplicate cask %s in %s and %s" % (manifest.name, other.source, manifest.source))
        self._manifests[manifest.name] = manifest

    @staticmethod
    def manifest_files(directory) -> list[Path]:
        directory = Path(directory)
        if not directory.is_dir():
            raise CatalogError("Catalog directory %s does not exist" % directory)
        return sorted(p for p in directory.iterdir() if p.suffix in MANIFEST_SUFFIXES and p.is_file())

    @classmethod
    def load(cls, directory) -> "Catalog":
        catalog = cls(load_manifest(path) for path in cls.manifest_files(directory))
        logger.debug("Loaded %i casks from %s", len(catalog), directory)
        return catalog

    def __len__(self) -> int:
        return len(self._manifests)

    def __iter__(self):
        return iter(self._manifests[name] for name in sorted(self._manifests))

    def __contains__(self, name) -> bool:
        return name in self._manifests

    def get(self, name) -> Manifest:
        try:
            return self._manifests[name]
        except KeyError:
            raise CatalogError("No cask named %s in the catalog" % name) from None

    def names(self) -> list[str]:
        return sorted(self._manifests)


def audit_manifest(manifest: Manifest, strict=False) -> list[Finding]:
    source = manifest.source or manifest.name
    findings = []
    if manifest.source is not None and Path(manifest.source).stem != manifest.name:
        findings.append(Finding(source, "error", "file name does not match cask name %s" % manifest.name))
    for field in ("description", "homepage"):
        if not getattr(manifest, field):
            findings.append(Finding(source, "warning", "missing %s" % field))
    if manifest.minimum_os is None:
        findings.append(Finding(source, "warning", "no minimum macOS version"))
    unverified = manifest.unverified_architectures
    if unverified:
        findings.append(Finding(source, "error" if strict else "warning",
                                "placeholder checksum for %s" % ", ".join(unverified)))
    return findings


def audit_directory(directory, strict=False) -> list[Finding]:
    '''
    Load every cask in `directory` and collect problems instead of stopping at the first one.
    Placeholder checksums only count as errors when `strict` is set.
    '''
    findings = []
    seen = {}
    for path in Catalog.manifest_files(directory):
        try:
            manifest = load_manifest(path)
        except ManifestError as e:
            findings.append(Finding(str(path), "error", str(e)))
            continue
        if manifest.name in seen:
            findings.append(Finding(str(path), "error", "duplicate cask name, also in %s" % seen[manifest.name]))
        seen.setdefault(manifest.name, str(path))
        findings.extend(audit_manifest(manifest, strict=strict))
    return findings
