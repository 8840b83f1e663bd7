import asyncio
import json
import logging
import re
from dataclasses import dataclass

from .errors import LivecheckError
from .manifest import Manifest, expand_template


logger = logging.getLogger(__name__)

GITHUB_API = "https://api.github.com"
_GITHUB_REPO_RE = re.compile(r"^https?://github\.com/([^/]+)/([^/#?]+)")


def version_key(version: str) -> tuple:
    return tuple(int(p) if p.isdigit() else p for p in re.split(r"[.\-+_]", version))


@dataclass(frozen=True)
class LivecheckResult:
    name: str
    current: str
    latest: str

    @property
    def outdated(self) -> bool:
        try:
            return version_key(self.latest) > version_key(self.current)
        except TypeError:
            return self.current != self.latest


def livecheck_url(manifest: Manifest) -> str:
    if manifest.livecheck is None:
        raise LivecheckError("%s has no livecheck block" % manifest.name)
    url = manifest.livecheck.url or ":url"
    if url == ":url":
        arch = manifest.architectures[0]
        return expand_template(manifest.url_template, {"arch": manifest.arch_map[arch], "version": manifest.version})
    if url == ":homepage":
        return manifest.homepage or ""
    return url


def github_repository(url: str) -> tuple[str, str]:
    m = _GITHUB_REPO_RE.match(url)
    if not m:
        raise LivecheckError("%s is not a GitHub URL" % url)
    owner, repo = m.groups()
    return owner, repo.removesuffix(".git")


async def livecheck(backend, manifest: Manifest, api=GITHUB_API) -> LivecheckResult:
    '''
    Ask the upstream for the newest version of `manifest`. Only the github_latest strategy is
    understood.
    '''
    if manifest.livecheck is None:
        raise LivecheckError("%s has no livecheck block" % manifest.name)
    if manifest.livecheck.strategy != "github_latest":
        raise LivecheckError("%s: unsupported livecheck strategy %s" % (manifest.name, manifest.livecheck.strategy))
    owner, repo = github_repository(livecheck_url(manifest))
    text = await backend.get_text(f"{api}/repos/{owner}/{repo}/releases/latest",
                                  headers={"Accept": "application/vnd.github+json"})
    try:
        tag = json.loads(text)["tag_name"]
    except (ValueError, KeyError, TypeError) as e:
        raise LivecheckError("%s: unexpected GitHub answer for %s/%s" % (manifest.name, owner, repo)) from e
    latest = re.sub(r"^v(?=\d)", "", tag)
    logger.debug("%s: latest release of %s/%s is %s", manifest.name, owner, repo, latest)
    return LivecheckResult(manifest.name, manifest.version, latest)


async def livecheck_all(backend, manifests, api=GITHUB_API) -> list:
    '''Check `manifests` concurrently. Each entry is a LivecheckResult or the CaskError it raised.'''
    return await asyncio.gather(*(livecheck(backend, m, api) for m in manifests), return_exceptions=True)
