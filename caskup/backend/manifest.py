import json
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import jsonschema

from .caskfile import parse_cask
from .errors import ManifestError
from .macos import parse_os_constraint


logger = logging.getLogger(__name__)

PLACEHOLDER_CHECKSUM = "PLACEHOLDER"
UNVERIFIED_CHECKSUMS = (PLACEHOLDER_CHECKSUM, ":no_check")

URL_PLACEHOLDERS = frozenset(("arch", "version"))
POSTFLIGHT_PLACEHOLDERS = frozenset(("version", "appdir"))

_TEMPLATE_RE = re.compile(r"#\{([A-Za-z_][A-Za-z0-9_]*)\}")

MANIFEST_SCHEMA={
  "$schema": "http://json-schema.org/draft-07/schema#",
  "title": "Manifest",
  "description": "Cask manifest",
  "type": "object",
  "required": [
    "name",
    "version",
    "architectureMap",
    "checksumMap",
    "urlTemplate",
    "appBundleName"
  ],
  "additionalProperties": False,
  "properties": {
    "name": {
      "description": "Cask token, unique within the catalog.",
      "type": "string",
      "pattern": "^[a-z0-9][a-z0-9@._+-]*$"
    },
    "displayName": {
      "description": "Human readable application name.",
      "type": "string"
    },
    "description": {
      "type": "string"
    },
    "homepage": {
      "type": "string"
    },
    "version": {
      "description": "Version string, substituted for #{version}.",
      "type": "string",
      "minLength": 1
    },
    "architectureMap": {
      "description": "Architecture tag to the token substituted for #{arch}.",
      "type": "object",
      "minProperties": 1,
      "additionalProperties": {
        "type": "string"
      }
    },
    "checksumMap": {
      "description": "Architecture tag to the sha256 of the downloaded artifact.",
      "type": "object",
      "minProperties": 1,
      "additionalProperties": {
        "$ref": "#/definitions/Checksum"
      }
    },
    "urlTemplate": {
      "type": "string",
      "pattern": "^https?://"
    },
    "minimumOSVersion": {
      "description": "macOS floor, e.g. \"monterey\", \">= :monterey\" or \"12\".",
      "type": ["string", "null"]
    },
    "appBundleName": {
      "type": "string",
      "pattern": "\\.app$"
    },
    "postflightCommand": {
      "anyOf": [
        {"type": "null"},
        {"$ref": "#/definitions/Command"}
      ]
    },
    "livecheck": {
      "anyOf": [
        {"type": "null"},
        {"$ref": "#/definitions/Livecheck"}
      ]
    }
  },
  "definitions": {
    "Checksum": {
      "type": "string",
      "pattern": "^([a-f0-9]{64}|PLACEHOLDER|:no_check)$"
    },
    "Command": {
      "description": "Command run once after the bundle is installed.",
      "type": "object",
      "required": ["path"],
      "additionalProperties": False,
      "properties": {
        "path": {
          "type": "string",
          "minLength": 1
        },
        "args": {
          "type": "array",
          "items": {
            "type": "string"
          }
        }
      }
    },
    "Livecheck": {
      "type": "object",
      "required": ["strategy"],
      "additionalProperties": False,
      "properties": {
        "url": {
          "description": "Page to check, or \":url\" for the download URL.",
          "type": "string"
        },
        "strategy": {
          "type": "string"
        }
      }
    }
  }
}


def template_fields(template: str) -> set[str]:
    return set(_TEMPLATE_RE.findall(template))


def expand_template(template: str, values: Mapping[str, str]) -> str:
    def _sub(m):
        key = m.group(1)
        if key not in values:
            raise ManifestError("Unknown placeholder #{%s} in %r" % (key, template))
        return str(values[key])
    return _TEMPLATE_RE.sub(_sub, template)


def is_unverified(checksum: str) -> bool:
    return checksum in UNVERIFIED_CHECKSUMS


@dataclass(frozen=True)
class PostflightCommand:
    path: str
    args: tuple[str, ...] = ()

    def expand(self, values: Mapping[str, str]) -> list[str]:
        return [expand_template(self.path, values)] + [expand_template(a, values) for a in self.args]


@dataclass(frozen=True)
class Livecheck:
    strategy: str
    url: str | None = None


@dataclass(frozen=True)
class Manifest:
    name: str
    version: str
    arch_map: Mapping[str, str]
    checksums: Mapping[str, str]
    url_template: str
    app_bundle: str
    minimum_os: tuple[int, ...] | None = None
    description: str | None = None
    homepage: str | None = None
    display_name: str | None = None
    postflight: PostflightCommand | None = None
    livecheck: Livecheck | None = None
    source: str | None = None

    def __post_init__(self):
        object.__setattr__(self, "arch_map", MappingProxyType(dict(self.arch_map)))
        object.__setattr__(self, "checksums", MappingProxyType(dict(self.checksums)))
        if set(self.arch_map) != set(self.checksums):
            raise ManifestError("%s: architectures %s and checksums %s do not match"
                                % (self.name, sorted(self.arch_map), sorted(self.checksums)))
        unknown = template_fields(self.url_template) - URL_PLACEHOLDERS
        unknown |= template_fields(self.app_bundle) - URL_PLACEHOLDERS
        if self.postflight is not None:
            for part in (self.postflight.path,) + self.postflight.args:
                unknown |= template_fields(part) - POSTFLIGHT_PLACEHOLDERS
        if unknown:
            raise ManifestError("%s: unknown placeholders %s" % (self.name, ", ".join(sorted(unknown))))

    @property
    def architectures(self) -> tuple[str, ...]:
        return tuple(sorted(self.arch_map))

    @property
    def unverified_architectures(self) -> tuple[str, ...]:
        return tuple(a for a in self.architectures if is_unverified(self.checksums[a]))

    @classmethod
    def from_dict(cls, data: dict, source=None) -> "Manifest":
        '''
        Validate a manifest dict (as loaded from JSON or parsed from a cask file) and build the
        immutable Manifest from it.
        '''
        try:
            jsonschema.validate(data, MANIFEST_SCHEMA)
        except jsonschema.ValidationError as e:
            where = "/".join(str(p) for p in e.absolute_path) or "manifest"
            raise ManifestError("%s: invalid %s: %s" % (source or data.get("name", "manifest"), where, e.message)) from e
        minimum_os = data.get("minimumOSVersion")
        postflight = data.get("postflightCommand")
        livecheck = data.get("livecheck")
        return cls(
            name=data["name"],
            version=data["version"],
            arch_map=data["architectureMap"],
            checksums=data["checksumMap"],
            url_template=data["urlTemplate"],
            app_bundle=data["appBundleName"],
            minimum_os=parse_os_constraint(minimum_os) if minimum_os else None,
            description=data.get("description"),
            homepage=data.get("homepage"),
            display_name=data.get("displayName"),
            postflight=PostflightCommand(postflight["path"], tuple(postflight.get("args", ()))) if postflight else None,
            livecheck=Livecheck(livecheck["strategy"], livecheck.get("url")) if livecheck else None,
            source=str(source) if source is not None else None,
        )

    def to_dict(self) -> dict:
        data = {
            "name": self.name,
            "version": self.version,
            "architectureMap": dict(self.arch_map),
            "checksumMap": dict(self.checksums),
            "urlTemplate": self.url_template,
            "appBundleName": self.app_bundle,
            "minimumOSVersion": ".".join(map(str, self.minimum_os)) if self.minimum_os else None,
        }
        for key, value in (("displayName", self.display_name), ("description", self.description),
                           ("homepage", self.homepage)):
            if value is not None:
                data[key] = value
        if self.postflight is not None:
            data["postflightCommand"] = {"path": self.postflight.path, "args": list(self.postflight.args)}
        if self.livecheck is not None:
            data["livecheck"] = {"strategy": self.livecheck.strategy}
            if self.livecheck.url is not None:
                data["livecheck"]["url"] = self.livecheck.url
        return data


def loads_manifest(text: str, source="manifest") -> Manifest:
    '''
    Parse manifest text. Cask DSL and JSON are told apart by the first non-blank character.
    '''
    stripped = text.lstrip()
    if stripped.startswith("{"):
        try:
            data = json.loads(text)
        except json.JSONDecodeError as e:
            raise ManifestError("%s: invalid JSON: %s" % (source, e)) from e
        if not isinstance(data, dict):
            raise ManifestError("%s: manifest must be a JSON object" % source)
    else:
        data = parse_cask(text, source=source)
    return Manifest.from_dict(data, source=source)


def load_manifest(path) -> Manifest:
    path = Path(path)
    logger.debug("Loading manifest %s", path)
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ManifestError("Cannot read %s: %s" % (path, e)) from e
    return loads_manifest(text, source=path)
