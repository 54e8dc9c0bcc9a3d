"""
Attestation assembler.

Packages the comparator's core size, the justified permission list and
the hashed release assets into a FairSeal record with a stable JSON form.
Submission of the record is left to the caller.
"""

from dataclasses import dataclass, field
from typing import List, Optional
import hashlib
import json
import logging
import os
import re

from . import __version__
from .entitlements import Permission

logger = logging.getLogger(__name__)

HASH_CHUNK_SIZE = 1024 * 1024

_TINT_PATTERN = re.compile(r"^#?([0-9A-Fa-f]{6}|[0-9A-Fa-f]{8})$")


def normalize_tint(tint):
    """Return tint as upper-case RRGGBB[AA] without '#', or None for no tint."""
    if tint is None or not tint.strip():
        return None
    match = _TINT_PATTERN.match(tint.strip())
    if match is None:
        raise ValueError(f"Invalid tint color: {tint!r} (expected #RRGGBB or #RRGGBBAA)")
    return match.group(1).upper()


def sha256_file(path):
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class Asset:
    url: str
    size: int
    sha256: str

    @classmethod
    def from_file(cls, path, url):
        return cls(url, os.path.getsize(path), sha256_file(path))

    def to_dict(self):
        return {"url": self.url, "size": self.size, "sha256": self.sha256}


def _sibling_url(artifact_url, name):
    base = artifact_url.rsplit("/", 1)[0] if "/" in artifact_url else ""
    return f"{base}/{name}" if base else name


def stage_assets(artifact_url, staging_dirs, artifact_path):
    """Describe the release assets found in staging_dirs.

    Each file becomes an Asset whose URL sits beside artifact_url. The file
    named like the artifact is hashed from artifact_path (the untrusted
    artifact that was compared), not from its staged copy.
    """
    artifact_name = artifact_url.rsplit("/", 1)[-1]
    assets = []
    seen = set()
    for staging_dir in staging_dirs:
        for name in sorted(os.listdir(staging_dir)):
            path = os.path.join(staging_dir, name)
            if not os.path.isfile(path) or name in seen:
                continue
            seen.add(name)
            source = artifact_path if name == artifact_name else path
            asset = Asset.from_file(source, _sibling_url(artifact_url, name))
            logger.debug("staged asset %s (%d bytes)", asset.url, asset.size)
            assets.append(asset)

    if artifact_name not in seen:
        assets.insert(0, Asset.from_file(artifact_path, artifact_url))
    return assets


@dataclass
class FairSeal:
    assets: List[Asset] = field(default_factory=list)
    permissions: List[Permission] = field(default_factory=list)
    core_size: int = 0
    tint: Optional[str] = None
    generator_version: str = __version__

    def to_dict(self):
        seal = {
            "assets": [asset.to_dict() for asset in self.assets],
            "permissions": [permission.to_dict() for permission in self.permissions],
            "coreSize": self.core_size,
            "generatorVersion": self.generator_version,
        }
        if self.tint is not None:
            seal["tint"] = self.tint
        return seal

    def to_json(self, indent=None):
        return json.dumps(self.to_dict(), sort_keys=True, indent=indent)

    @classmethod
    def from_dict(cls, data):
        return cls(
            assets=[Asset(a["url"], a["size"], a["sha256"]) for a in data.get("assets", [])],
            permissions=[Permission(p["key"], p["justification"]) for p in data.get("permissions", [])],
            core_size=data.get("coreSize", 0),
            tint=data.get("tint"),
            generator_version=data.get("generatorVersion", __version__),
        )


def assemble_seal(comparison, permissions, assets, tint=None):
    """Build the FairSeal for a successful comparison."""
    seal = FairSeal(
        assets=list(assets),
        permissions=list(permissions),
        core_size=comparison.core_size,
        tint=normalize_tint(tint),
    )
    logger.info(
        "sealed %s: core size %d, %d permissions, %d assets",
        comparison.bundle_root, seal.core_size, len(seal.permissions), len(seal.assets),
    )
    return seal
