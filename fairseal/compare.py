"""
Reproducible-build comparator.

Certifies that an untrusted application archive is byte-accountable to a
trusted build of the same bundle. Entries are paired, checksums compared,
and each mismatching pair is either allowlisted as known non-deterministic
compiler output, tolerated as a small difference in the main executable,
or rejected.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional
from xml.parsers.expat import ExpatError
import logging
import os
import plistlib
import subprocess
import tempfile

from .archive import open_source
from .diff import DIFF_EDIT_LIMIT, MAX_EDIT_LIMIT, edit_summary
from .errors import (
    ContentMismatch,
    DuplicateEntry,
    EntryCountMismatch,
    InvalidRootPath,
    MachOError,
    PathMismatch,
)
from .machofile import looks_like_macho

logger = logging.getLogger(__name__)

APP_SUFFIX = ".app"
PACKAGING_PREFIXES = ("Payload",)

# Compiled resources that differ between otherwise identical builds
ASSET_CATALOG_NAME = "Assets.car"
NIB_SUFFIX = ".nib"
STORYBOARD_SUFFIX = ".storyboardc"
CODE_SIGNATURE_DIR = "_CodeSignature"
CODE_SIGNATURE_NAMES = {
    "CodeResources",
    "CodeDirectory",
    "CodeRequirements",
    "CodeRequirements-1",
    "CodeSignature",
}


@dataclass
class CompareOptions:
    """Per-comparison settings.

    permitted_diffs and edit_limit are both bounded by MAX_EDIT_LIMIT; the
    diff of a mismatching entry searches up to the larger of the two.
    """
    permitted_diffs: int = 0
    expected_suffix: str = APP_SUFFIX
    pair_by: str = "path"
    stripper: Optional[Callable[[bytes], bytes]] = None
    edit_limit: int = DIFF_EDIT_LIMIT

    def __post_init__(self):
        if self.pair_by not in ("path", "position"):
            raise ValueError(f"pair_by must be 'path' or 'position', not {self.pair_by!r}")
        if not 0 <= self.permitted_diffs <= MAX_EDIT_LIMIT:
            raise ValueError(f"permitted_diffs must be between 0 and {MAX_EDIT_LIMIT}")
        if not 0 <= self.edit_limit <= MAX_EDIT_LIMIT:
            raise ValueError(f"edit_limit must be between 0 and {MAX_EDIT_LIMIT}")


# === VERDICTS ===
@dataclass(frozen=True)
class Identical:
    path: str


@dataclass(frozen=True)
class ToleratedDifference:
    """A mismatch accepted either by allowlist (category) or by edit count."""
    path: str
    count: Optional[int] = None
    category: Optional[str] = None


@dataclass(frozen=True)
class FatalMismatch:
    path: str
    reason: Exception

    def raise_error(self):
        raise self.reason


@dataclass
class ComparisonResult:
    bundle_root: str
    main_executable: Optional[str]
    core_size: int
    info_plist: Optional[dict] = None
    verdicts: list = field(default_factory=list)

    @property
    def tolerated(self):
        return [v for v in self.verdicts if isinstance(v, ToleratedDifference)]

    @property
    def identical_count(self):
        return sum(1 for v in self.verdicts if isinstance(v, Identical))


# === STRIPPERS ===
class CodesignStripper:
    """Strips signatures by running `codesign --remove-signature` on a temporary copy.

    Only available where Apple's codesign tool is installed.
    """

    def __init__(self, codesign="codesign", timeout=300):
        self.codesign = codesign
        self.timeout = timeout

    def __call__(self, data):
        with tempfile.TemporaryDirectory(prefix="fairseal-") as tmp:
            path = os.path.join(tmp, "binary")
            with open(path, "wb") as fh:
                fh.write(data)
            try:
                subprocess.run(
                    [self.codesign, "--remove-signature", path],
                    check=True, capture_output=True, timeout=self.timeout,
                )
            except subprocess.CalledProcessError as e:
                stderr = e.stderr.decode("utf-8", "replace").strip()
                raise MachOError(f"codesign failed to strip signature: {stderr}") from e
            with open(path, "rb") as fh:
                return fh.read()


# === PATH CLASSIFICATION ===
def _components(path):
    return [part for part in path.split("/") if part]

def nondeterministic_category(path):
    """Return the non-deterministic category for path, or None."""
    parts = _components(path)
    if not parts:
        return None
    name = parts[-1]
    if name == ASSET_CATALOG_NAME:
        return "asset-catalog"
    if name.endswith(NIB_SUFFIX):
        return "nib"
    if any(part.endswith(STORYBOARD_SUFFIX) for part in parts[:-1]):
        return "storyboard"
    if CODE_SIGNATURE_DIR in parts[:-1] or name in CODE_SIGNATURE_NAMES:
        return "code-signature"
    return None

def bundle_roots(entries):
    """Top-level path segments after dropping a leading packaging prefix."""
    roots = set()
    for entry in entries:
        parts = _components(entry.path)
        if parts and parts[0] in PACKAGING_PREFIXES:
            parts = parts[1:]
        if parts:
            roots.add(parts[0])
    return roots

def find_bundle_root(entries, expected_suffix=APP_SUFFIX):
    """Return the archive's only top-level segment, which must end in expected_suffix."""
    roots = bundle_roots(entries)
    if len(roots) != 1:
        raise InvalidRootPath(roots, expected_suffix)
    root = next(iter(roots))
    if not root.endswith(expected_suffix):
        raise InvalidRootPath(roots, expected_suffix)
    return root


# === BUNDLE LAYOUT ===
def _info_plist_paths(root):
    return [f"{root}/Contents/Info.plist", f"Payload/{root}/Info.plist"]

def _executable_paths(root, name):
    return [f"{root}/Contents/MacOS/{name}", f"Payload/{root}/{name}"]

def _parse_info_plist(entry):
    try:
        info = plistlib.loads(entry.read())
    except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
        logger.warning("cannot parse %s: %s", entry.path, e)
        return None
    return info if isinstance(info, dict) else None

def resolve_main_executable(entries_by_path, root, expected_suffix=APP_SUFFIX):
    """Return (main executable path or None, parsed Info.plist or None)."""
    info = None
    for path in _info_plist_paths(root):
        if path in entries_by_path:
            info = _parse_info_plist(entries_by_path[path])
            break

    bundle_name = root[:-len(expected_suffix)] if expected_suffix else root
    names = []
    if info and isinstance(info.get("CFBundleExecutable"), str):
        names.append(info["CFBundleExecutable"])
    names.append(bundle_name)

    for name in names:
        for path in _executable_paths(root, name):
            if path in entries_by_path:
                return path, info
    return None, info


# === PAIRING ===
def _index_by_path(entries, side):
    by_path = {}
    for entry in entries:
        if entry.path in by_path:
            raise DuplicateEntry(entry.path, side)
        by_path[entry.path] = entry
    return by_path

def _pair_entries(trusted, untrusted, pair_by):
    trusted_by_path = _index_by_path(trusted, "trusted")
    untrusted_by_path = _index_by_path(untrusted, "untrusted")

    if pair_by == "position":
        for trusted_entry, untrusted_entry in zip(trusted, untrusted):
            if trusted_entry.path != untrusted_entry.path:
                raise PathMismatch(trusted_entry.path, untrusted_entry.path)
            yield trusted_entry, untrusted_entry
        return

    for path in trusted_by_path:
        if path not in untrusted_by_path:
            raise PathMismatch(path, None)
    for path in untrusted_by_path:
        if path not in trusted_by_path:
            raise PathMismatch(None, path)

    for trusted_entry in trusted:
        yield trusted_entry, untrusted_by_path[trusted_entry.path]


def compare_entry(trusted, untrusted, is_main, options):
    """Return the ComparisonVerdict for one pair of entries with equal paths."""
    if trusted.checksum == untrusted.checksum and trusted.size == untrusted.size:
        return Identical(trusted.path)

    category = nondeterministic_category(trusted.path)
    if category is not None:
        logger.info("skipping non-deterministic %s: %s", category, trusted.path)
        return ToleratedDifference(trusted.path, category=category)

    trusted_data = trusted.read()
    untrusted_data = untrusted.read()

    if options.stripper is not None and looks_like_macho(trusted_data) and looks_like_macho(untrusted_data):
        logger.debug("stripping code signatures from %s", trusted.path)
        trusted_data = options.stripper(trusted_data)
        untrusted_data = options.stripper(untrusted_data)
        if trusted_data == untrusted_data:
            logger.info("%s differs only in its code signature", trusted.path)
            return ToleratedDifference(trusted.path, 0, category="code-signature")

    permitted = options.permitted_diffs if is_main else 0
    summary = edit_summary(trusted_data, untrusted_data, limit=max(options.edit_limit, permitted))
    logger.debug("%s: %d insertions, %d removals", trusted.path, summary.insertions, summary.removals)

    if not summary.capped and summary.total <= permitted:
        logger.info("tolerating %d changes in %s (permitted: %d)", summary.total, trusted.path, permitted)
        return ToleratedDifference(trusted.path, summary.total)

    return FatalMismatch(trusted.path, ContentMismatch(
        trusted.path, summary.insertions, summary.removals, permitted, capped=summary.capped))


def compare_archives(trusted_entries, untrusted_entries, options=None):
    """Compare trusted and untrusted archive entries.

    Returns a ComparisonResult carrying the main executable's size as
    core_size, or raises the first ReproducibilityError encountered.
    """
    options = options or CompareOptions()
    trusted_entries = list(trusted_entries)
    untrusted_entries = list(untrusted_entries)

    if len(trusted_entries) != len(untrusted_entries):
        raise EntryCountMismatch(len(trusted_entries), len(untrusted_entries))

    root = find_bundle_root(trusted_entries, options.expected_suffix)
    untrusted_root = find_bundle_root(untrusted_entries, options.expected_suffix)
    if untrusted_root != root:
        raise InvalidRootPath({root, untrusted_root}, options.expected_suffix)
    trusted_by_path = {entry.path: entry for entry in trusted_entries}
    main_executable, info = resolve_main_executable(trusted_by_path, root, options.expected_suffix)
    if main_executable is None:
        logger.warning("no main executable found in %s", root)

    result = ComparisonResult(root, main_executable, 0, info)
    for trusted, untrusted in _pair_entries(trusted_entries, untrusted_entries, options.pair_by):
        if trusted.is_dir and untrusted.is_dir:
            continue
        is_main = trusted.path == main_executable
        if is_main:
            result.core_size = trusted.size

        verdict = compare_entry(trusted, untrusted, is_main, options)
        if isinstance(verdict, FatalMismatch):
            verdict.raise_error()
        result.verdicts.append(verdict)

    logger.info(
        "compared %d entries in %s: %d identical, %d tolerated",
        len(trusted_entries), root, result.identical_count, len(result.tolerated),
    )
    return result


def compare_sources(trusted_path, untrusted_path, options=None):
    """Open two zip files or directories and compare their entries."""
    with open_source(trusted_path) as trusted, open_source(untrusted_path) as untrusted:
        return compare_archives(trusted.entries(), untrusted.entries(), options)
