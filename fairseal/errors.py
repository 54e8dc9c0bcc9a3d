"""
Exception classes for fairseal.

Structural errors describe a single binary and never affect the others;
policy and reproducibility errors stop a seal outright and are always
propagated to the caller.
"""


class FairsealError(Exception):
    """Base exception for all fairseal errors."""
    pass


# === STRUCTURAL (MACH-O) ERRORS ===
class MachOError(FairsealError):
    """Base exception for Mach-O parsing errors."""
    pass

class MachOParseError(MachOError):
    """Exception raised when parsing fails (short reads, bad offsets)."""
    pass

class MachOValidationError(MachOError):
    """Exception raised when validation fails."""
    pass

class MachOSecurityError(MachOError):
    """Exception raised when security limits are exceeded."""
    pass

class UnknownBinaryFormat(MachOError):
    """The data is neither a single-architecture nor a fat Mach-O."""
    pass

class BadMagicInSignature(MachOError):
    """The code signature superblob magic was incorrect."""
    pass

class UnsupportedFatBinary(MachOError):
    """A fat header declared no architectures."""
    pass

class SignatureReadingError(MachOError):
    """An embedded entitlements blob could not be decoded."""
    pass


# === POLICY ERRORS ===
class PolicyViolation(FairsealError):
    """Base exception for entitlement policy failures."""
    pass

class ForbiddenEntitlementError(PolicyViolation):
    def __init__(self, key):
        self.key = key
        super().__init__(f"Entitlement is forbidden: {key}")

class MissingJustificationError(PolicyViolation):
    def __init__(self, key, properties=()):
        self.key = key
        self.properties = tuple(properties)
        super().__init__(
            f"Entitlement {key} requires a usage description "
            f"(looked up: {', '.join(self.properties) or key})"
        )

class SandboxRequiredError(PolicyViolation):
    def __init__(self, key="com.apple.security.app-sandbox"):
        self.key = key
        super().__init__(f"Sandbox entitlement must be declared true: {key}")


# === REPRODUCIBILITY ERRORS ===
class ReproducibilityError(FairsealError):
    """A trusted and an untrusted artifact are not byte-accountable."""

    def __init__(self, message, path=None):
        self.path = path
        super().__init__(message)

class EntryCountMismatch(ReproducibilityError):
    def __init__(self, trusted_count, untrusted_count):
        self.trusted_count = trusted_count
        self.untrusted_count = untrusted_count
        super().__init__(
            f"Trusted and untrusted artifact content counts do not match "
            f"({trusted_count} vs. {untrusted_count})"
        )

class InvalidRootPath(ReproducibilityError):
    def __init__(self, root_paths, expected_suffix):
        self.root_paths = sorted(root_paths)
        self.expected_suffix = expected_suffix
        shown = ", ".join(self.root_paths) or "<none>"
        super().__init__(
            f"Invalid root path in archive: {shown} (expected exactly one ending in {expected_suffix})"
        )

class PathMismatch(ReproducibilityError):
    def __init__(self, trusted_path, untrusted_path):
        self.trusted_path = trusted_path
        self.untrusted_path = untrusted_path
        super().__init__(
            f"Trusted and untrusted artifact content paths do not match: "
            f"{trusted_path or '<missing>'} vs. {untrusted_path or '<missing>'}",
            path=trusted_path or untrusted_path,
        )

class DuplicateEntry(ReproducibilityError):
    def __init__(self, path, side):
        self.side = side
        super().__init__(f"Duplicate path in {side} artifact: {path}", path=path)

class ContentMismatch(ReproducibilityError):
    def __init__(self, path, insertions, removals, permitted, capped=False):
        self.insertions = insertions
        self.removals = removals
        self.permitted = permitted
        self.capped = capped
        total = insertions + removals
        qualifier = "at least " if capped else ""
        super().__init__(
            f"Trusted and untrusted artifact content mismatch at {path}: "
            f"{qualifier}{total} changes ({insertions} insertions and {removals} removals) "
            f"beyond permitted threshold: {permitted}",
            path=path,
        )

    @property
    def total(self):
        return self.insertions + self.removals


# === ARCHIVE / BUNDLE ERRORS ===
class ArchiveError(FairsealError):
    """An archive source could not be opened or read."""
    pass

class MissingInfoPlist(FairsealError):
    """The bundle's Info.plist could not be located or parsed."""
    pass
