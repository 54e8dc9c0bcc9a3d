"""
fairseal - reproducible-build verification for macOS and iOS app archives

fairseal reads the entitlements embedded in a Mach-O code signature
straight from the binary, checks them against a closed entitlement
taxonomy, and certifies that a distributed app archive is byte-accountable
to a trusted build before issuing a seal record for it.

License: MIT
"""

__version__ = "2025.10.1"
__license__ = "MIT"

from .compare import CompareOptions, ComparisonResult, compare_archives, compare_sources
from .entitlements import TAXONOMY, Permission, check_entitlements, lookup
from .machofile import Entitlements, MachOBinary, read_entitlements, strip_code_signature
from .seal import Asset, FairSeal, assemble_seal, stage_assets

__all__ = [
    "Asset",
    "CompareOptions",
    "ComparisonResult",
    "Entitlements",
    "FairSeal",
    "MachOBinary",
    "Permission",
    "TAXONOMY",
    "assemble_seal",
    "check_entitlements",
    "compare_archives",
    "compare_sources",
    "lookup",
    "read_entitlements",
    "stage_assets",
    "strip_code_signature",
]
