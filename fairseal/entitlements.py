"""
Entitlement taxonomy and policy check.

A closed, read-only table of known entitlement keys. Each key carries
the risk categories it falls under and a justification policy:

- forbidden: the key may never be declared
- unrestricted: the key may be declared without explanation
- requires justification: a non-blank usage description must be supplied
  under one of the listed property names

Keys that are not in the table are reported as UnrecognizedEntitlement
and take no part in the policy check.
"""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
import logging

from .errors import ForbiddenEntitlementError, MissingJustificationError, SandboxRequiredError

logger = logging.getLogger(__name__)

SECURITY_PREFIX = "com.apple.security."
TEMPORARY_EXCEPTION_PREFIX = SECURITY_PREFIX + "temporary-exception."
DEVELOPER_PREFIX = "com.apple.developer."

APP_SANDBOX = SECURITY_PREFIX + "app-sandbox"
APPLICATION_GROUPS = SECURITY_PREFIX + "application-groups"

USAGE_DESCRIPTIONS_KEY = "FairUsage"


class Category(Enum):
    PREREQUISITE = "prerequisite"
    HARMLESS = "harmless"
    ASSETS = "assets"
    READ_FILE = "readFile"
    WRITE_FILE = "writeFile"
    NETWORK = "network"
    DEVICE = "device"
    MISC = "misc"
    PERSONAL_INFORMATION = "personal_information"
    VOLATILE = "volatile"


@dataclass(frozen=True)
class JustificationPolicy:
    kind: str
    properties: tuple = ()

    @property
    def is_forbidden(self):
        return self.kind == "forbidden"

    @property
    def is_unrestricted(self):
        return self.kind == "unrestricted"

    @property
    def requires_justification(self):
        return self.kind == "requires"


FORBIDDEN = JustificationPolicy("forbidden")
UNRESTRICTED = JustificationPolicy("unrestricted")

def requires_justification(*properties):
    return JustificationPolicy("requires", tuple(properties))


@dataclass(frozen=True)
class TaxonomyEntry:
    key: str
    categories: frozenset
    policy: JustificationPolicy

    @property
    def is_temporary_exception(self):
        return self.key.startswith(TEMPORARY_EXCEPTION_PREFIX)


@dataclass(frozen=True)
class UnrecognizedEntitlement:
    key: str


@dataclass(frozen=True)
class Permission:
    key: str
    justification: str

    def to_dict(self):
        return {"key": self.key, "justification": self.justification}


# === TAXONOMY TABLE ===
_READ = (Category.READ_FILE,)
_READ_WRITE = (Category.READ_FILE, Category.WRITE_FILE)
_ASSETS = (Category.ASSETS, Category.READ_FILE, Category.WRITE_FILE)

_SECURITY_KEYS = [
    ("app-sandbox", (Category.PREREQUISITE,), UNRESTRICTED),
    ("cs.allow-jit", (Category.HARMLESS,), UNRESTRICTED),
    ("cs.debugger", (Category.VOLATILE,), None),
    ("cs.allow-unsigned-executable-memory", (Category.VOLATILE,), FORBIDDEN),
    ("cs.allow-dyld-environment-variables", (Category.VOLATILE,), FORBIDDEN),
    ("cs.disable-library-validation", (Category.VOLATILE,), UNRESTRICTED),
    ("cs.disable-executable-page-protection", (Category.VOLATILE,), FORBIDDEN),
    ("network.client", (Category.NETWORK,), None),
    ("network.server", (Category.NETWORK,), None),
    ("files.all", _READ_WRITE, FORBIDDEN),
    ("files.user-selected.read-only", _READ, None),
    ("files.user-selected.read-write", _READ_WRITE, None),
    ("files.user-selected.executable", _READ_WRITE, None),
    ("files.downloads.read-only", _READ, None),
    ("files.downloads.read-write", _READ_WRITE, None),
    ("files.bookmarks.app-scope", (Category.HARMLESS,), None),
    ("files.bookmarks.document-scope", (Category.HARMLESS,), None),
    ("assets.pictures.read-only", _ASSETS, None),
    ("assets.pictures.read-write", _ASSETS, None),
    ("assets.music.read-only", _ASSETS, None),
    ("assets.music.read-write", _ASSETS, None),
    ("assets.movies.read-only", _ASSETS, None),
    ("assets.movies.read-write", _ASSETS, None),
    ("personal-information.location", (Category.PERSONAL_INFORMATION,), None),
    ("personal-information.addressbook", (Category.PERSONAL_INFORMATION,), None),
    ("personal-information.calendars", (Category.PERSONAL_INFORMATION,), None),
    ("print", (Category.DEVICE,), None),
    ("device.camera", (Category.DEVICE,), None),
    ("device.microphone", (Category.DEVICE,), None),
    ("device.usb", (Category.DEVICE,), None),
    ("device.serial", (Category.DEVICE,), None),
    ("device.firewire", (Category.DEVICE,), None),
    ("device.bluetooth", (Category.DEVICE,), None),
    ("device.audio-input", (Category.DEVICE,), None),
    ("device.audio-video-bridging", (Category.DEVICE,), None),
    ("scripting-targets", (Category.HARMLESS,), None),
    ("application-groups", (Category.HARMLESS,), None),
    ("get-task-allow", (), None),
    ("temporary-exception.files.home-relative-path.read-only", _READ, None),
    ("temporary-exception.files.home-relative-path.read-write", _READ_WRITE, None),
    ("temporary-exception.files.absolute-path.read-only", _READ, None),
    ("temporary-exception.files.absolute-path.read-write", _READ_WRITE, None),
    ("temporary-exception.apple-events", (Category.MISC,), None),
    ("temporary-exception.audio-unit-host", (Category.MISC,), None),
    ("temporary-exception.iokit-user-client-class", (Category.MISC,), None),
    ("temporary-exception.mach-lookup.global-name", (Category.MISC,), None),
    ("temporary-exception.mach-register.global-name", (Category.MISC,), None),
    ("temporary-exception.shared-preference.read-only", _READ_WRITE, None),
    ("temporary-exception.shared-preference.read-write", _READ_WRITE, None),
]

_DEVELOPER_KEYS = [
    "mail-client",
    "web-browser",
    "authentication-services.autofill-credential-provider",
    "applesignin",
    "contacts.notes",
    "ClassKit-environment",
    "automatic-assessment-configuration",
    "game-center",
    "healthkit",
    "healthkit.access",
    "homekit",
    "icloud-container-development-container-identifiers",
    "icloud-container-environment",
    "icloud-container-identifiers",
    "icloud-services",
    "ubiquity-kvstore-identifier",
    "networking.networkextension",
    "networking.vpn.api",
    "networking.wifi-info",
    "networking.multipath",
    "networking.HotspotConfiguration",
    "default-data-protection",
    "siri",
    "pass-type-identifiers",
    "in-app-payments",
    "nfc.readersession.formats",
    "associated-domains",
    "maps",
    "driverkit.transport.pci",
]

_OTHER_KEYS = [
    "inter-app-audio",
    "aps-environment",
    "keychain-access-groups",
    "com.apple.external-accessory.wireless-configuration",
]


def _build_taxonomy():
    table = {}

    def add(key, categories=(), policy=None):
        table[key] = TaxonomyEntry(key, frozenset(categories), policy or requires_justification(key))

    for name, categories, policy in _SECURITY_KEYS:
        add(SECURITY_PREFIX + name, categories, policy)
    for name in _DEVELOPER_KEYS:
        add(DEVELOPER_PREFIX + name)
    for key in _OTHER_KEYS:
        add(key)

    return MappingProxyType(table)


TAXONOMY = _build_taxonomy()


# === LOOKUPS ===
def lookup(key):
    """Return the TaxonomyEntry for key, or an UnrecognizedEntitlement."""
    return TAXONOMY.get(key) or UnrecognizedEntitlement(key)

def is_declared(value):
    """An entitlement counts as declared unless absent or explicitly False."""
    return value is not None and value is not False

def declared_keys(entitlements):
    return sorted(key for key, value in entitlements.items() if is_declared(value))

def is_sandboxed(entitlements):
    return entitlements.get(APP_SANDBOX) is True

def app_groups(entitlements):
    groups = entitlements.get(APPLICATION_GROUPS)
    if not isinstance(groups, list):
        return []
    return [group for group in groups if isinstance(group, str)]

def categories(entitlements):
    """Map each Category to the sorted declared keys that fall under it."""
    by_category = {}
    for key in declared_keys(entitlements):
        entry = lookup(key)
        if isinstance(entry, UnrecognizedEntitlement):
            continue
        for category in entry.categories:
            by_category.setdefault(category, []).append(key)
    return by_category

def usage_descriptions(info):
    """Read the usage justification mapping from a parsed Info.plist."""
    usage = (info or {}).get(USAGE_DESCRIPTIONS_KEY)
    if not isinstance(usage, dict):
        return {}
    return {key: value for key, value in usage.items() if isinstance(value, str)}


def _justification(usage, properties):
    for name in properties:
        value = usage.get(name)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


# === POLICY CHECK ===
def check_entitlements(entitlements, usage=None, require_sandbox=True):
    """Validate declared entitlements and return the justified Permission list.

    Raises SandboxRequiredError when the sandbox is required but not declared
    true, ForbiddenEntitlementError for any declared forbidden key, and
    MissingJustificationError for a key whose usage description is absent or
    blank. Unrestricted and unrecognized keys are not listed.
    """
    usage = usage or {}

    if require_sandbox and not is_sandboxed(entitlements):
        raise SandboxRequiredError(APP_SANDBOX)

    keys = declared_keys(entitlements)
    entries = [lookup(key) for key in keys]

    for entry in entries:
        if isinstance(entry, TaxonomyEntry) and entry.policy.is_forbidden:
            raise ForbiddenEntitlementError(entry.key)

    permissions = []
    for entry in entries:
        if isinstance(entry, UnrecognizedEntitlement):
            logger.info("ignoring unrecognized entitlement %s", entry.key)
            continue
        if entry.policy.is_unrestricted:
            continue
        justification = _justification(usage, entry.policy.properties)
        if justification is None:
            raise MissingJustificationError(entry.key, entry.policy.properties)
        permissions.append(Permission(entry.key, justification))

    return permissions
