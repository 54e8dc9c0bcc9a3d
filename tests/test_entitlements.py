from __future__ import annotations

import pytest

from fairseal.entitlements import (
    APP_SANDBOX,
    FORBIDDEN,
    TAXONOMY,
    UNRESTRICTED,
    Category,
    Permission,
    TaxonomyEntry,
    UnrecognizedEntitlement,
    app_groups,
    categories,
    check_entitlements,
    is_sandboxed,
    lookup,
    usage_descriptions,
)
from fairseal.errors import ForbiddenEntitlementError, MissingJustificationError, SandboxRequiredError
from fairseal.machofile import Entitlements

NETWORK_CLIENT = "com.apple.security.network.client"
FILES_ALL = "com.apple.security.files.all"
CAMERA = "com.apple.security.device.camera"


class TestTaxonomy:
    def test_table_is_read_only(self):
        with pytest.raises(TypeError):
            TAXONOMY["com.example.new"] = None

    def test_policies(self):
        assert lookup(APP_SANDBOX).policy is UNRESTRICTED
        assert lookup("com.apple.security.cs.allow-jit").policy is UNRESTRICTED
        assert lookup("com.apple.security.cs.disable-library-validation").policy is UNRESTRICTED
        for key in (
            FILES_ALL,
            "com.apple.security.cs.allow-unsigned-executable-memory",
            "com.apple.security.cs.allow-dyld-environment-variables",
            "com.apple.security.cs.disable-executable-page-protection",
        ):
            assert lookup(key).policy is FORBIDDEN

    def test_justified_key_looks_up_its_own_name(self):
        entry = lookup(NETWORK_CLIENT)
        assert entry.policy.requires_justification
        assert entry.policy.properties == (NETWORK_CLIENT,)

    def test_categories(self):
        assert lookup(NETWORK_CLIENT).categories == frozenset({Category.NETWORK})
        assert lookup("com.apple.security.assets.music.read-only").categories == frozenset(
            {Category.ASSETS, Category.READ_FILE, Category.WRITE_FILE})
        assert lookup("com.apple.security.get-task-allow").categories == frozenset()

    def test_developer_and_unprefixed_keys(self):
        assert isinstance(lookup("com.apple.developer.healthkit"), TaxonomyEntry)
        assert isinstance(lookup("aps-environment"), TaxonomyEntry)

    def test_temporary_exception(self):
        assert lookup("com.apple.security.temporary-exception.apple-events").is_temporary_exception
        assert not lookup(NETWORK_CLIENT).is_temporary_exception

    def test_unknown_key(self):
        assert lookup("com.example.custom") == UnrecognizedEntitlement("com.example.custom")


class TestHelpers:
    def test_is_sandboxed(self):
        assert is_sandboxed(Entitlements({APP_SANDBOX: True}))
        assert not is_sandboxed(Entitlements({APP_SANDBOX: False}))
        assert not is_sandboxed({})

    def test_app_groups(self):
        groups = {"com.apple.security.application-groups": ["group.a", 7, "group.b"]}
        assert app_groups(groups) == ["group.a", "group.b"]
        assert app_groups({}) == []

    def test_categories_skip_false_and_unknown(self):
        declared = {APP_SANDBOX: True, NETWORK_CLIENT: True, CAMERA: False, "com.example.x": True}
        assert categories(declared) == {
            Category.PREREQUISITE: [APP_SANDBOX],
            Category.NETWORK: [NETWORK_CLIENT],
        }

    def test_usage_descriptions(self):
        info = {"FairUsage": {NETWORK_CLIENT: "Downloads feeds", "bad": 3}}
        assert usage_descriptions(info) == {NETWORK_CLIENT: "Downloads feeds"}
        assert usage_descriptions({"FairUsage": "nope"}) == {}
        assert usage_descriptions(None) == {}


class TestCheckEntitlements:
    def test_sandbox_only_needs_no_permissions(self):
        assert check_entitlements({APP_SANDBOX: True}) == []

    def test_sandbox_required(self):
        with pytest.raises(SandboxRequiredError):
            check_entitlements({NETWORK_CLIENT: True}, {NETWORK_CLIENT: "Sync"})
        with pytest.raises(SandboxRequiredError):
            check_entitlements({APP_SANDBOX: False})

    def test_sandbox_optional(self):
        assert check_entitlements({}, require_sandbox=False) == []

    def test_justified_permissions_are_listed(self):
        declared = {APP_SANDBOX: True, NETWORK_CLIENT: True, CAMERA: True}
        usage = {NETWORK_CLIENT: "Downloads podcasts", CAMERA: "  Scans QR codes  "}
        assert check_entitlements(declared, usage) == [
            Permission(CAMERA, "Scans QR codes"),
            Permission(NETWORK_CLIENT, "Downloads podcasts"),
        ]

    def test_forbidden_rejected_despite_justification(self):
        declared = {APP_SANDBOX: True, FILES_ALL: True, NETWORK_CLIENT: True}
        with pytest.raises(ForbiddenEntitlementError) as excinfo:
            check_entitlements(declared, {FILES_ALL: "I really need it"})
        assert excinfo.value.key == FILES_ALL

    def test_forbidden_key_set_false_is_not_declared(self):
        assert check_entitlements({APP_SANDBOX: True, FILES_ALL: False}) == []

    @pytest.mark.parametrize("usage", [{}, {NETWORK_CLIENT: ""}, {NETWORK_CLIENT: " \t\n"}, {NETWORK_CLIENT: 42}])
    def test_missing_or_blank_justification(self, usage):
        with pytest.raises(MissingJustificationError) as excinfo:
            check_entitlements({APP_SANDBOX: True, NETWORK_CLIENT: True}, usage)
        assert excinfo.value.key == NETWORK_CLIENT

    def test_unrecognized_keys_are_ignored(self):
        declared = {APP_SANDBOX: True, "com.example.custom": True}
        assert check_entitlements(declared) == []

    def test_array_valued_entitlement_needs_justification(self):
        declared = {APP_SANDBOX: True, "com.apple.security.application-groups": ["group.a"]}
        with pytest.raises(MissingJustificationError):
            check_entitlements(declared)
        permissions = check_entitlements(declared, {"com.apple.security.application-groups": "Shares data"})
        assert [p.key for p in permissions] == ["com.apple.security.application-groups"]
