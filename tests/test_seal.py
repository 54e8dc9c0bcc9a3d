from __future__ import annotations

import hashlib
import json

import pytest

from fairseal import __version__
from fairseal.compare import CompareOptions, compare_sources
from fairseal.entitlements import Permission, check_entitlements, usage_descriptions
from fairseal.machofile import BinaryReader, merge_entitlements, read_entitlements, strip_code_signature
from fairseal.seal import Asset, FairSeal, assemble_seal, normalize_tint, stage_assets

EXECUTABLE = "MyApp.app/Contents/MacOS/MyApp"
INFO_PLIST = "MyApp.app/Contents/Info.plist"


class TestTint:
    @pytest.mark.parametrize("tint,expected", [
        ("#ff8800", "FF8800"),
        ("ff8800cc", "FF8800CC"),
        (" #AbCdEf ", "ABCDEF"),
        (None, None),
        ("", None),
    ])
    def test_normalize(self, tint, expected):
        assert normalize_tint(tint) == expected

    @pytest.mark.parametrize("tint", ["#fff", "red", "#GG0000", "#ff880"])
    def test_invalid(self, tint):
        with pytest.raises(ValueError):
            normalize_tint(tint)


class TestAssets:
    def test_from_file(self, tmp_path):
        path = tmp_path / "MyApp-macOS.zip"
        path.write_bytes(b"release bytes")
        asset = Asset.from_file(str(path), "https://example.org/download/MyApp-macOS.zip")
        assert asset.size == 13
        assert asset.sha256 == hashlib.sha256(b"release bytes").hexdigest()

    def test_stage_assets_uses_artifact_for_matching_name(self, tmp_path):
        staging = tmp_path / "staging"
        staging.mkdir()
        (staging / "MyApp-macOS.zip").write_bytes(b"locally built copy")
        (staging / "MyApp.png").write_bytes(b"\x89PNG icon")
        artifact = tmp_path / "downloaded.zip"
        artifact.write_bytes(b"downloaded untrusted artifact")

        url = "https://example.org/releases/download/1.0/MyApp-macOS.zip"
        assets = stage_assets(url, [str(staging)], str(artifact))

        assert [a.url for a in assets] == [url, "https://example.org/releases/download/1.0/MyApp.png"]
        assert assets[0].sha256 == hashlib.sha256(b"downloaded untrusted artifact").hexdigest()
        assert assets[1].size == len(b"\x89PNG icon")

    def test_stage_assets_without_staging(self, tmp_path):
        artifact = tmp_path / "MyApp.zip"
        artifact.write_bytes(b"zip")
        assets = stage_assets("https://example.org/MyApp.zip", [], str(artifact))
        assert assets == [Asset("https://example.org/MyApp.zip", 3, hashlib.sha256(b"zip").hexdigest())]


class TestFairSeal:
    def test_to_json_is_stable(self):
        seal = FairSeal(
            assets=[Asset("https://example.org/a.zip", 10, "ab" * 32)],
            permissions=[Permission("com.apple.security.network.client", "Sync")],
            core_size=1234,
            tint="FF0000",
        )
        data = json.loads(seal.to_json())
        assert data == {
            "assets": [{"url": "https://example.org/a.zip", "size": 10, "sha256": "ab" * 32}],
            "permissions": [{"key": "com.apple.security.network.client", "justification": "Sync"}],
            "coreSize": 1234,
            "tint": "FF0000",
            "generatorVersion": __version__,
        }
        assert seal.to_json() == FairSeal.from_dict(data).to_json()

    def test_tint_is_optional(self):
        assert "tint" not in FairSeal(core_size=1).to_dict()


class TestSealPipeline:
    def test_resigned_release_is_sealed(self, make_zip, make_macho, make_info_plist):
        network = "com.apple.security.network.client"
        entitlements = {"com.apple.security.app-sandbox": True, network: True}
        info = make_info_plist(usage={network: "Fetches the app catalog"})
        trusted = make_zip("trusted.zip", {
            EXECUTABLE: make_macho(entitlements, total_size=500000, cd_hash=b"\xaa" * 32),
            INFO_PLIST: info,
        })
        untrusted = make_zip("untrusted.zip", {
            EXECUTABLE: make_macho(entitlements, total_size=500000, cd_hash=b"\xaa" * 29 + b"\xbb\xcc\xdd"),
            INFO_PLIST: info,
        })

        result = compare_sources(str(trusted), str(untrusted), CompareOptions(permitted_diffs=10, stripper=strip_code_signature))
        binary = make_macho(entitlements, total_size=500000, cd_hash=b"\xaa" * 32)
        declared = merge_entitlements(read_entitlements(BinaryReader(binary)))
        permissions = check_entitlements(declared, usage_descriptions(result.info_plist))
        assets = stage_assets("https://example.org/MyApp.zip", [], str(untrusted))
        seal = assemble_seal(result, permissions, assets, tint="#00aaff")

        assert seal.core_size == 500000
        assert seal.tint == "00AAFF"
        assert seal.permissions == [Permission(network, "Fetches the app catalog")]
        assert seal.assets[0].size == untrusted.stat().st_size
