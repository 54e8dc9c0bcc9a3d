"""Shared fixtures: synthetic Mach-O binaries and app archives."""

from __future__ import annotations

import plistlib
import struct
import zipfile

import pytest

MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF
LC_SYMTAB = 0x2
LC_CODE_SIGNATURE = 0x1D
CSMAGIC_EMBEDDED_SIGNATURE = 0xFADE0CC0
CSMAGIC_CODEDIRECTORY = 0xFADE0C02
CSMAGIC_EMBEDDED_ENTITLEMENTS = 0xFADE7171

CPU_TYPE_ARM64 = 0x0100000C
CPU_TYPE_X86_64 = 0x01000007


def build_signature(entitlements=None, cd_hash=b"\x11" * 32, raw_entitlements=None, magic=CSMAGIC_EMBEDDED_SIGNATURE):
    """Build a big-endian code signature superblob."""
    blobs = [(0, struct.pack(">II", CSMAGIC_CODEDIRECTORY, 8 + len(cd_hash)) + cd_hash)]
    payload = raw_entitlements
    if payload is None and entitlements is not None:
        payload = plistlib.dumps(entitlements)
    if payload is not None:
        blobs.append((5, struct.pack(">II", CSMAGIC_EMBEDDED_ENTITLEMENTS, 8 + len(payload)) + payload))

    header_size = 12 + 8 * len(blobs)
    index = b""
    body = b""
    for blob_type, blob in blobs:
        index += struct.pack(">II", blob_type, header_size + len(body))
        body += blob
    return struct.pack(">III", magic, header_size + len(body), len(blobs)) + index + body


def build_macho(
    entitlements=None,
    signed=None,
    bits=64,
    byte_order="<",
    cputype=CPU_TYPE_ARM64,
    code=b"\x1f\x20\x03\xd5" * 16,
    total_size=None,
    cd_hash=b"\x11" * 32,
    raw_entitlements=None,
    signature_magic=CSMAGIC_EMBEDDED_SIGNATURE,
):
    """Build a thin Mach-O: header, an LC_SYMTAB, an optional LC_CODE_SIGNATURE, code, signature.

    signed defaults to True when entitlements are given. total_size pads the
    code section so the whole binary has exactly that many bytes.
    """
    if signed is None:
        signed = entitlements is not None or raw_entitlements is not None
    signature = build_signature(entitlements, cd_hash, raw_entitlements, signature_magic) if signed else b""

    header_size = 32 if bits == 64 else 28
    commands_size = 24 + (16 if signed else 0)
    if total_size is not None:
        pad = total_size - header_size - commands_size - len(signature)
        code = (code * (pad // len(code) + 1))[:pad]
    signature_offset = header_size + commands_size + len(code)

    fields = [MH_MAGIC_64 if bits == 64 else MH_MAGIC, cputype, 0, 2, 2 if signed else 1, commands_size, 0]
    fmt = byte_order + ("IiiIIIII" if bits == 64 else "IiiIIII")
    if bits == 64:
        fields.append(0)
    data = struct.pack(fmt, *fields)
    data += struct.pack(byte_order + "IIIIII", LC_SYMTAB, 24, 0, 0, 0, 0)
    if signed:
        data += struct.pack(byte_order + "IIII", LC_CODE_SIGNATURE, 16, signature_offset, len(signature))
    return data + code + signature


def build_fat(slices, magic64=False):
    """Build a universal binary from (cputype, slice bytes) pairs."""
    arch_size = 32 if magic64 else 20
    offset = 8 + arch_size * len(slices)
    header = struct.pack(">II", FAT_MAGIC_64 if magic64 else FAT_MAGIC, len(slices))
    body = b""
    for cputype, data in slices:
        offset += -offset % 16
        body += b"\x00" * (offset - 8 - arch_size * len(slices) - len(body))
        if magic64:
            header += struct.pack(">iiQQII", cputype, 0, offset, len(data), 4, 0)
        else:
            header += struct.pack(">iiIII", cputype, 0, offset, len(data), 4)
        body += data
        offset += len(data)
    return header + body


def build_zip(path, files, directories=()):
    """Write files ({path: bytes}) in the given order to a zip at path."""
    with zipfile.ZipFile(path, "w", zipfile.ZIP_DEFLATED) as zf:
        for directory in directories:
            zf.writestr(zipfile.ZipInfo(directory), b"")
        for name, data in files.items():
            zf.writestr(name, data)
    return path


def info_plist(executable="MyApp", usage=None, **extra):
    info = {"CFBundleExecutable": executable, "CFBundleIdentifier": "app.MyApp"}
    if usage is not None:
        info["FairUsage"] = usage
    info.update(extra)
    return plistlib.dumps(info)


@pytest.fixture
def make_macho():
    return build_macho


@pytest.fixture
def make_fat():
    return build_fat


@pytest.fixture
def make_signature():
    return build_signature


@pytest.fixture
def make_zip(tmp_path):
    def _make_zip(name, files, directories=()):
        return build_zip(tmp_path / name, files, directories)
    return _make_zip


@pytest.fixture
def make_info_plist():
    return info_plist
