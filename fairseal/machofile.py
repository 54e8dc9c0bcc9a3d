"""fairseal.machofile, Mach-O entitlements reader

Reads the entitlements that a code signature embeds inside a compiled
Mach-O executable, straight from the binary layout rather than from any
side-car metadata. Single-architecture (32/64-bit, either byte order) and
fat/universal containers (FAT_MAGIC and FAT_MAGIC_64) are supported.

The basic structures and constants are taken from the Mach-O header files
(loader.h, fat.h) and the code signing blob layout (cs_blobs.h).

Reference/Documentation links:
- https://opensource.apple.com/source/xnu/xnu-2050.18.24/EXTERNAL_HEADERS/mach-o/loader.h
- https://github.com/apple-oss-distributions/xnu/blob/main/osfmk/kern/cs_blobs.h
- https://github.com/aidansteele/osx-abi-macho-file-format-reference
"""

from dataclasses import dataclass
from typing import Optional
from collections.abc import Mapping
from xml.parsers.expat import ExpatError
import logging
import os
import plistlib
import struct

from .errors import (
    BadMagicInSignature,
    MachOError,
    MachOParseError,
    MachOSecurityError,
    MachOValidationError,
    SignatureReadingError,
    UnknownBinaryFormat,
    UnsupportedFatBinary,
)

logger = logging.getLogger(__name__)


# === SAFETY CONSTANTS ===
MAX_FILE_SIZE = 1024 * 1024 * 1024  # 1GB limit
MAX_LOAD_COMMANDS = 10000  # Reasonable upper limit for load commands
MAX_FAT_ARCHES = 50  # Reasonable upper limit for universal slices
MAX_SUPERBLOB_ENTRIES = 100  # Reasonable upper limit for signature blobs
MAX_ENTITLEMENTS_SIZE = 1024 * 1024  # 1MB limit
MAX_FAT_DEPTH = 1  # slices of a fat binary may not themselves be fat
MIN_MACHO_SIZE = 28  # Minimum valid Mach-O file size


# === MACH-O CONSTANTS ===
# Record formats (byte order prefix is added by the reader)
MACHO_HEADER_FORMAT_32 = "IiiIIII"
MACHO_HEADER_FORMAT_64 = "IiiIIIII"
FAT_HEADER_FORMAT = "II"
FAT_ARCH_FORMAT = "iiIII"
FAT_ARCH_64_FORMAT = "iiQQII"
LOAD_COMMAND_FORMAT = "II"
CODE_SIGNATURE_FORMAT = "II"
SUPERBLOB_FORMAT = "III"
BLOB_INDEX_FORMAT = "II"

MH_MAGIC = 0xFEEDFACE  # 32 bit Mach-O, native byte order
MH_CIGAM = 0xCEFAEDFE  # 32 bit Mach-O, reversed byte order
MH_MAGIC_64 = 0xFEEDFACF  # 64 bit Mach-O, native byte order
MH_CIGAM_64 = 0xCFFAEDFE  # 64 bit Mach-O, reversed byte order

MACHO_MAGICS = {MH_MAGIC, MH_MAGIC_64}

# Universal binary headers are always big endian
FAT_MAGIC = 0xCAFEBABE
FAT_MAGIC_64 = 0xCAFEBABF

FAT_MAGICS = {FAT_MAGIC, FAT_MAGIC_64}

LC_CODE_SIGNATURE = 0x1D

# Code signing blobs are always big endian
CSMAGIC_EMBEDDED_SIGNATURE = 0xFADE0CC0
CSMAGIC_EMBEDDED_ENTITLEMENTS = 0xFADE7171
CSMAGIC_EMBEDDED_DER_ENTITLEMENTS = 0xFADE7172
CSMAGIC_CODEDIRECTORY = 0xFADE0C02

CSSLOT_CODEDIRECTORY = 0
CSSLOT_ENTITLEMENTS = 5
CSSLOT_DER_ENTITLEMENTS = 7

CPU_ARCH_ABI64 = 0x01000000

CPU_TYPE_X86 = 0x7
CPU_TYPE_X86_64 = CPU_TYPE_X86 | CPU_ARCH_ABI64
CPU_TYPE_ARM = 0xC
CPU_TYPE_ARM64 = CPU_TYPE_ARM | CPU_ARCH_ABI64
CPU_TYPE_ARM64_32 = CPU_TYPE_ARM | 0x02000000
CPU_TYPE_PPC = 0x12
CPU_TYPE_PPC64 = CPU_TYPE_PPC | CPU_ARCH_ABI64

CPU_TYPE_MAP = {
    CPU_TYPE_X86: "i386",
    CPU_TYPE_X86_64: "x86_64",
    CPU_TYPE_ARM: "arm",
    CPU_TYPE_ARM64: "arm64",
    CPU_TYPE_ARM64_32: "arm64_32",
    CPU_TYPE_PPC: "ppc",
    CPU_TYPE_PPC64: "ppc64",
}


# === HELPER FUNCTIONS ===
def _validate_file_path(file_path):
    """Validate file path and return absolute path."""
    if not file_path:
        raise ValueError("File path cannot be empty")

    abs_path = os.path.abspath(file_path)
    if not os.path.exists(abs_path):
        raise FileNotFoundError(f"File not found: {abs_path}")

    return abs_path

def _validate_file_size(file_size):
    """Validate file size against security limits."""
    if file_size < MIN_MACHO_SIZE:
        raise MachOValidationError(f"File too small to be valid Mach-O: {file_size} bytes")

    if file_size > MAX_FILE_SIZE:
        raise MachOSecurityError(f"File too large: {file_size} bytes (limit: {MAX_FILE_SIZE})")

def probe_byte_order(data):
    """Return the struct byte order prefix implied by the magic at the start of data.

    Thin and fat headers are probed against both byte orders; anything that
    is not a thin Mach-O header reads as big endian, which is the order of
    fat headers and code signature blobs.
    """
    if len(data) < 4:
        return ">"
    if struct.unpack_from("<I", data)[0] in MACHO_MAGICS:
        return "<"
    return ">"

def arch_name(cputype, cpusubtype=0):
    """Get architecture name from CPU type and subtype."""
    base_name = CPU_TYPE_MAP.get(cputype, f"cpu_{cputype:#x}")
    if cputype == CPU_TYPE_ARM64 and (cpusubtype & 0x00FFFFFF) == 2:
        return "arm64e"
    return base_name


# === BYTE READER ===
class BinaryReader:
    """A seekable, endian-aware cursor over an immutable byte range.

    The reader is a window (start, length) onto a shared backing buffer;
    `view` hands out sub-windows without copying. Offsets are relative to
    the start of the window. Readers are stateful and must not be shared
    between concurrent parses.
    """

    def __init__(self, data, start=0, length=None, byte_order=None):
        backing = data if isinstance(data, memoryview) else memoryview(data)
        if length is None:
            length = len(backing) - start
        if start < 0 or length < 0 or start + length > len(backing):
            raise MachOParseError(
                f"Invalid view: start={start}, length={length}, size={len(backing)}"
            )
        self._buf = backing[start:start + length]
        self._offset = 0
        self.byte_order = byte_order or probe_byte_order(self._buf)

    def __len__(self):
        return len(self._buf)

    def tell(self):
        return self._offset

    def seek(self, offset):
        if offset < 0 or offset > len(self._buf):
            raise MachOParseError(
                f"Seek out of range: offset={offset}, size={len(self._buf)}"
            )
        self._offset = offset

    def skip(self, count):
        self.seek(self._offset + count)

    def read(self, fmt, data_name="data"):
        """Read a struct record in the reader's byte order."""
        size = struct.calcsize(self.byte_order + fmt)
        if self._offset + size > len(self._buf):
            raise MachOParseError(
                f"Insufficient {data_name}: expected {size} bytes at offset {self._offset}, "
                f"got {max(len(self._buf) - self._offset, 0)}"
            )
        values = struct.unpack_from(self.byte_order + fmt, self._buf, self._offset)
        self._offset += size
        return values

    def read_uint32(self):
        return self.read("I", "uint32")[0]

    def read_int32(self):
        return self.read("i", "int32")[0]

    def read_uint64(self):
        return self.read("Q", "uint64")[0]

    def read_bytes(self, count):
        if count < 0 or self._offset + count > len(self._buf):
            raise MachOParseError(
                f"Insufficient data: expected {count} bytes at offset {self._offset}"
            )
        data = self._buf[self._offset:self._offset + count].tobytes()
        self._offset += count
        return data

    def peek_uint32(self, offset=0, byte_order=None):
        if offset + 4 > len(self._buf):
            raise MachOParseError(f"Insufficient data for magic at offset {offset}")
        return struct.unpack_from((byte_order or self.byte_order) + "I", self._buf, offset)[0]

    def view(self, start, length, byte_order=None):
        """Return a reader over [start, start+length) of this window, sharing the buffer."""
        if start < 0 or length < 0 or start + length > len(self._buf):
            raise MachOParseError(
                f"Range out of bounds: start={start}, length={length}, size={len(self._buf)}"
            )
        return BinaryReader(self._buf, start, length, byte_order)

    def with_byte_order(self, byte_order):
        """Return a reader over the same window and position with another byte order."""
        reader = BinaryReader(self._buf, 0, len(self._buf), byte_order)
        reader._offset = self._offset
        return reader


# === STRUCTURES ===
@dataclass(frozen=True)
class MachHeader:
    magic: int
    cputype: int
    cpusubtype: int
    filetype: int
    ncmds: int
    sizeofcmds: int
    flags: int
    reserved: Optional[int] = None

    @property
    def is_64_bit(self):
        return self.magic == MH_MAGIC_64

    @property
    def size(self):
        fmt = MACHO_HEADER_FORMAT_64 if self.is_64_bit else MACHO_HEADER_FORMAT_32
        return struct.calcsize("<" + fmt)

    @classmethod
    def read(cls, reader):
        magic = reader.peek_uint32(reader.tell())
        fmt = MACHO_HEADER_FORMAT_64 if magic == MH_MAGIC_64 else MACHO_HEADER_FORMAT_32
        return cls(*reader.read(fmt, "mach header"))


@dataclass(frozen=True)
class FatArch:
    cputype: int
    cpusubtype: int
    offset: int
    size: int
    align: int

    @property
    def name(self):
        return arch_name(self.cputype, self.cpusubtype)


@dataclass(frozen=True)
class FatHeader:
    magic: int
    nfat_arch: int

    @property
    def is_64_bit(self):
        return self.magic == FAT_MAGIC_64

    @classmethod
    def read(cls, reader):
        return cls(*reader.read(FAT_HEADER_FORMAT, "fat header"))

    def read_arches(self, reader):
        arches = []
        for index in range(self.nfat_arch):
            if self.is_64_bit:
                cputype, cpusubtype, offset, size, align, _ = reader.read(
                    FAT_ARCH_64_FORMAT, f"fat arch {index}")
            else:
                cputype, cpusubtype, offset, size, align = reader.read(
                    FAT_ARCH_FORMAT, f"fat arch {index}")
            arches.append(FatArch(cputype, cpusubtype, offset, size, align))
        return tuple(arches)


@dataclass(frozen=True)
class LoadCommand:
    cmd: int
    cmdsize: int

    SIZE = struct.calcsize("<" + LOAD_COMMAND_FORMAT)

    @classmethod
    def read(cls, reader):
        return cls(*reader.read(LOAD_COMMAND_FORMAT, "load command header"))


@dataclass(frozen=True)
class SuperBlob:
    magic: int
    length: int
    count: int

    SIZE = struct.calcsize(">" + SUPERBLOB_FORMAT)

    @classmethod
    def read(cls, reader):
        return cls(*reader.read(SUPERBLOB_FORMAT, "code signature superblob"))


@dataclass(frozen=True)
class BlobIndex:
    type: int
    offset: int

    SIZE = struct.calcsize(">" + BLOB_INDEX_FORMAT)

    @classmethod
    def read(cls, reader):
        return cls(*reader.read(BLOB_INDEX_FORMAT, "blob index"))


# === BINARY FORMAT DISPATCH ===
@dataclass(frozen=True)
class SingleArchBinary:
    """A thin Mach-O: its header and where its load commands begin."""
    header: MachHeader

    @property
    def header_size(self):
        return self.header.size

    @property
    def ncmds(self):
        return self.header.ncmds

    @property
    def name(self):
        return arch_name(self.header.cputype, self.header.cpusubtype)


@dataclass(frozen=True)
class FatBinary:
    """A universal container and its architecture records."""
    header: FatHeader
    arches: tuple


@dataclass(frozen=True)
class UnrecognizedBinary:
    magic: int


def classify(reader, offset=0):
    """Classify the binary at offset as a SingleArchBinary, FatBinary or UnrecognizedBinary.

    Raises UnsupportedFatBinary for a fat header declaring no architectures
    and MachOParseError when the data is too short for the header it claims.
    """
    reader.seek(offset)
    magic = reader.peek_uint32(offset)
    if magic in MACHO_MAGICS:
        return SingleArchBinary(MachHeader.read(reader))

    fat_reader = reader.with_byte_order(">")
    fat_reader.seek(offset)
    fat_header = FatHeader.read(fat_reader)
    if fat_header.magic not in FAT_MAGICS:
        return UnrecognizedBinary(magic)

    if fat_header.nfat_arch == 0:
        raise UnsupportedFatBinary("Fat binary declares no architectures")
    if fat_header.nfat_arch > MAX_FAT_ARCHES:
        raise MachOSecurityError(
            f"Too many architectures in fat binary: {fat_header.nfat_arch}")

    return FatBinary(fat_header, fat_header.read_arches(fat_reader))


def looks_like_macho(data):
    """Return True if data starts with a thin or fat Mach-O header."""
    if len(data) < 8:
        return False
    try:
        return not isinstance(classify(BinaryReader(data)), UnrecognizedBinary)
    except MachOError:
        return False


# === ENTITLEMENTS ===
class Entitlements(Mapping):
    """The entitlements dictionary decoded from one architecture slice."""

    def __init__(self, values=None, arch=None):
        self._values = dict(values or {})
        self.arch = arch

    def __getitem__(self, key):
        return self._values[key]

    def __iter__(self):
        return iter(self._values)

    def __len__(self):
        return len(self._values)

    def __repr__(self):
        return f"Entitlements(arch={self.arch!r}, keys={sorted(self._values)!r})"

    def value(self, key, expected_type=None):
        """Return the value for key, or None if absent or not of expected_type."""
        value = self._values.get(key)
        if expected_type is not None and not isinstance(value, expected_type):
            return None
        return value

    def to_dict(self):
        return dict(self._values)

    @classmethod
    def from_plist(cls, payload, arch=None):
        try:
            values = plistlib.loads(payload)
        except (plistlib.InvalidFileException, ExpatError, ValueError) as e:
            raise SignatureReadingError(f"Entitlements blob is not a property list: {e}") from e
        if not isinstance(values, dict):
            raise SignatureReadingError(
                f"Entitlements property list is a {type(values).__name__}, not a dictionary")
        return cls(values, arch)


def merge_entitlements(results):
    """Merge per-slice results into one Entitlements; the first slice declaring a key wins."""
    merged = {}
    for entitlements in results:
        for key, value in entitlements.items():
            merged.setdefault(key, value)
    return Entitlements(merged)


def _read_signature_entitlements(reader, offset, arch=None):
    """Walk the code signature superblob at offset and decode its entitlements blob."""
    sig = reader.with_byte_order(">")
    sig.seek(offset)
    superblob = SuperBlob.read(sig)
    if superblob.magic != CSMAGIC_EMBEDDED_SIGNATURE:
        raise BadMagicInSignature(
            f"Bad code signature magic at offset {offset}: {superblob.magic:#010x}")

    if superblob.count > MAX_SUPERBLOB_ENTRIES:
        raise MachOSecurityError(f"Too many code signature blobs: {superblob.count}")

    for index in range(superblob.count):
        sig.seek(offset + SuperBlob.SIZE + index * BlobIndex.SIZE)
        entry = BlobIndex.read(sig)
        sig.seek(offset + entry.offset)
        blob_magic = sig.read_uint32()
        if blob_magic != CSMAGIC_EMBEDDED_ENTITLEMENTS:
            continue

        length = sig.read_uint32()
        if length < 8:
            raise MachOParseError(f"Entitlements blob length too small: {length}")
        if length - 8 > MAX_ENTITLEMENTS_SIZE:
            raise MachOSecurityError(f"Entitlements blob too large: {length} bytes")
        return Entitlements.from_plist(sig.read_bytes(length - 8), arch)

    # signed, but without entitlements
    return None


def _iter_load_commands(reader, binary):
    """Yield (command offset, LoadCommand) for each of the slice's load commands.

    The reader is left positioned just past the command header, so callers
    can read the command body; the next iteration seeks past cmdsize.
    """
    if binary.ncmds > MAX_LOAD_COMMANDS:
        raise MachOSecurityError(f"Too many load commands: {binary.ncmds}")

    reader.seek(binary.header_size)
    for index in range(binary.ncmds):
        cmd_start = reader.tell()
        command = LoadCommand.read(reader)
        if command.cmdsize < LoadCommand.SIZE:
            raise MachOParseError(
                f"Load command {index} has invalid size {command.cmdsize}")
        yield cmd_start, command
        reader.seek(cmd_start + command.cmdsize)


def _read_slice_entitlements(reader, binary, arch=None):
    entitlements = []
    for _, command in _iter_load_commands(reader, binary):
        if command.cmd != LC_CODE_SIGNATURE:
            continue
        signature_offset, signature_size = reader.read(CODE_SIGNATURE_FORMAT, "code signature command")
        if signature_size == 0:
            # signature removed in place
            continue
        found = _read_signature_entitlements(reader, signature_offset, arch)
        if found is not None:
            entitlements.append(found)
    return entitlements


def read_entitlements(reader, offset=0, arch=None, depth=0):
    """Return the list of Entitlements embedded in the binary behind reader.

    A thin binary yields zero or one result; a fat binary yields one result
    per slice that carries an entitlements blob. Unsigned binaries yield an
    empty list.
    """
    if offset:
        # fat arch offsets and signature offsets are relative to the header
        reader = reader.view(offset, len(reader) - offset)
    binary = classify(reader)

    if isinstance(binary, SingleArchBinary):
        return _read_slice_entitlements(reader, binary, arch or binary.name)

    if isinstance(binary, FatBinary):
        if depth >= MAX_FAT_DEPTH:
            raise MachOValidationError("Nested fat binaries are not supported")
        results = []
        for fat_arch in binary.arches:
            logger.debug("reading slice %s at %d (%d bytes)", fat_arch.name, fat_arch.offset, fat_arch.size)
            slice_reader = reader.view(fat_arch.offset, fat_arch.size)
            results.extend(read_entitlements(slice_reader, arch=fat_arch.name, depth=depth + 1))
        return results

    raise UnknownBinaryFormat(f"The binary format is not supported (magic {binary.magic:#010x})")


# === SIGNATURE STRIPPING ===
def _strip_slice(buf, reader, base, binary, truncate):
    """Blank the signature of one thin slice inside buf; return the new slice end."""
    end = base + len(reader)
    for cmd_start, command in _iter_load_commands(reader, binary):
        if command.cmd != LC_CODE_SIGNATURE:
            continue
        dataoff, datasize = reader.read(CODE_SIGNATURE_FORMAT, "code signature command")
        if dataoff + datasize > len(reader):
            raise MachOParseError(
                f"Code signature extends beyond slice (offset={dataoff}, size={datasize})")
        buf[base + dataoff:base + dataoff + datasize] = bytes(datasize)
        field = base + cmd_start + LoadCommand.SIZE
        buf[field:field + 8] = bytes(8)
        if truncate and dataoff + datasize == len(reader):
            end = base + dataoff
    return end


def strip_code_signature(data):
    """Return a copy of data with every embedded code signature removed.

    Signature bytes are zeroed and the LC_CODE_SIGNATURE offset/size fields
    cleared, so that two builds signed by different identities compare
    equal outside of the signature. A thin binary whose signature is the
    trailing data is truncated at the signature.
    """
    buf = bytearray(data)
    reader = BinaryReader(data)
    binary = classify(reader)

    if isinstance(binary, SingleArchBinary):
        end = _strip_slice(buf, reader, 0, binary, truncate=True)
        return bytes(buf[:end])

    if isinstance(binary, FatBinary):
        for fat_arch in binary.arches:
            slice_reader = reader.view(fat_arch.offset, fat_arch.size)
            slice_binary = classify(slice_reader)
            if isinstance(slice_binary, SingleArchBinary):
                _strip_slice(buf, slice_reader, fat_arch.offset, slice_binary, truncate=False)
        return bytes(buf)

    raise UnknownBinaryFormat(f"The binary format is not supported (magic {binary.magic:#010x})")


# === BINARY FILE ===
class MachOBinary:
    """A Mach-O binary (thin or universal) loaded from a file or from bytes."""

    def __init__(self, file_path=None, data=None):
        if file_path is None and data is None:
            raise ValueError("Must supply either file_path or data")
        elif file_path is not None:
            self.file_path = _validate_file_path(file_path)
            _validate_file_size(os.path.getsize(self.file_path))

            with open(self.file_path, "rb") as fh:
                self.data = fh.read()
        else:
            self.file_path = None
            self.data = bytes(data)
            _validate_file_size(len(self.data))

        self.binary_type = classify(BinaryReader(self.data))
        if isinstance(self.binary_type, UnrecognizedBinary):
            raise UnknownBinaryFormat(
                f"The binary format is not supported (magic {self.binary_type.magic:#010x})")

    @property
    def is_fat(self):
        return isinstance(self.binary_type, FatBinary)

    def get_architectures(self):
        """Get list of architectures in this binary."""
        if self.is_fat:
            return [fat_arch.name for fat_arch in self.binary_type.arches]
        return [self.binary_type.name]

    def read_entitlements(self):
        """Return one Entitlements per slice that embeds an entitlements blob."""
        return read_entitlements(BinaryReader(self.data))

    def get_general_info(self):
        return {
            "file_name": os.path.basename(self.file_path) if self.file_path else None,
            "file_size": len(self.data),
            "format": "fat" if self.is_fat else "thin",
            "architectures": self.get_architectures(),
        }
