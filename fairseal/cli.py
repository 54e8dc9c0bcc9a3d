"""Command line interface: `fairseal entitlements|compare|seal`."""

import argparse
import json
import logging
import sys

from .archive import open_source
from .compare import CodesignStripper, CompareOptions, compare_archives
from .entitlements import categories, check_entitlements, usage_descriptions
from .errors import ArchiveError, FairsealError, MissingInfoPlist
from .machofile import BinaryReader, MachOBinary, merge_entitlements, read_entitlements, strip_code_signature
from .seal import assemble_seal, stage_assets

logger = logging.getLogger(__name__)

STRIPPERS = {
    "builtin": strip_code_signature,
    "codesign": CodesignStripper(),
    "none": None,
}


def print_dict(data):
    for key in sorted(data):
        print(f"\t{key}: {data[key]}")

def print_list(data):
    for item in data:
        print(f"\t{item}")


def _add_compare_arguments(parser):
    required = parser.add_argument_group("required arguments")
    required.add_argument("--trusted", required=True, help="Trusted build archive (zip or directory)")
    required.add_argument("--untrusted", required=True, help="Untrusted release archive (zip or directory)")

    options = parser.add_argument_group("comparison options")
    options.add_argument(
        "--permitted-diffs", type=int, default=0,
        help="Byte edits tolerated in the main executable (default: 0)",
    )
    options.add_argument(
        "--pair-by", choices=["path", "position"], default="path",
        help="Pair archive entries by path or by archive order",
    )
    options.add_argument(
        "--strip", choices=sorted(STRIPPERS), default="builtin",
        help="Code signature stripping before diffing executables",
    )
    options.add_argument("--suffix", default=".app", help="Expected bundle suffix")


def _compare_options(args):
    return CompareOptions(
        permitted_diffs=args.permitted_diffs,
        expected_suffix=args.suffix,
        pair_by=args.pair_by,
        stripper=STRIPPERS[args.strip],
    )


def run_entitlements(args):
    macho = MachOBinary(file_path=args.file)
    results = macho.read_entitlements()

    if args.json:
        data = {
            "general_info": macho.get_general_info(),
            "entitlements": [{"arch": e.arch, "values": e.to_dict()} for e in results],
        }
        print(json.dumps(data, indent=2, default=str, sort_keys=True))
        return 0

    print("\n[General File Info]")
    print_dict(macho.get_general_info())
    if not results:
        print("\n[Entitlements]")
        print("\tNo entitlements found")
    for entitlements in results:
        print(f"\n[Entitlements - {entitlements.arch}]")
        print_dict(entitlements.to_dict())
    merged = merge_entitlements(results)
    for category, keys in sorted(categories(merged).items(), key=lambda item: item[0].value):
        print(f"\n[Category - {category.value}]")
        print_list(keys)
    return 0


def run_compare(args):
    with open_source(args.trusted) as trusted, open_source(args.untrusted) as untrusted:
        result = compare_archives(trusted.entries(), untrusted.entries(), _compare_options(args))

    print(f"\n[Comparison - {result.bundle_root}]")
    print_dict({
        "main_executable": result.main_executable,
        "core_size": result.core_size,
        "identical": result.identical_count,
        "tolerated": len(result.tolerated),
    })
    for verdict in result.tolerated:
        detail = verdict.category or f"{verdict.count} changes"
        print(f"\t{verdict.path}: {detail}")
    return 0


def run_seal(args):
    with open_source(args.trusted) as trusted, open_source(args.untrusted) as untrusted:
        result = compare_archives(trusted.entries(), untrusted.entries(), _compare_options(args))
        if result.main_executable is None:
            raise ArchiveError(f"No main executable found in {result.bundle_root}")
        executable = trusted.read(result.main_executable)

    if result.info_plist is None:
        raise MissingInfoPlist(f"No readable Info.plist in {result.bundle_root}")

    entitlements = merge_entitlements(read_entitlements(BinaryReader(executable)))
    permissions = check_entitlements(
        entitlements,
        usage_descriptions(result.info_plist),
        require_sandbox=not args.allow_unsandboxed,
    )
    assets = stage_assets(args.artifact_url, args.asset_dir or [], args.untrusted)
    seal = assemble_seal(result, permissions, assets, tint=args.tint)
    print(seal.to_json(indent=2))
    return 0


def build_parser():
    parser = argparse.ArgumentParser(
        prog="fairseal",
        description="Verify app entitlements and reproducible builds, and issue seals.",
    )
    parser.add_argument(
        "--log-level", default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging verbosity (default: WARNING)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    ent_parser = subparsers.add_parser("entitlements", help="Print the entitlements of a Mach-O binary")
    required = ent_parser.add_argument_group("required arguments")
    required.add_argument("-f", "--file", required=True, help="Path to the binary to be parsed")
    ent_parser.add_argument("-j", "--json", action="store_true", help="Output data in JSON format")
    ent_parser.set_defaults(handler=run_entitlements)

    compare_parser = subparsers.add_parser("compare", help="Compare a trusted and an untrusted archive")
    _add_compare_arguments(compare_parser)
    compare_parser.set_defaults(handler=run_compare)

    seal_parser = subparsers.add_parser("seal", help="Compare archives and print a seal record")
    _add_compare_arguments(seal_parser)
    seal_options = seal_parser.add_argument_group("seal options")
    seal_options.add_argument("--artifact-url", required=True, help="Public URL of the untrusted artifact")
    seal_options.add_argument(
        "--asset-dir", action="append",
        help="Directory of release assets published beside the artifact (repeatable)",
    )
    seal_options.add_argument("--tint", help="Tint color as #RRGGBB or #RRGGBBAA")
    seal_options.add_argument(
        "--allow-unsandboxed", action="store_true",
        help="Do not require the app-sandbox entitlement",
    )
    seal_parser.set_defaults(handler=run_seal)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if getattr(args, "permitted_diffs", 0) < 0:
        parser.error("--permitted-diffs cannot be negative")

    try:
        return args.handler(args)
    except (FairsealError, FileNotFoundError, ValueError) as e:
        logger.debug("command failed", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
