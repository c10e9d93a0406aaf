#!/usr/bin/env python3
"""
Command-line interface for sysupdate_dl

Prints the latest system update version on the CDN, or downloads the whole
update (meta and content NCAs) into a directory.
"""

import argparse
import importlib
import logging
import os
import sys
from typing import Any, List, Optional

from sysupdate_dl import constants
from sysupdate_dl.api import CdnClient
from sysupdate_dl.certs import load_identity
from sysupdate_dl.downloader import DownloaderConfig, SysUpdateDownloader, latest_version_report
from sysupdate_dl.errors import ConfigurationError, DownloadAborted, SysUpdateError
from sysupdate_dl.models import EndpointConfig
from sysupdate_dl.resolver import ContainerDecoder, ContentGraphResolver
from sysupdate_dl.utils import (
    default_out_dir,
    load_keyset,
    make_file_handlers,
    prepare_output_dir,
    setup_logging,
)


def positive_int(value: str) -> int:
    """argparse type for --jobs: an integer of at least 1."""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"not an integer: {value!r}")
    if number < 1:
        raise argparse.ArgumentTypeError(f"must be at least 1, got {number}")
    return number


def title_list(value: str) -> List[str]:
    """argparse type for --titles: comma separated title IDs."""
    return [title.strip() for title in value.split(",") if title.strip()]


def load_decoder(spec: Optional[str]) -> ContainerDecoder:
    """
    Load a container decoder from a "module:attribute" spec.

    The attribute may be a decoder instance or a class/factory taking no arguments.

    Raises:
        ConfigurationError: If no spec is given or it cannot be imported
    """
    if not spec:
        raise ConfigurationError("No container decoder configured (use --decoder module:attribute)")

    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ConfigurationError(f"Invalid decoder spec {spec!r}, expected module:attribute")

    try:
        target: Any = getattr(importlib.import_module(module_name), attr)
    except (ImportError, AttributeError) as e:
        raise ConfigurationError(f"Cannot load decoder {spec!r}: {e}") from e

    decoder = target
    if isinstance(target, type) or (callable(target) and not hasattr(target, "decode")):
        try:
            decoder = target()
        except TypeError as e:
            raise ConfigurationError(f"Cannot create decoder {spec!r}: {e}") from e
    if not callable(getattr(decoder, "decode", None)):
        raise ConfigurationError(f"Decoder {spec!r} has no decode() method")
    return decoder


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sysupdate-dl",
        description="sysupdate-dl - system update downloader for the console CDN",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="Examples:\n"
               "  sysupdate-dl --info                      # Show the latest version on the CDN\n"
               "  sysupdate-dl --latest -c cert.pem        # Download the latest update\n"
               "  sysupdate-dl --latest --only-meta -q     # Only meta NCAs, overwrite without asking\n"
    )

    modes = parser.add_mutually_exclusive_group()
    modes.add_argument("--get-info", "--info", "-i", dest="mode", action="store_const", const="info",
                       help="Print info about the latest version on the CDN")
    modes.add_argument("--get-latest", "--latest", "-l", dest="mode", action="store_const", const="latest",
                       help="Download the latest version from the CDN")

    parser.add_argument("--cert", "-c", default=constants.DEFAULT_CERT_PATH,
                        help=f"Path to the client certificate PEM (default: {constants.DEFAULT_CERT_PATH})")
    parser.add_argument("--keyset", "-k", default=constants.DEFAULT_KEYSET_PATH,
                        help="Path to the keyset (default: ~/.switch/prod.keys)")
    parser.add_argument("--out", "--out-path", "-o", dest="out", default=None,
                        help="Output directory for --latest "
                             "(default: sysupdate-[intver]-[semver]-bn_[buildnum])")
    parser.add_argument("--device-id", "-did", default=constants.DEFAULT_DEVICE_ID,
                        help="Device ID sent to the CDN")
    parser.add_argument("--environment", "-env", dest="env", default=constants.DEFAULT_ENV,
                        help=f"Environment (default: {constants.DEFAULT_ENV})")
    parser.add_argument("--server", "-s", default=constants.DEFAULT_SERVER,
                        help=f"Server cluster (default: {constants.DEFAULT_SERVER})")
    parser.add_argument("--platform", "-p", default=constants.DEFAULT_PLATFORM,
                        help=f"Platform (default: {constants.DEFAULT_PLATFORM})")
    parser.add_argument("--firmware-version", "-fwver", default=constants.DEFAULT_FIRMWARE_VERSION,
                        help=f"Firmware version for the user agent (default: {constants.DEFAULT_FIRMWARE_VERSION})")
    parser.add_argument("--jobs", "-j", type=positive_int, default=constants.DEFAULT_MAX_JOBS,
                        help=f"Max concurrent downloads (default: {constants.DEFAULT_MAX_JOBS})")
    parser.add_argument("--titles", type=title_list, default=None,
                        help="Only download these titles (comma separated title IDs)")
    parser.add_argument("--decoder", default=os.environ.get("SYSUPDATE_DL_DECODER"),
                        help="Container decoder as module:attribute (default: $SYSUPDATE_DL_DECODER)")
    parser.add_argument("--only-meta", action="store_true",
                        help="Only download and parse meta entries")
    parser.add_argument("--tencent", "-t", action="store_true",
                        help="Use the regional (China) servers for all requests")
    parser.add_argument("--ignore-warnings", "--no-confirm", "-q", action="store_true",
                        help="Ignore warnings and assume 'y' for prompts")
    parser.add_argument("-v", dest="verbose", action="store_true",
                        help="Verbose mode")
    parser.add_argument("-vf", dest="log_file", default=None,
                        help="Verbose log to file")
    return parser


def cmd_info(args, client: CdnClient) -> int:
    """Handle --info."""
    print(latest_version_report(client))
    return constants.EXIT_OK


def cmd_latest(args, client: CdnClient, logger: logging.Logger) -> int:
    """Handle --latest."""
    # Keys and decoder are only needed for a full download; fail before touching the network
    keyset = load_keyset(os.path.abspath(args.keyset))
    resolver = ContentGraphResolver(load_decoder(args.decoder), keyset, logger=logger.getChild("resolver"))

    print("Getting sysupdate meta...")
    sys_update = client.get_sys_update_meta()

    out_dir = os.path.abspath(args.out or default_out_dir(sys_update.version))
    prepare_output_dir(out_dir, ignore_warnings=args.ignore_warnings)

    meta_handler, content_handler = make_file_handlers(out_dir, logger=logger.getChild("storage"))
    downloader = SysUpdateDownloader(
        DownloaderConfig(
            client=client,
            resolver=resolver,
            max_parallelism=args.jobs,
            meta_handler=meta_handler,
            content_handler=content_handler,
            verbose=args.verbose,
        ),
        logger=logger.getChild("downloader"),
    )

    summary = downloader.download_update(sys_update, title_filter=args.titles, only_meta=args.only_meta)

    print(f"Downloaded {summary.meta_titles + 1} meta and {summary.contents_downloaded} content NCAs to {out_dir}")
    print("All done !")
    return constants.EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.mode:
        parser.print_help()
        return constants.EXIT_OK

    logger = logging.getLogger("sysupdate_dl")

    try:
        logger = setup_logging(args.verbose, args.log_file)
        identity = load_identity(os.path.abspath(args.cert), logger=logger.getChild("certs"))
        config = EndpointConfig(
            firmware_version=args.firmware_version,
            platform=args.platform,
            device_id=args.device_id,
            env=args.env,
            server=args.server,
            regional=args.tencent,
        )

        with CdnClient(config, identity, logger=logger.getChild("api")) as client:
            if args.mode == "info":
                return cmd_info(args, client)
            return cmd_latest(args, client, logger)

    except DownloadAborted as e:
        print("Aborting...")
        logger.debug(str(e))
        return e.exit_code
    except KeyboardInterrupt:
        print("\n\nInterrupted by user")
        return constants.EXIT_INTERRUPTED
    except SysUpdateError as e:
        logger.debug("Run aborted", exc_info=True)
        print(f"\n✗ Error: {e}")
        return constants.EXIT_ERROR
    except Exception as e:
        logging.exception("Unexpected error")
        print(f"\n✗ Error: {e}")
        return constants.EXIT_ERROR


if __name__ == "__main__":
    sys.exit(main())
