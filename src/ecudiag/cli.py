# SPDX-FileCopyrightText: AISEC Pentesting Team
#
# SPDX-License-Identifier: Apache-2.0

# PYTHON_ARGCOMPLETE_OK

from __future__ import annotations

import argparse
import asyncio
import os
import signal
import sys
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path

import argcomplete
import exitcode
import pydantic

from ecudiag.config import CONFIG_ENV, TEMPLATE, Settings, load_config_file
from ecudiag.log import LOGGER_NAME, add_zst_log_handler, setup_logging
from ecudiag.manager import UDSClientManager
from ecudiag.net import ping_host
from ecudiag.types import ConnectionConfig, DiagnosticResult
from ecudiag.utils import get_file_log_level, get_log_level, hex_int


def _version() -> str:
    try:
        return version("ecudiag")
    except PackageNotFoundError:
        return "unknown"


def parse_command(raw: str) -> tuple[str, str]:
    """Splits ``SID:DATA`` into its parts, e.g. ``22:22f190``.
    A bare ``SID`` sends the service with its default parameters.
    """
    sid, _, data = raw.partition(":")
    if sid == "":
        raise argparse.ArgumentTypeError(f"missing service id in {raw!r}")
    return sid, data


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="""UDS over DoIP diagnostic client.
        A few command line options can be set via a TOML config file.
        Check `ecudiag --template` for a starting point.
        """,
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_version()}",
    )
    parser.add_argument(
        "--show-config",
        action="store_true",
        help="show information about the loaded config",
    )
    parser.add_argument(
        "--template",
        action="store_true",
        help="print a config template",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="increase verbosity on the console",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        metavar="PATH",
        help="write a zstd compressed json log to PATH",
    )

    subparsers = parser.add_subparsers(metavar="COMMAND")

    conn = settings.connection

    send = subparsers.add_parser(
        "send",
        help="connect to an ECU and send UDS requests",
        description="connect, run every SID:DATA request in order and disconnect",
    )
    send.set_defaults(func=cmd_send)
    send.add_argument(
        "--host",
        default=conn.host,
        required=conn.host is None,
        help="hostname or ip address of the DoIP entity",
    )
    send.add_argument(
        "--port",
        type=int,
        default=conn.port,
        help="tcp port of the DoIP entity",
    )
    send.add_argument(
        "--src-addr",
        type=hex_int,
        default=conn.client_address,
        required=conn.client_address is None,
        help="logical address of this tester, hex",
    )
    send.add_argument(
        "--target-addr",
        type=hex_int,
        default=conn.server_address,
        required=conn.server_address is None,
        help="logical address of the ECU, hex",
    )
    send.add_argument(
        "--timeout",
        type=float,
        default=conn.timeout,
        help="timeout for connecting and for each response in seconds",
    )
    send.add_argument(
        "--security-constant",
        type=hex_int,
        default=settings.security.constant,
        help="constant for the security access key computation, hex",
    )
    send.add_argument(
        "commands",
        metavar="SID:DATA",
        type=parse_command,
        nargs="+",
        help="service id and hex encoded request, e.g. 22:22f190 or 3e",
    )

    ping = subparsers.add_parser("ping", help="check whether a host is reachable")
    ping.set_defaults(func=cmd_ping)
    ping.add_argument("host", metavar="HOST")
    ping.add_argument(
        "--timeout",
        type=float,
        default=5.0,
        help="timeout in seconds",
    )

    return parser


def print_result(result: DiagnosticResult | pydantic.BaseModel) -> None:
    print(result.model_dump_json())


async def cmd_send(args: argparse.Namespace) -> int:
    try:
        config = ConnectionConfig(
            host=args.host,
            port=args.port,
            client_logical_address=args.src_addr,
            server_logical_address=args.target_addr,
            timeout=args.timeout,
        )
    except pydantic.ValidationError as e:
        print(f"invalid connection parameters: {e}", file=sys.stderr)
        return exitcode.USAGE

    async with UDSClientManager(security_constant=args.security_constant) as manager:
        result = await manager.connect(config)
        print_result(result)
        if not result.success:
            return exitcode.UNAVAILABLE

        exit_code = exitcode.OK
        for sid, data in args.commands:
            result = await manager.send_command(sid, data)
            print_result(result)
            if not result.success:
                exit_code = exitcode.SOFTWARE

    return exit_code


async def cmd_ping(args: argparse.Namespace) -> int:
    result = await ping_host(args.host, timeout=args.timeout)
    print_result(result)
    return exitcode.OK if result.success else exitcode.UNAVAILABLE


def cmd_show_config(settings: Settings, config_path: Path | None) -> None:
    if (p := os.getenv(CONFIG_ENV)) is not None:
        print(f"path to config set by env variable: {p}", file=sys.stderr)

    if config_path is not None:
        print(f"loaded config: {config_path}", file=sys.stderr)
        print(settings.model_dump_json(indent=2))
    else:
        print("no config available", file=sys.stderr)
        sys.exit(1)


def main(argv: list[str] | None = None) -> None:
    try:
        config, config_path = load_config_file()
        settings = config.settings()
    except (ValueError, FileNotFoundError) as e:
        print(f"invalid config: {e}", file=sys.stderr)
        sys.exit(exitcode.CONFIG)

    parser = build_parser(settings)
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.show_config:
        cmd_show_config(settings, config_path)
        sys.exit(exitcode.OK)

    if args.template:
        print(TEMPLATE.strip())
        sys.exit(exitcode.OK)

    if not hasattr(args, "func"):
        parser.print_help()
        parser.exit(exitcode.USAGE)

    setup_logging(level=get_log_level(args))
    if args.log_file is not None:
        add_zst_log_handler(LOGGER_NAME, args.log_file, get_file_log_level(args))

    try:
        sys.exit(asyncio.run(args.func(args)))
    except KeyboardInterrupt:
        sys.exit(128 + signal.SIGINT)


if __name__ == "__main__":
    main()
