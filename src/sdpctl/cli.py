"""Console entry point for the sdpctl upgrade CLI."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
from typing import List

from sdpctl.backup import DEFAULT_BACKUP_DESTINATION
from sdpctl.clients import DEFAULT_PEER_VERSION, AdminRestClient
from sdpctl.config import DEFAULT_THROTTLE, SdpctlConfig
from sdpctl.context import RunContext
from sdpctl.errors import CanceledByUser, ExitCode, SdpctlError, exit_code_for
from sdpctl.filters import ORDER_KEYS
from sdpctl.force_disable import ForceDisableCoordinator
from sdpctl.log_utils import setup_logging
from sdpctl.upgrader import FleetUpgrader

logger = logging.getLogger(__name__)

CANCEL_THROTTLE = 2


def _common_options() -> argparse.ArgumentParser:
    """Options shared by every command."""
    common = argparse.ArgumentParser(add_help=False)

    conn = common.add_argument_group("connection")
    conn.add_argument(
        "--url",
        metavar="URL",
        help="Admin API address of the primary Controller (default: SDPCTL_URL or config.json)",
    )
    conn.add_argument(
        "--bearer",
        metavar="TOKEN",
        help="Bearer token (default: SDPCTL_BEARER or config.json)",
    )
    conn.add_argument(
        "--ca-cert",
        metavar="PEM",
        help="PEM bundle used to verify the Controller certificate",
    )
    conn.add_argument(
        "--api-version",
        type=int,
        metavar="N",
        help="Peer API version. Derived from the primary Controller when not set.",
    )

    sel = common.add_argument_group("appliance selection")
    sel.add_argument(
        "--include",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Only include matching appliances. Repeat or separate with '&'.",
    )
    sel.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Exclude matching appliances. Repeat or separate with '&'.",
    )
    sel.add_argument(
        "--order-by",
        action="append",
        metavar="KEY",
        help=f"Sort appliances by key, first key wins ({', '.join(ORDER_KEYS)})",
    )
    sel.add_argument("--descending", action="store_true", help="Reverse the sort order")

    run = common.add_argument_group("run control")
    run.add_argument(
        "--timeout",
        type=int,
        metavar="SECONDS",
        help="Deadline per appliance (default: 1800, minimum: 900)",
    )
    run.add_argument(
        "--no-interactive",
        action="store_true",
        help="Answer yes to every confirmation prompt",
    )
    run.add_argument(
        "--ci-mode",
        action="store_true",
        help="Log plain lines instead of live progress output",
    )

    out = common.add_argument_group("logging and output")
    out.add_argument("--verbose", action="store_true", help="Enable debug logging")
    out.add_argument(
        "--log-file",
        default="sdpctl.log",
        metavar="PATH",
        help="Log file (default: sdpctl.log)",
    )
    return common


def build_parser() -> argparse.ArgumentParser:
    """Build and return the CLI argument parser."""
    common = _common_options()
    parser = argparse.ArgumentParser(
        prog="sdpctl",
        description="Upgrade and maintain the appliances of an Appgate SDP Collective",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  # Prepare every appliance for 6.2.1\n"
            "  sdpctl upgrade prepare --image ./appgate-6.2.1-12345.img.zip\n\n"
            "  # Prepare only the gateways of one site\n"
            "  sdpctl upgrade prepare --image https://cdn/appgate-6.2.1.img.zip "
            "--include function=gateway --include site=Stockholm\n\n"
            "  # Install prepared upgrades, backing up the primary Controller first\n"
            "  sdpctl upgrade complete --backup\n\n"
            "  # Remove two dead Controllers from the Collective\n"
            "  sdpctl force-disable-controller ctrl2.example.com ctrl3.example.com"
        ),
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    upgrade = commands.add_parser("upgrade", help="Prepare, complete or cancel upgrades")
    actions = upgrade.add_subparsers(dest="action", metavar="ACTION")
    actions.required = True

    prepare = actions.add_parser(
        "prepare", parents=[common], help="Download and verify an upgrade image"
    )
    prepare.add_argument(
        "--image",
        required=True,
        metavar="PATH|URL",
        help="Upgrade image (.img.zip), local file or URL",
    )
    prepare.add_argument(
        "--host-on-controller",
        action="store_true",
        help="Let the primary Controller fetch a remote image and serve it to the appliances",
    )
    prepare.add_argument(
        "--force",
        action="store_true",
        help="Prepare appliances already running or prepared with the target version",
    )
    prepare.add_argument(
        "--dev-keyring", action="store_true", help="Accept images signed with the development keyring"
    )
    prepare.add_argument(
        "--throttle",
        type=int,
        default=DEFAULT_THROTTLE,
        metavar="N",
        help=f"Appliances preparing at the same time (default: {DEFAULT_THROTTLE})",
    )
    prepare.add_argument(
        "--logserver-bundle",
        metavar="PATH|URL",
        help="Pre-built LogServer bundle (default: built from the registry)",
    )
    prepare.add_argument(
        "--docker-registry",
        metavar="URL",
        help="Registry to build the LogServer bundle from",
    )
    prepare.add_argument("--report", metavar="PATH", help="Export the run report as JSON")

    complete = actions.add_parser(
        "complete", parents=[common], help="Install prepared upgrades"
    )
    complete.add_argument(
        "--backup", action="store_true", help="Back up the primary Controller first"
    )
    complete.add_argument(
        "--backup-destination",
        default=DEFAULT_BACKUP_DESTINATION,
        metavar="DIR",
        help=f"Backup directory (default: {DEFAULT_BACKUP_DESTINATION})",
    )
    complete.add_argument("--report", metavar="PATH", help="Export the run report as JSON")

    cancel = actions.add_parser(
        "cancel", parents=[common], help="Cancel prepared or ongoing upgrades"
    )
    cancel.add_argument(
        "--delete",
        action="store_true",
        help="Also delete upgrade images from the primary Controller",
    )
    cancel.add_argument(
        "--throttle",
        type=int,
        default=CANCEL_THROTTLE,
        metavar="N",
        help=f"Appliances canceling at the same time (default: {CANCEL_THROTTLE})",
    )

    status = actions.add_parser(
        "status", parents=[common], help="Show the upgrade status of the appliances"
    )
    status.add_argument("--json", action="store_true", help="Print JSON instead of a table")

    force = commands.add_parser(
        "force-disable-controller",
        parents=[common],
        help="Remove unreachable Controllers from the Collective",
    )
    force.add_argument("hostnames", nargs="+", metavar="HOSTNAME")
    return parser


def build_client(config: SdpctlConfig) -> AdminRestClient:
    return AdminRestClient(
        config.url,
        config.bearer,
        peer_version=config.peer_version or DEFAULT_PEER_VERSION,
        token_expiry=config.token_expiry,
        ca_cert=config.ca_cert,
    )


def _dispatch(args: argparse.Namespace, config: SdpctlConfig, ctx: RunContext) -> None:
    api = build_client(config)
    if args.command == "force-disable-controller":
        ForceDisableCoordinator(api, config, ctx).run(args.hostnames)
        return

    upgrader = FleetUpgrader(api, config, ctx)
    if args.action == "prepare":
        upgrader.prepare(
            args.image,
            host_on_controller=args.host_on_controller,
            force=args.force,
            dev_keyring=args.dev_keyring,
            logserver_bundle=args.logserver_bundle,
            report=args.report,
        )
    elif args.action == "complete":
        upgrader.complete(
            backup=args.backup,
            backup_destination=args.backup_destination,
            report=args.report,
        )
    elif args.action == "cancel":
        upgrader.cancel(delete=args.delete)
    elif args.action == "status":
        upgrader.status(as_json=args.json)


def main(argv: List[str] | None = None) -> int:
    """CLI main for console_scripts entry point."""
    parser = build_parser()
    args = parser.parse_args(args=argv)

    ctx = RunContext()

    def interrupt(signum, frame):
        ctx.cancel("canceled by user")
        raise CanceledByUser()

    previous = signal.signal(signal.SIGINT, interrupt)
    try:
        config = SdpctlConfig.from_args(args)
        setup_logging(verbose=config.verbose, log_file=config.log_file)
        _dispatch(args, config, ctx)
    except SdpctlError as e:
        logger.error(str(e).rstrip())
        return int(exit_code_for(e))
    except KeyboardInterrupt:
        ctx.cancel("canceled by user")
        logger.error("canceled by user")
        return int(ExitCode.CANCELED)
    finally:
        signal.signal(signal.SIGINT, previous)
    return int(ExitCode.OK)


def run() -> None:
    sys.exit(main())
