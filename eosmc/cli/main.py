"""CLI Entry Point for eosmc
=========================

Entry point for console script: eosmc <command> [args]
"""

import sys

from eosmc.cli.args_parser import create_parser
from eosmc.cli.commands import dispatch_command
from eosmc.utils.logging import get_logger, set_log_level

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Processes command-line arguments and dispatches to the command handler.

    Returns
    -------
    int
        Exit code: 0 on success, 1 on failure, 130 when interrupted.
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    if args.verbose or args.debug:
        set_log_level("DEBUG")

    logger.debug(f"Arguments: {vars(args)}")

    try:
        result = dispatch_command(args)
    except KeyboardInterrupt:
        logger.info("Analysis interrupted by user")
        return 130

    if result and result.get("success", False):
        logger.info("Command completed successfully")
        return 0
    error_msg = result.get("error", "Command did not complete") if result else "Command failed"
    logger.error(f"Command failed: {error_msg}")
    return 1


if __name__ == "__main__":
    sys.exit(main())
