"""pctl command line interface."""

from __future__ import annotations

import argparse
import logging
import sys

from pctl.client import TokenClient
from pctl.config import load_config
from pctl.exceptions import ExchangeError, PctlError
from pctl.models import OutputFormat, TokenType

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pctl", description="Platform access token helper")
    p.add_argument("-v", "--verbose", action="store_true", help="Log each step to stderr")
    commands = p.add_subparsers(dest="command", required=True)

    token = commands.add_parser(
        "token",
        help="Generate an access token",
        description="Generate an access token for a service account (JWT-Bearer grant)",
    )
    token.add_argument("-c", "--config", required=True, help="Token configuration file (YAML)")
    token.add_argument(
        "-o",
        "--output",
        default=OutputFormat.TEXT.value,
        choices=[f.value for f in OutputFormat],
        help="Output format (default: text)",
    )
    token.add_argument(
        "-t",
        "--type",
        default=None,
        choices=[t.value for t in TokenType],
        help="Token type, overriding the config file",
    )
    token.add_argument("-v", "--verbose", action="store_true", dest="token_verbose", help="Log each step to stderr")
    return p


def configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )


def run_token(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    if args.type:
        config.type = TokenType(args.type)

    configure_logging(args.verbose or args.token_verbose or config.verbose)

    client = TokenClient(config, output_format=args.output)
    result = client.generate()
    sys.stdout.write(client.format_output(result))
    return 0


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return run_token(args)
    except ExchangeError as e:
        logger.debug("Token endpoint response body: %s", e.body)
        print(f"pctl: {e.message}", file=sys.stderr)
        return 1
    except PctlError as e:
        print(f"pctl: {e.message}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
