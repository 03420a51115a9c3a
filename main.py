#!/usr/bin/env python3
"""
CLI login handoff - command line entry point.

Logs the CLI in through the browser (loopback redirect or poll handoff), shows the
stored identity, logs out, or runs the handoff server.
"""

import argparse
import logging
import os
import sys

# Configure logging
logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "WARNING").upper(), logging.WARNING),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    stream=sys.stderr,
)

#
# NOTE: Keep handoff imports lazy (inside functions) so `--serve` does not import the
# CLI client stack and `--login` does not import FastAPI.
#

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2


def run_login(mode: str, timeout: int | None) -> int:
    from handoff.cli.credentials import load_client_config
    from handoff.cli.errors import LoginError, format_login_error
    from handoff.cli.login import login

    cfg = load_client_config()
    try:
        creds = login(cfg, mode=mode, timeout=timeout)
    except LoginError as e:
        print(format_login_error(e), file=sys.stderr)
        return EXIT_INVALID if e.code == "validation_error" else EXIT_FAILED
    except KeyboardInterrupt:
        print("\nLogin cancelled.", file=sys.stderr)
        return EXIT_FAILED

    who = f"@{creds.login}" if creds.login else "anonymous"
    print(f"✓ Logged in as {who}")
    return EXIT_OK


def run_logout() -> int:
    from handoff.cli.credentials import clear_credentials, load_client_config, load_credentials
    from handoff.cli.login import logout

    cfg = load_client_config()
    creds = load_credentials(cfg)
    if creds is None:
        print("Not logged in.")
        return EXIT_OK
    if not logout(cfg, creds.token):
        print("Could not reach the server; the token will expire on its own.", file=sys.stderr)
    clear_credentials(cfg)
    print("Logged out.")
    return EXIT_OK


def run_whoami() -> int:
    from handoff.cli.credentials import load_client_config, load_credentials
    from handoff.cli.errors import LoginError, format_login_error
    from handoff.cli.login import fetch_session, validate_app_url

    cfg = load_client_config()
    creds = load_credentials(cfg)
    if creds is None:
        print("Not logged in. Run `python main.py --login`.", file=sys.stderr)
        return EXIT_FAILED
    try:
        session = fetch_session(validate_app_url(cfg.app_url), creds.token)
    except LoginError as e:
        print(format_login_error(e), file=sys.stderr)
        return EXIT_FAILED
    print(f"Logged in as @{session.get('login') or creds.login or 'anonymous'} (expires {session.get('expiresAt')})")
    return EXIT_OK


def main():
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Log the CLI in through the browser",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Log in (browser redirects back to a local listener)
  python main.py --login

  # Log in by polling (no local port needed)
  python main.py --login --mode poll

  # Run the handoff server
  python main.py --serve --port 8080
        """,
    )

    parser.add_argument("--login", action="store_true", help="Log in through the browser and store the token")
    parser.add_argument("--logout", action="store_true", help="Revoke the stored token and forget it")
    parser.add_argument("--whoami", action="store_true", help="Show the identity behind the stored token")
    parser.add_argument("--serve", action="store_true", help="Run the handoff HTTP server")
    parser.add_argument(
        "--mode",
        choices=["loopback", "poll"],
        default="loopback",
        help="Token delivery for --login: loopback redirect or poll handoff (default: loopback)",
    )
    parser.add_argument(
        "--timeout", type=int, help="Seconds to wait for the browser login (default: HANDOFF_LOGIN_TIMEOUT_SECONDS or 120)"
    )
    parser.add_argument("--host", default="127.0.0.1", help="Server bind host (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=8080, help="Server listen port (default: 8080)")

    args = parser.parse_args()

    if args.timeout is not None and args.timeout <= 0:
        parser.error("--timeout must be positive")

    if args.serve:
        from handoff.api.server import run as run_server

        run_server(host=args.host, port=args.port)
        return EXIT_OK
    if args.login:
        return run_login(args.mode, args.timeout)
    if args.logout:
        return run_logout()
    if args.whoami:
        return run_whoami()

    parser.print_help()
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
