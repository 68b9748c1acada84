"""Run or query the WebUntis substitution cache.

Standalone CLI around SubstitutionService. Logs go to stderr, so stdout
carries only the JSON output of the query commands.

Run with:  python scripts/monitor.py serve
Refresh:   python scripts/monitor.py refresh
Backup:    python scripts/monitor.py backup
One day:   python scripts/monitor.py show 2025-12-19
Window:    python scripts/monitor.py window
Debug:     python scripts/monitor.py --headed refresh

Configuration comes from MONITOR_* environment variables or .env
(see src/substitutions/config.py).

Exit codes:
  0 = success
  1 = error (message on stderr)
"""

import argparse
import asyncio
import json
import os
import sys
from datetime import date

from dotenv import load_dotenv

load_dotenv()

# Add project root to path for src imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from src.substitutions.config import get_config  # noqa: E402
from src.substitutions.logging import get_logger, setup_logging  # noqa: E402
from src.substitutions.service import SubstitutionService  # noqa: E402

log = get_logger("monitor")


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected YYYY-MM-DD, got {value!r}")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments using argparse."""
    parser = argparse.ArgumentParser(
        description="Keep the WebUntis substitution plan cached and query it.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--headed",
        action="store_true",
        help="Launch browser in headed mode (visible window).",
    )
    parser.add_argument(
        "--cache-dir",
        type=str,
        default=None,
        help="Override the cache directory (MONITOR_CACHE_DIR).",
    )

    commands = parser.add_subparsers(dest="command", required=True)
    commands.add_parser("serve", help="Run the refresh and backup timers.")
    commands.add_parser("refresh", help="Refresh the window once and print the report.")
    commands.add_parser("backup", help="Refresh, then copy retained days to the backup tier.")
    show = commands.add_parser("show", help="Print the cached plan for one date.")
    show.add_argument("date", type=_parse_date, help="Date as YYYY-MM-DD.")
    commands.add_parser("window", help="Print all retained days.")
    return parser.parse_args(argv)


def _print_json(payload: object) -> None:
    print(json.dumps(payload, indent=2, ensure_ascii=False))


async def main(args: argparse.Namespace) -> None:
    config = get_config()
    overrides: dict = {}
    if args.headed:
        overrides["headless"] = False
    if args.cache_dir:
        overrides["cache_dir"] = args.cache_dir
    if overrides:
        config = config.model_copy(update=overrides)

    setup_logging(json_output=config.log_json, log_level=config.log_level)
    service = SubstitutionService(config)

    if args.command == "serve":
        log.info("monitor_serving", cache_dir=config.cache_dir)
        await service.serve()
    elif args.command == "refresh":
        report = await service.refresh()
        _print_json(report.model_dump(mode="json"))
    elif args.command == "backup":
        backed_up = await service.backup()
        _print_json([day.isoformat() for day in backed_up])
    elif args.command == "show":
        view = await service.get_for_date(args.date)
        _print_json(view.model_dump(mode="json", by_alias=True))
    elif args.command == "window":
        window = await service.get_window()
        _print_json(window.model_dump(mode="json", by_alias=True))


if __name__ == "__main__":
    args = _parse_args()
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)
