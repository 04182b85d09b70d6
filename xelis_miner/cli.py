from __future__ import annotations

import argparse
import ipaddress
import logging
import os
import sys
from typing import Callable, Optional, TextIO

from .mining.errors import MinerError
from .mining.nonce_domain import MAX_WORKERS
from .mining.oracle import builtin_names
from .mining.version import get_version
from .miner import run_miner

log = logging.getLogger("xelis_miner.cli")

ENV_PREFIX = "XELIS_MINER_"


class FriendlyFormatter(logging.Formatter):
    """
    `[12:00:01] INFO     core       MainThread | message`

    Logger names are shortened to their last component; the emitting thread
    is shown next to it.
    """

    PALETTE = {
        logging.DEBUG: "36",
        logging.INFO: "32",
        logging.WARNING: "33",
        logging.ERROR: "31",
        logging.CRITICAL: "41",
    }

    def __init__(self, *, use_color: bool) -> None:
        super().__init__(
            fmt="[%(asctime)s] %(level_display)s %(shortname)-10s %(threadName)s | %(message)s",
            datefmt="%H:%M:%S",
        )
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        record.shortname = record.name.rpartition(".")[2]
        label = record.levelname.ljust(8)
        code = self.PALETTE.get(record.levelno) if self.use_color else None
        record.level_display = f"\033[{code}m{label}\033[0m" if code else label
        return super().format(record)


def setup_logging(level: int, stream: Optional[TextIO] = None) -> None:
    """Replace the root handlers with one colour-aware stream handler."""
    stream = stream or sys.stderr
    handler = logging.StreamHandler(stream)
    handler.setFormatter(FriendlyFormatter(use_color=stream.isatty()))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)
    root.addHandler(handler)


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(ENV_PREFIX + name, default)


def _env_flag(name: str) -> bool:
    return (_env(name) or "").strip().lower() in ("1", "true", "yes", "on")


def _thread_count(value: str) -> int:
    n = int(value)
    if not 1 <= n <= MAX_WORKERS:
        raise argparse.ArgumentTypeError(f"must be between 1 and {MAX_WORKERS}")
    return n


def parse_args(argv: list[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Xelis (XelisHashV2) Stratum CPU miner",
    )
    parser.add_argument(
        "--host", default=_env("HOST", "de.xelis.herominers.com"), help="Stratum host"
    )
    parser.add_argument(
        "--port", type=int, default=_env("PORT", "1225"), help="Stratum port"
    )
    parser.add_argument("--wallet", default=_env("WALLET"), help="Xelis wallet address")
    parser.add_argument("--worker", default=_env("WORKER"), help="Worker (rig) name")
    parser.add_argument(
        "--threads",
        type=_thread_count,
        default=_env("THREADS", str(min(os.cpu_count() or 1, MAX_WORKERS))),
        help="Search threads (default: one per CPU)",
    )
    parser.add_argument(
        "--oracle",
        default=_env("ORACLE"),
        help="Hash function: 'module:attribute' of a XelisHashV2 binding "
        f"(required), or a built-in ({', '.join(builtin_names())}) for local pools",
    )
    parser.add_argument(
        "--allow-dev-oracle",
        action="store_true",
        default=_env_flag("ALLOW_DEV_ORACLE"),
        help="Permit a built-in oracle against a non-loopback pool.",
    )
    parser.add_argument("--agent", default=_env("AGENT"), help="Client id sent on subscribe")
    parser.add_argument(
        "--stats-interval",
        type=float,
        default=_env("STATS_INTERVAL", "2"),
        help="Seconds between stats lines",
    )
    parser.add_argument(
        "--connect-timeout",
        type=float,
        default=_env("CONNECT_TIMEOUT", "10"),
        help="Seconds to wait for TCP connect and the subscribe reply",
    )
    parser.add_argument(
        "--reconnect",
        action="store_true",
        default=_env_flag("RECONNECT"),
        help="Reconnect with exponential backoff when the pool connection drops.",
    )
    parser.add_argument(
        "--apply-difficulty-now",
        action="store_true",
        default=_env_flag("APPLY_DIFFICULTY_NOW"),
        help="Restart the current job with the new target on mining.set_difficulty "
        "instead of waiting for the next job.",
    )
    parser.add_argument(
        "--log-level",
        default=_env("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Log verbosity",
    )
    parser.add_argument("--version", action="version", version=get_version())
    args = parser.parse_args(argv)
    _check_oracle(parser, args)
    return args


def _is_loopback(host: str) -> bool:
    if host.lower() == "localhost":
        return True
    try:
        return ipaddress.ip_address(host).is_loopback
    except ValueError:
        return False


def _check_oracle(parser: argparse.ArgumentParser, args: argparse.Namespace) -> None:
    """Require an oracle; built-in ones only against loopback pools unless forced."""
    if not args.oracle:
        parser.error(f"--oracle is required (or set {ENV_PREFIX}ORACLE)")
    if (
        args.oracle.strip() in builtin_names()
        and not _is_loopback(args.host)
        and not args.allow_dev_oracle
    ):
        parser.error(
            f"--oracle {args.oracle} is for local pools only; pass --allow-dev-oracle "
            f"to use it against {args.host}"
        )


def fill_identity(
    args: argparse.Namespace,
    *,
    prompt: Callable[[str], str] = input,
    interactive: Optional[bool] = None,
) -> argparse.Namespace:
    """
    Ask for wallet/worker on the terminal when neither flag nor environment
    provided them. Raises SystemExit when they are missing and stdin is not
    interactive.
    """
    if interactive is None:
        interactive = sys.stdin.isatty()
    for attr, question in (
        ("wallet", "Enter your Xelis wallet address: "),
        ("worker", "Enter your miner name: "),
    ):
        value = (getattr(args, attr) or "").strip()
        if not value and interactive:
            value = prompt(question).strip()
        if not value:
            raise SystemExit(f"error: --{attr} is required (or set {ENV_PREFIX}{attr.upper()})")
        setattr(args, attr, value)
    return args


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    setup_logging(getattr(logging, args.log_level))
    fill_identity(args)
    log.info("Xelis miner %s (XelisHashV2)", get_version())

    try:
        run_miner(args)
    except KeyboardInterrupt:
        pass
    except MinerError as e:
        log.critical("%s", e.message)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
