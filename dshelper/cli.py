"""Command-line entry point: run the helpers against local cohort data.

Each ``--cohort NAME=PATH`` starts an in-process server holding the data
file (bound to ``--symbol``) or every file of a directory.  Results are
printed as JSON.

    dshelper stats --cohort a=a.csv --cohort b=b.csv --df D --var sex --var bmi
    dshelper outcome --cohort a=a.csv --df D --outcome bmi --age-var age \\
        --bands 0 2 2 5 --band-action g_le --mult-action earliest
"""

from __future__ import annotations

import argparse
import json
import logging
import sys

from dshelper.analysis.outcome import BAND_ACTIONS, make_outcome
from dshelper.analysis.stats import get_stats
from dshelper.client.audit import CallLog
from dshelper.client.connections import Connections
from dshelper.errors import DSHelperError
from dshelper.local.server import LocalDataSource

logger = logging.getLogger("dshelper")


def _cohort(text: str) -> tuple[str, str]:
    name, sep, path = text.partition("=")
    if not sep or not name or not path:
        raise argparse.ArgumentTypeError(f"Expected NAME=PATH, got '{text}'")
    return name, path


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dshelper",
        description="Federated analysis helpers run against local cohort data",
    )
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")
    parser.add_argument(
        "--audit-log", type=str, default=None,
        help="Write every remote call to this JSONL file",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--cohort", type=_cohort, action="append", required=True, metavar="NAME=PATH",
        help="Cohort name and data file or directory (repeatable)",
    )
    common.add_argument("--symbol", default="D", help="Name bound to a single data file")
    common.add_argument("--df", required=True, help="Data frame to analyse")

    stats = sub.add_parser("stats", parents=[common], help="Descriptive statistics")
    stats.add_argument(
        "--var", dest="variables", action="append", required=True,
        help="Variable to summarise (repeatable)",
    )

    outcome = sub.add_parser("outcome", parents=[common], help="Derive outcome per age band")
    outcome.add_argument("--outcome", required=True)
    outcome.add_argument("--age-var", required=True)
    outcome.add_argument("--bands", type=float, nargs="+", required=True)
    outcome.add_argument("--band-action", choices=sorted(BAND_ACTIONS), required=True)
    outcome.add_argument(
        "--mult-action", choices=["earliest", "latest", "nearest"], required=True,
    )
    outcome.add_argument("--mult-vals", type=float, nargs="+", default=None)
    outcome.add_argument("--keep-original", action="store_true")
    outcome.add_argument("--df-name", default=None)
    outcome.add_argument("--id-var", default=None, help="Subject identifier (default: child_id)")
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=getattr(logging, args.log_level.upper()))

    call_log = CallLog(args.audit_log) if args.audit_log else None
    sources = [
        LocalDataSource.from_path(name, path, symbol=args.symbol)
        for name, path in args.cohort
    ]
    conns = Connections(sources, call_log=call_log)

    try:
        if args.command == "stats":
            result = get_stats(df=args.df, variables=args.variables, conns=conns)
        else:
            result = make_outcome(
                df=args.df,
                outcome=args.outcome,
                age_var=args.age_var,
                bands=args.bands,
                band_action=args.band_action,
                mult_action=args.mult_action,
                mult_vals=args.mult_vals,
                keep_original=args.keep_original,
                df_name=args.df_name,
                conns=conns,
                id_var=args.id_var,
            )
    except (DSHelperError, ValueError) as e:
        logger.error("%s failed: %s", args.command, e)
        return 1

    json.dump(result.to_dict(), sys.stdout, indent=2, default=str)
    sys.stdout.write("\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
