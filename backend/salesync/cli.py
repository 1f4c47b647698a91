"""
Command-line entry point.

    salesync start  --platform shopify      # new job + first tick
    salesync tick   --platform shopify      # what the external timer runs
    salesync run    --platform shopify --start --interval 300
    salesync status --platform woocommerce
    salesync reset  --platform woocommerce
    salesync export --platform shopify --output-dir output
"""

import argparse
import json
import sys
from typing import List, Optional

from .config import SyncConfig
from .errors import SalesSyncError
from .models import PLATFORMS
from .sink import export_rows_csv
from .worker import SyncWorker, TickOutcome, build_worker

DEFAULT_RUN_INTERVAL = 300

# Outcomes after which `run` stops ticking
FINAL_OUTCOMES = {
    TickOutcome.IDLE,
    TickOutcome.NO_CHECKPOINT,
    TickOutcome.COMPLETED,
    TickOutcome.EXPIRED,
}


def make_worker(platform: str) -> SyncWorker:
    return build_worker(SyncConfig.from_env(platform))


def _print_result(result) -> None:
    print(f"{result.outcome.value.upper()}: {result.message}", flush=True)


def cmd_start(worker: SyncWorker, args) -> int:
    result = worker.start()
    _print_result(result)
    return 1 if result.outcome == TickOutcome.FAILED else 0


def cmd_tick(worker: SyncWorker, args) -> int:
    result = worker.tick()
    _print_result(result)
    return 1 if result.outcome == TickOutcome.FAILED else 0


def cmd_run(worker: SyncWorker, args) -> int:
    """Stand-in for the external timer: tick until the job is finished."""
    result = worker.start() if args.start else worker.tick()
    _print_result(result)
    ticks = 1
    while result.outcome not in FINAL_OUTCOMES:
        if args.max_ticks and ticks >= args.max_ticks:
            print(f"Stopped after {ticks} ticks (--max-ticks)", flush=True)
            break
        worker.clock.sleep(args.interval)
        result = worker.tick()
        _print_result(result)
        ticks += 1
    return 0 if result.outcome in FINAL_OUTCOMES - {TickOutcome.EXPIRED} else 1


def cmd_status(worker: SyncWorker, args) -> int:
    print(json.dumps(worker.status(), indent=2, default=str))
    return 0


def cmd_reset(worker: SyncWorker, args) -> int:
    worker.reset()
    print(f"Reset {worker.source_key}")
    return 0


def cmd_export(worker: SyncWorker, args) -> int:
    path = export_rows_csv(worker.sink, worker.source_key, output_dir=args.output_dir,
                           output_file=args.output_file)
    return 0 if path else 1


COMMANDS = {
    'start': cmd_start,
    'tick': cmd_tick,
    'run': cmd_run,
    'status': cmd_status,
    'reset': cmd_reset,
    'export': cmd_export,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='salesync',
        description='Resumable catalog and order sync for Shopify and WooCommerce'
    )
    subparsers = parser.add_subparsers(dest='command', required=True)

    for name, help_text in [
        ('start', 'Start a new job (discards any job in progress) and tick once'),
        ('tick', 'Advance the active job, if any'),
        ('run', 'Tick repeatedly until the job finishes'),
        ('status', 'Show worker status and checkpoint'),
        ('reset', 'Cancel the current job and release the lock'),
        ('export', 'Export output rows to CSV'),
    ]:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument('--platform', '-p', required=True, choices=PLATFORMS,
                         help='Store platform to sync')
        if name == 'run':
            sub.add_argument('--start', action='store_true',
                             help='Start a new job before ticking')
            sub.add_argument('--interval', type=float, default=DEFAULT_RUN_INTERVAL,
                             help=f'Seconds between ticks (default: {DEFAULT_RUN_INTERVAL})')
            sub.add_argument('--max-ticks', type=int, default=None,
                             help='Stop after this many ticks')
        if name == 'export':
            sub.add_argument('--output-dir', default='output',
                             help='Directory for the CSV file (default: output)')
            sub.add_argument('--output-file', default=None,
                             help='CSV filename (default: timestamped)')
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point for the sync CLI."""
    args = build_parser().parse_args(argv)

    try:
        worker = make_worker(args.platform)
    except SalesSyncError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    return COMMANDS[args.command](worker, args)


if __name__ == '__main__':
    sys.exit(main())
