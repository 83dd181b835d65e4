#!/usr/bin/env python3
"""One-shot ledger sync for operators.

Runs through the same LedgerMirror the server uses, so the mirror stays
the only writer of chain-derived fields.

Usage:
    python manual_sync.py                      # one cycle from the checkpoint
    python manual_sync.py --from-block 9790000 # one cycle from an explicit block
    python manual_sync.py --reset --all        # rewind and sync up to the chain head
    python manual_sync.py --status
"""

import os, sys, json, argparse, logging
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from server.chain import ChainClient
from server.config import Settings
from server.mirror import LedgerMirror
from server.store import TaskStore

logger = logging.getLogger("aptan.manual_sync")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Sync APTAN ledger events into the task store")
    parser.add_argument("--from-block", type=int, default=None, help="start block (default: checkpoint)")
    parser.add_argument("--reset", action="store_true", help="rewind the checkpoint before syncing")
    parser.add_argument("--all", action="store_true", help="keep syncing windows until the chain head")
    parser.add_argument("--max-cycles", type=int, default=1000, help="cycle cap for --all")
    parser.add_argument("--status", action="store_true", help="print the checkpoint and exit")
    parser.add_argument("--db", default=None, help="task store path (default: APTAN_DB)")
    parser.add_argument("--json", action="store_true", help="print reports as JSON")
    return parser


def run(mirror: LedgerMirror, args) -> list:
    """Run the requested cycles. Returns the sync reports."""
    if args.reset:
        mirror.reset(args.from_block)
    reports = []
    report = mirror.sync_range(args.from_block) if args.from_block is not None and not args.reset \
        else mirror.sync_once()
    while report is not None:
        reports.append(report)
        if not args.all or report.noop or report.to_block >= report.height:
            break
        if len(reports) >= args.max_cycles:
            logger.warning("[sync] Stopping after %d cycles", len(reports))
            break
        report = mirror.sync_once()
    return reports


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s %(name)s: %(message)s")

    store = TaskStore(args.db or settings.db_path)
    chain = ChainClient(settings.rpc_urls, settings.contract_address, chain_id=settings.chain_id)
    mirror = LedgerMirror(chain, store, contract_address=settings.contract_address,
                          creation_block=settings.sync_from_block, window=settings.sync_window)
    try:
        if args.status:
            print(json.dumps(mirror.status(), indent=2, default=str))
            return 0

        reports = run(mirror, args)
        if not reports:
            print("Sync failed: chain unavailable", file=sys.stderr)
            return 1
        for r in reports:
            if args.json:
                print(json.dumps(r.to_dict()))
            elif r.noop:
                print(f"Already synced up to block {r.height}")
            else:
                print(f"Blocks {r.from_block}-{r.to_block}: {r.created} created, "
                      f"{r.completed} completed, {r.cancelled} cancelled")
        return 0
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
