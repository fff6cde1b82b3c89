"""
voxtally/cli.py
Command-line interface for voxtally.

USAGE:
  voxtally serve                          # API server on config host/port
  voxtally serve --port 8080 --db ./ledger.db
  voxtally ledger                         # print per-sender totals
  voxtally ledger --json
  voxtally record --from 923001234567@c.us --duration 12 --name "Ali"

Settings come from voxtally_config.json in the working directory;
flags override them for a single run.
"""

import argparse
import json
import logging
import sys
import time
from pathlib import Path

from voxtally.config import ensure_config

logger = logging.getLogger(__name__)

GREEN  = '\033[92m'
YELLOW = '\033[93m'
RED    = '\033[91m'
RESET  = '\033[0m'
BOLD   = '\033[1m'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog        = 'voxtally',
        description = 'voxtally: WhatsApp voice-message duration ledger',
    )
    parser.add_argument(
        '--verbose', '-v',
        action = 'store_true',
        help   = 'Enable debug logging',
    )
    sub = parser.add_subparsers(dest='command', required=True)

    serve = sub.add_parser('serve', help='Run the HTTP API server')
    serve.add_argument('--host', default=None, help='Bind host (default: config host)')
    serve.add_argument('--port', type=int, default=None, help='Bind port (default: config port / $PORT)')
    serve.add_argument('--db', type=Path, default=None, help='Ledger database path')

    ledger = sub.add_parser('ledger', help='Print the per-sender ledger')
    ledger.add_argument('--db', type=Path, default=None, help='Ledger database path')
    ledger.add_argument('--json', action='store_true', help='Print JSON instead of a table')

    record = sub.add_parser('record', help='Record one voice message by hand')
    record.add_argument('--from', dest='sender', required=True, help="Sender id, e.g. '923001234567@c.us'")
    record.add_argument('--duration', type=int, required=True, help='Duration in seconds')
    record.add_argument('--name', default='', help='Display name')
    record.add_argument('--timestamp', type=int, default=None, help='Epoch seconds (default: now)')
    record.add_argument('--id', dest='message_id', default=None, help='Message id (duplicate ids are ignored)')
    record.add_argument('--db', type=Path, default=None, help='Ledger database path')

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    # ── LOGGING SETUP ────────────────────────────────────────
    log_level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level   = log_level,
        format  = '%(asctime)s [%(levelname)s] %(name)s: %(message)s',
        datefmt = '%H:%M:%S',
    )

    config  = ensure_config()
    db_path = args.db or Path(config['db_path'])

    if args.command == 'serve':
        return _serve(config, db_path, args.host, args.port)
    if args.command == 'ledger':
        return _ledger(db_path, as_json=args.json)
    if args.command == 'record':
        return _record(config, db_path, args)
    return 2


# ── COMMANDS ─────────────────────────────────────────────────

def _serve(config, db_path: Path, host, port) -> int:
    import uvicorn
    from voxtally.api import _build_app

    host = host or config['host']
    port = port or int(config['port'])
    app  = _build_app(db_path=db_path, config=config)

    _print(f"""
+--------------------------------------------------+
|   voxtally API server                            |
+--------------------------------------------------+
|  Local:    http://{host}:{port}
|  DB:       {db_path}
|  Bridge:   {config['bridge_host']}
|  Docs:     http://{host}:{port}/docs
+--------------------------------------------------+
""")
    uvicorn.run(app, host=host, port=port, log_level='info')
    return 0


def _ledger(db_path: Path, as_json: bool = False) -> int:
    from voxtally.errors import StoreError
    from voxtally.store.ledger_store import LedgerStore

    if not db_path.exists():
        _print(f"{YELLOW}No ledger database at {db_path}{RESET}")
        return 1

    try:
        records = LedgerStore(db_path).list_all()
    except StoreError as e:
        _print(f"{RED}Error: {e}{RESET}")
        return 1

    if as_json:
        _print(json.dumps([
            {
                'name':           r.key,
                'notify_name':    r.display_name,
                'total_duration': r.total_duration_sec,
                'last_timestamp': r.last_timestamp,
            }
            for r in records
        ], indent=2))
        return 0

    if not records:
        _print(f"{YELLOW}Ledger is empty.{RESET}")
        return 0

    _print(f"\n{BOLD}{'Sender':<16} {'Name':<24} {'Total':>10}  Last message{RESET}")
    for r in records:
        last = time.strftime('%Y-%m-%d %H:%M:%S', time.localtime(r.last_timestamp))
        _print(f"{r.key:<16} {r.display_name[:24]:<24} {fmt_duration(r.total_duration_sec):>10}  {last}")
    total = sum(r.total_duration_sec for r in records)
    _print(f"\n  {len(records)} senders, {fmt_duration(total)} total\n")
    return 0


def _record(config, db_path: Path, args) -> int:
    from voxtally.aggregators.duration_aggregator import DurationAggregator
    from voxtally.errors import AggregationError
    from voxtally.models.record import VoiceMessageEvent
    from voxtally.store.ledger_store import LedgerStore

    if args.duration < 0:
        _print(f"{RED}Error: --duration must be non-negative{RESET}")
        return 1

    event = VoiceMessageEvent(
        sender_raw_id     = args.sender,
        display_name_hint = args.name,
        duration_sec      = args.duration,
        timestamp         = args.timestamp if args.timestamp is not None else int(time.time()),
        message_id        = args.message_id,
    )
    aggregator = DurationAggregator(
        LedgerStore(db_path), default_region=config['default_region']
    )
    try:
        applied = aggregator.record_event(event)
    except AggregationError as e:
        _print(f"{RED}Error: {e}{RESET}")
        return 1

    if applied:
        _ok(f"Recorded {args.duration}s for {args.sender}")
    else:
        _print(f"  {YELLOW}Duplicate message id {args.message_id}, not recorded{RESET}")
    return 0


# ── PRINT HELPERS ────────────────────────────────────────────

def fmt_duration(seconds: int) -> str:
    if seconds <= 0:
        return '0s'
    h, rem = divmod(seconds, 3600)
    m, s   = divmod(rem, 60)
    if h:
        return f"{h}h {m}m {s}s"
    if m:
        return f"{m}m {s}s"
    return f"{s}s"

def _ok(msg):    _print(f"  {GREEN}✓{RESET} {msg}")
def _print(msg): print(msg)


if __name__ == '__main__':
    sys.exit(main())
