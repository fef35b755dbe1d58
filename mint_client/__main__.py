"""Command line interface for the confirmation outbox.

Usage:
    python -m mint_client drain
    python -m mint_client run
    python -m mint_client list
"""
import argparse
import asyncio
import json
import logging
import signal
import sys

from . import MintClient
from .outbox import ConfirmationOutbox

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def build_outbox(args: argparse.Namespace) -> ConfirmationOutbox:
    return ConfirmationOutbox(client=MintClient(base_url=args.api_url), path=args.path)

async def cmd_drain(args: argparse.Namespace) -> int:
    stats = await build_outbox(args).drain()
    print(json.dumps(stats, indent=2))
    return 0

async def cmd_run(args: argparse.Namespace) -> int:
    outbox = build_outbox(args)
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, outbox.stop)
    await outbox.run()
    return 0

async def cmd_list(args: argparse.Namespace) -> int:
    outbox = build_outbox(args)
    pending, dead = await outbox.load()
    print(json.dumps({
        'pending': [entry.to_dict() for entry in pending],
        'dead': dead
    }, indent=2))
    return 0

COMMANDS = {
    'drain': cmd_drain,
    'run': cmd_run,
    'list': cmd_list
}

def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog='mint_client', description='Deliver queued mint confirmations')
    parser.add_argument('command', choices=sorted(COMMANDS), help='drain once, run continuously, or list the outbox')
    parser.add_argument('--path', default=None, help='Outbox file (defaults to the outbox_path setting)')
    parser.add_argument('--api-url', default=None, help='Mint API base URL (defaults to the api_url setting)')
    args = parser.parse_args(argv)
    return asyncio.run(COMMANDS[args.command](args))

if __name__ == "__main__":
    sys.exit(main())
