"""Development document store entrypoint.

Serves an in-memory RemoteStore over the REST document dialect so the
ledger client can run end-to-end without a hosted database. Documents do
not survive a restart.
"""

import argparse
import asyncio
import signal

import bittensor as bt

from captchapay.base.config import add_args, load_config, load_env
from captchapay.ledger.store.http_server import DocumentStoreServer
from captchapay.ledger.store.memory import MemoryRemoteStore


async def serve(server: DocumentStoreServer, stop: asyncio.Event) -> None:
    await server.start()
    try:
        await stop.wait()
    finally:
        await server.stop()


def main() -> None:
    load_env()

    parser = argparse.ArgumentParser(description="Captchapay development document store")
    bt.logging.add_args(parser)
    add_args(parser)
    args = parser.parse_args()
    config = load_config(args)

    server = DocumentStoreServer(
        store=MemoryRemoteStore(),
        auth_token=config.store_auth_token,
        host=config.server_host,
        port=config.server_port,
    )

    loop = asyncio.new_event_loop()
    stop = asyncio.Event()

    def _signal_handler(sig, frame):
        bt.logging.info({"store_server": "shutdown_signal_received"})
        loop.call_soon_threadsafe(stop.set)

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    try:
        loop.run_until_complete(serve(server, stop))
    except KeyboardInterrupt:
        bt.logging.info({"store_server": "keyboard_interrupt"})
    finally:
        loop.close()
        bt.logging.info({"store_server": "stopped"})


if __name__ == "__main__":
    main()
