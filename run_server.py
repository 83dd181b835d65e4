#!/usr/bin/env python3
"""APTAN agent backend: ledger mirror + fulfillment loop + HTTP API.

Configuration comes from APTAN_* env vars (see server/config.py).
The agent private key and provider API keys are read from the
environment only, never from code.
"""

import os, sys, logging, threading
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import uvicorn
from server.app import create_app
from server.chain import ChainClient, ConnectivityError
from server.config import Settings
from server.fulfillment import FulfillmentLoop
from server.mirror import LedgerMirror
from server.providers import SolverChain, build_providers
from server.publisher import TaskUpdateBus
from server.store import TaskStore

logger = logging.getLogger("aptan")


def build_services(settings: Settings):
    """Wire store, chain, mirror, solver and loop from settings."""
    store = TaskStore(settings.db_path)
    bus = TaskUpdateBus()
    solver = SolverChain(build_providers(settings.provider_keys, settings.providers))

    chain = ChainClient(
        settings.rpc_urls,
        settings.contract_address,
        private_key=settings.agent_private_key,
        chain_id=settings.chain_id,
    )
    mirror = LedgerMirror(
        chain, store, bus=bus,
        contract_address=settings.contract_address,
        creation_block=settings.sync_from_block,
        window=settings.sync_window,
    )
    loop = None
    if chain.agent_address:
        loop = FulfillmentLoop(
            chain, store, solver, bus=bus,
            max_solution_length=settings.max_solution_length,
            max_retries=settings.max_retries,
            backoff_base=settings.backoff_base,
        )
    return store, bus, solver, chain, mirror, loop


def start_background(mirror, loop, settings: Settings, stop: threading.Event) -> list[threading.Thread]:
    """Mirror and loop each get their own daemon thread and interval."""
    threads = [threading.Thread(target=mirror.serve, args=(stop, settings.sync_interval),
                                name="ledger-mirror", daemon=True)]
    if loop is not None:
        threads.append(threading.Thread(target=loop.serve, args=(stop, settings.poll_interval),
                                        name="fulfillment-loop", daemon=True))
    for t in threads:
        t.start()
    return threads


def main():
    settings = Settings.from_env()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    db_dir = os.path.dirname(settings.db_path)
    if db_dir:
        os.makedirs(db_dir, exist_ok=True)

    store, bus, solver, chain, mirror, loop = build_services(settings)

    try:
        logger.info("[server] Block height %d via %s", chain.current_height(), chain.active_url)
    except ConnectivityError as e:
        # Not fatal: both loops keep retrying on their own schedule
        logger.error("[server] No RPC endpoint reachable yet: %s", e)

    app = create_app(store=store, chain=chain, mirror=mirror, loop=loop, solver=solver, bus=bus)

    stop = threading.Event()
    start_background(mirror, loop, settings, stop)
    if loop is None:
        logger.warning("[server] APTAN_AGENT_PRIVATE_KEY not set, fulfillment loop disabled")
    else:
        logger.info("[server] Agent %s fulfilling tasks", chain.agent_address)
    if not solver.providers:
        logger.warning("[server] No AI providers configured, solutions will use the fallback templates")
    logger.info("[server] Mirroring %s, listening on :%d", settings.contract_address, settings.port)

    try:
        uvicorn.run(app, host="0.0.0.0", port=settings.port)
    finally:
        stop.set()
        store.close()


if __name__ == "__main__":
    main()
