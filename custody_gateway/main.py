"""Entry point for the custody gateway.

Loads and validates configuration once, builds the provider clients and
services, and serves the FastAPI app with uvicorn until SIGTERM/SIGINT.
"""

from __future__ import annotations

import asyncio
import signal
import sys

import structlog
import uvicorn

from custody_gateway.logging import configure_logging

configure_logging()

from custody_gateway import __version__
from custody_gateway.api.server import create_app
from custody_gateway.chain.client import ChainClient
from custody_gateway.clients.custody import CustodyClient
from custody_gateway.clients.identity import IdentityClient
from custody_gateway.config import Config
from custody_gateway.core.address_book import AddressBook
from custody_gateway.core.transfers import TransferOrchestrator
from custody_gateway.core.wallets import WalletService

log = structlog.get_logger()


async def run_server(app: object, host: str, port: int) -> None:
    """Run uvicorn as an async task."""
    config = uvicorn.Config(
        app, host=host, port=port, log_level="info",
        timeout_graceful_shutdown=10,
    )
    server = uvicorn.Server(config)
    await server.serve()


async def async_main(config: Config) -> None:
    """Wire every component from ``config`` and serve until a shutdown signal."""
    address_book = AddressBook(config.database_path)
    identity = IdentityClient(
        base_url=config.supabase_url,
        anon_key=config.supabase_anon_key,
        timeout=config.http_timeout,
    )
    custody = CustodyClient(
        api_key=config.para_api_key,
        base_url=config.para_base_url,
        timeout=config.http_timeout,
    )
    chain = ChainClient(config.rpc_url, chain_id=config.chain_id, timeout=config.http_timeout)

    wallets = WalletService(
        address_book=address_book,
        custody=custody,
        chain=chain,
        poll_attempts=config.wallet_poll_attempts,
        poll_interval=config.wallet_poll_interval,
    )
    transfers = TransferOrchestrator(
        address_book=address_book,
        custody=custody,
        chain=chain,
        chain_id=config.chain_id,
        default_gas_limit=config.default_gas_limit,
    )

    app = create_app(
        identity=identity,
        wallets=wallets,
        transfers=transfers,
        chain=chain,
        address_book=address_book,
        watch_new_wallets=config.wallet_watch_enabled,
    )

    log.info(
        "gateway_starting",
        version=__version__,
        env=config.app_env,
        host=config.api_host,
        port=config.api_port,
        chain_id=config.chain_id,
        database=config.database_path,
    )

    server_task = asyncio.create_task(run_server(app, config.api_host, config.api_port))
    shutdown_event = asyncio.Event()

    def _shutdown(sig: signal.Signals) -> None:
        log.info("shutdown_signal", signal=sig.name)
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    done_waiter = asyncio.create_task(shutdown_event.wait())
    await asyncio.wait({server_task, done_waiter}, return_when=asyncio.FIRST_COMPLETED)
    log.info("shutting_down")
    for t in (server_task, done_waiter):
        t.cancel()
    try:
        await asyncio.wait_for(
            asyncio.gather(server_task, done_waiter, return_exceptions=True),
            timeout=15.0,
        )
    except TimeoutError:
        log.warning("shutdown_timeout", msg="Server did not stop within 15s")

    for name, closer in (
        ("identity", identity.close),
        ("custody", custody.close),
        ("chain", chain.close),
    ):
        try:
            await closer()
        except Exception as e:
            log.warning("client_close_error", client=name, error=str(e))
    address_book.close()
    log.info("shutdown_complete")


def main() -> None:
    """Start the custody gateway. Exits non-zero when configuration is invalid."""
    try:
        config = Config()
        warnings = config.validate()
    except ValueError as e:
        log.critical("config_invalid", error=str(e))
        sys.exit(1)
    for w in warnings:
        log.warning("config_warning", msg=w)
    asyncio.run(async_main(config))


if __name__ == "__main__":
    main()
