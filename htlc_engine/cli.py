"""Command-line interface for the HTLC engine."""

import asyncio
import logging
import signal
import sys
import time

import click
import structlog
from structlog.stdlib import LoggerFactory

from . import __version__
from .api import SwapServer
from .auth import CallerAuthorizer
from .client import HTLCClient
from .config import config
from .database import MemorySwapStore
from .engine import HTLCEngine
from .errors import HTLCError
from .events import ConsoleEventSink, EventBus
from .identity import as_bytes32, derive_swap_id, hash_preimage, new_secret
from .ledger import InMemoryLedger, ManualClock
from .models import SwapRecord, SwapStatus
from .service import SwapService

structlog.configure(
    processors=[
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.dev.ConsoleRenderer(),
    ],
    context_class=dict,
    logger_factory=LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


def _echo_swap(swap: SwapRecord):
    click.echo(f"Swap ID: {swap.swap_id}")
    click.echo(f"  State: {swap.status.value}")
    click.echo(f"  {swap.sender} → {swap.receiver}")
    click.echo(f"  Amount: {swap.amount} {swap.asset}")
    click.echo(f"  Hashlock: {swap.hashlock}")
    click.echo(f"  Timelock: {swap.timelock}")
    if swap.preimage:
        click.echo(f"  Preimage: {swap.preimage}")


def _hex_option(value: str, name: str) -> bytes:
    try:
        return bytes.fromhex(value[2:] if value.startswith("0x") else value)
    except ValueError:
        raise click.BadParameter(f"{name} must be hex") from None


def _run_client_call(call):
    """Run a client call and turn service errors into a non-zero exit."""
    try:
        return call()
    except HTLCError as e:
        click.echo(f"✗ {e.code}: {e.message}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
def cli():
    """HTLC engine - hash time-locked swaps of custodied value."""
    logging.basicConfig(format="%(message)s", level=config.log_level)


@cli.command()
@click.option("--host", default=config.api_host, help="Host to bind to")
@click.option("--port", default=config.api_port, type=int, help="Port to listen on")
def serve(host: str, port: int):
    """Run the swap HTTP service."""
    logger.info("Starting HTLC engine", version=__version__)

    async def run():
        service = SwapService()
        service.init()

        server = SwapServer(
            service.engine,
            service.authorizer,
            ledger=service.ledger,
            host=host,
            port=port,
        )
        stop_event = asyncio.Event()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, stop_event.set)

        try:
            await server.start()
            await stop_event.wait()
        finally:
            await server.stop()
            service.close()

    asyncio.run(run())


@cli.command()
def secret():
    """Generate a random preimage and its hashlock."""
    preimage, hashlock = new_secret()
    click.echo(f"Preimage: {preimage.hex()}")
    click.echo(f"Hashlock: {hashlock.hex()}")


@cli.command("swap-id")
@click.option("--sender", required=True)
@click.option("--receiver", required=True)
@click.option("--hashlock", required=True, help="Hashlock as hex")
@click.option("--timelock", required=True, type=int)
def swap_id(sender: str, receiver: str, hashlock: str, timelock: int):
    """Compute the identifier a swap will get, without touching the service."""
    try:
        derived = derive_swap_id(sender, receiver, as_bytes32(hashlock, "hashlock"), timelock)
    except ValueError as e:
        raise click.BadParameter(str(e)) from None
    click.echo(derived.hex())


@cli.command()
@click.option("--account", required=True)
@click.option("--asset", required=True)
@click.option("--amount", required=True, type=int)
def fund(account: str, asset: str, amount: int):
    """Credit an account in the local ledger database."""
    service = SwapService()
    service.init()
    try:
        service.ledger.mint(account, asset, amount)
        click.echo(f"✓ {account} now holds {service.ledger.balance_of(account, asset)} {asset}")
    except HTLCError as e:
        click.echo(f"✗ {e.code}: {e.message}", err=True)
        sys.exit(1)
    finally:
        service.close()


@cli.command()
@click.option("--account", required=True)
@click.option("--asset", required=True)
def balance(account: str, asset: str):
    """Show an account balance from the local ledger database."""
    service = SwapService()
    service.init()
    try:
        click.echo(f"{account}: {service.ledger.balance_of(account, asset)} {asset}")
    finally:
        service.close()


@cli.command()
@click.option("--sender", required=True, help="Funding identity (also the caller)")
@click.option("--receiver", required=True)
@click.option("--asset", required=True)
@click.option("--amount", required=True, type=int)
@click.option("--hashlock", required=True, help="Hashlock as hex")
@click.option("--timelock", type=int, help="Absolute expiry timestamp")
@click.option("--expires-in", type=int, help="Expiry in seconds from now")
@click.option("--url", default=config.api_url, help="Swap service URL")
def initiate(sender, receiver, asset, amount, hashlock, timelock, expires_in, url):
    """Escrow value and open a swap on the service."""
    if timelock is None and expires_in is None:
        raise click.UsageError("Pass --timelock or --expires-in")
    if timelock is None:
        timelock = int(time.time()) + expires_in

    client = HTLCClient(caller=sender, base_url=url)
    try:
        swap = _run_client_call(
            lambda: client.initiate(
                sender, receiver, asset, amount, _hex_option(hashlock, "hashlock"), timelock
            )
        )
    finally:
        client.close()

    click.echo("✓ Swap initiated")
    _echo_swap(swap)


@cli.command()
@click.option("--swap-id", "swap_id_", required=True)
@click.option("--preimage", required=True, help="Secret as hex")
@click.option("--caller", required=True, help="Receiver identity")
@click.option("--url", default=config.api_url, help="Swap service URL")
def claim(swap_id_, preimage, caller, url):
    """Claim a swap by revealing the secret."""
    client = HTLCClient(caller=caller, base_url=url)
    try:
        swap = _run_client_call(
            lambda: client.claim(swap_id_, _hex_option(preimage, "preimage"))
        )
    finally:
        client.close()

    click.echo("✓ Swap claimed")
    _echo_swap(swap)


@cli.command()
@click.option("--swap-id", "swap_id_", required=True)
@click.option("--caller", required=True, help="Sender identity")
@click.option("--url", default=config.api_url, help="Swap service URL")
def refund(swap_id_, caller, url):
    """Refund an expired swap to its sender."""
    client = HTLCClient(caller=caller, base_url=url)
    try:
        swap = _run_client_call(lambda: client.refund(swap_id_))
    finally:
        client.close()

    click.echo("✓ Swap refunded")
    _echo_swap(swap)


@cli.command()
@click.option("--swap-id", "swap_id_", required=True)
def show(swap_id_):
    """Show one swap from the local database."""
    service = SwapService()
    service.init()
    try:
        _echo_swap(service.engine.get_swap(swap_id_))
    except (HTLCError, ValueError) as e:
        click.echo(f"✗ {e}", err=True)
        sys.exit(1)
    finally:
        service.close()


@cli.command()
@click.option(
    "--status",
    type=click.Choice([s.value for s in SwapStatus]),
    default=None,
    help="Only show swaps in this state",
)
@click.option("--limit", default=10, help="Number of swaps to show")
def list_swaps(status, limit: int):
    """List recent swaps from the local database."""
    service = SwapService()
    service.init()
    try:
        swaps = service.engine.list_swaps(
            status=SwapStatus(status) if status else None, limit=limit
        )
    finally:
        service.close()

    if not swaps:
        click.echo("No swaps found")
        return

    click.echo(f"Recent {len(swaps)} swaps:\n")
    for swap in swaps:
        _echo_swap(swap)
        click.echo()


@cli.command()
@click.option("--secret", "secret_", default="secret", help="Secret the receiver knows")
@click.option("--guess", default=None, help="Secret the receiver tries (defaults to --secret)")
def simulate(secret_: str, guess):
    """Walk one swap through its lifecycle on an in-memory ledger."""
    clock = ManualClock(start=1_000)
    ledger = InMemoryLedger()
    authorizer = CallerAuthorizer()
    engine = HTLCEngine(
        clock=clock,
        store=MemorySwapStore(),
        authorizer=authorizer,
        ledger=ledger,
        events=EventBus([ConsoleEventSink()]),
    )
    ledger.mint("alice", "XLM", 100)
    timelock = clock.now() + 300

    with authorizer.acting_as("alice"):
        swap = engine.initiate(
            "alice", "bob", "XLM", 100, hash_preimage(secret_.encode()), timelock
        )

    clock.set(timelock - 1)
    try:
        with authorizer.acting_as("bob"):
            engine.claim(swap, (guess if guess is not None else secret_).encode())
    except HTLCError as e:
        click.echo(f"✗ claim failed: {e.code}")
        clock.set(timelock)
        with authorizer.acting_as("alice"):
            engine.refund(swap)

    record = engine.get_swap(swap)
    click.echo(f"Final state: {record.status.value}")
    click.echo(f"alice: {ledger.balance_of('alice', 'XLM')} XLM")
    click.echo(f"bob: {ledger.balance_of('bob', 'XLM')} XLM")


def main():
    """Main entry point."""
    cli()


if __name__ == "__main__":
    main()
