"""
Standing CLI: recurring payment authorization.

Commands:
    standing init            Create the engine state with an owner
    standing worker          Register or inspect attested workers
    standing codehash        Approve worker code (owner)
    standing merchant        Register or list merchants (owner)
    standing subscription    Create and manage subscriptions (payer)
    standing key             Generate or register delegated keys
    standing due             List due subscriptions (approved worker)
    standing pay             Process one payment with a delegated key
    standing audit           View audit trail
    standing demo            Run a full in-memory demo flow
"""

from __future__ import annotations

import logging
import os
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

import click

from . import __version__
from .agent import PaymentAgent
from .attestation import SignedQuoteVerifier, generate_quoting_key, issue_quote
from .audit import AuditTrail
from .clock import FixedClock
from .engine import Caller, SubscriptionEngine
from .errors import StandingError
from .keys import generate_delegated_key, load_delegated_key, save_delegated_key, sign_payment_request
from .money import format_amount, parse_amount
from .state import EngineState, StateStore
from .subscription import Frequency, PaymentMethod, Subscription
from .transfers import HttpTransferExecutor, RecordingTransferExecutor


# ── Storage ───────────────────────────────────────────────────────

def _standing_dir() -> Path:
    override = os.getenv("STANDING_HOME")
    return Path(override) if override else Path.home() / ".standing"


def _secrets_dir() -> Path:
    override = os.getenv("STANDING_SECRETS_DIR")
    return Path(override) if override else Path.home() / ".standing-secrets"


def _state_store() -> StateStore:
    override = os.getenv("STANDING_STATE_PATH")
    return StateStore(Path(override) if override else _standing_dir() / "state.json")


def _audit() -> AuditTrail:
    return AuditTrail(
        path=_standing_dir() / "audit.jsonl",
        key_path=_secrets_dir() / "audit_hmac.key",
    )


def _transfer_executor():
    endpoint = os.getenv("STANDING_TRANSFER_ENDPOINT")
    if endpoint:
        return HttpTransferExecutor(endpoint)
    return RecordingTransferExecutor()


@contextmanager
def _engine() -> Iterator[SubscriptionEngine]:
    """Engine over the locked state file; state is saved only if the block succeeds."""
    try:
        trail = _audit()
    except RuntimeError as exc:
        _fail(str(exc))
    transfers = _transfer_executor()
    try:
        with _state_store().transaction() as state:
            yield SubscriptionEngine(
                state,
                verifier=SignedQuoteVerifier(),
                transfers=transfers,
                audit=trail,
            )
    finally:
        if isinstance(transfers, HttpTransferExecutor):
            transfers.close()


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _fmt_time(ts: Optional[int]) -> str:
    if ts is None:
        return "Never"
    return time.strftime("%Y-%m-%d %H:%M", time.localtime(ts))


def _echo_subscription(sub: Subscription) -> None:
    cap = f"{sub.payments_made}/{sub.max_payments}" if sub.max_payments is not None else f"{sub.payments_made}"
    amount = f"{sub.amount}"
    if sub.payment_method.is_native:
        amount += f" ({format_amount(sub.amount)} native)"
    click.echo(f"{sub.id}")
    click.echo(f"  Status:    {sub.status.value}")
    click.echo(f"  Payer:     {sub.user_id}")
    click.echo(f"  Merchant:  {sub.merchant_id}")
    click.echo(f"  Amount:    {amount}")
    click.echo(f"  Method:    {sub.payment_method.describe()}")
    click.echo(f"  Frequency: {sub.frequency.value}")
    click.echo(f"  Payments:  {cap}")
    click.echo(f"  Next due:  {_fmt_time(sub.next_payment_date)}")
    click.echo(f"  Ends:      {_fmt_time(sub.end_date)}")


principal_option = click.option(
    "--principal",
    envvar="STANDING_PRINCIPAL",
    required=True,
    help="Authenticated caller identity (env STANDING_PRINCIPAL)",
)


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version=__version__)
@click.option("--verbose", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Standing — recurring payment authorization for attested agents."""
    if verbose:
        logging.basicConfig(level=logging.DEBUG, format="%(levelname)s %(name)s: %(message)s")


@main.command()
@click.option("--owner", required=True, help="Principal allowed to approve codehashes and merchants")
def init(owner: str):
    """Create a new engine state file."""
    store = _state_store()
    try:
        store.initialize(owner)
    except (FileExistsError, ValueError) as exc:
        _fail(f"Failed to initialize: {exc}")
    click.echo(f"✅ State initialized: {store.path}")
    click.echo(f"   Owner: {owner}")


# Workers

@main.group("worker")
def worker_group():
    """Worker admission."""
    pass


@worker_group.command("register")
@principal_option
@click.option("--quote-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--trust-anchor-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True)
@click.option("--checksum", required=True, help="Build artifact checksum")
@click.option("--codehash", required=True, help="Codehash the worker runs")
def worker_register(principal: str, quote_file: Path, trust_anchor_file: Path, checksum: str, codehash: str):
    """Register the calling worker after attestation."""
    try:
        with _engine() as engine:
            ok = engine.register_worker(
                Caller(principal),
                quote_file.read_bytes(),
                trust_anchor_file.read_bytes(),
                checksum,
                codehash,
            )
    except (StandingError, FileNotFoundError) as exc:
        _fail(f"Failed to register worker: {exc}")
    if not ok:
        _fail("Worker registration failed: attestation rejected")
    click.echo(f"✅ Worker registered: {principal}")
    click.echo(f"   Codehash: {codehash}")


@worker_group.command("show")
@click.argument("principal")
def worker_show(principal: str):
    """Show a worker and whether its codehash is approved."""
    try:
        with _engine() as engine:
            worker = engine.get_worker(principal)
            approved = engine.is_approved_worker(principal)
    except (StandingError, FileNotFoundError) as exc:
        _fail(str(exc))
    click.echo(f"Worker:   {principal}")
    click.echo(f"Checksum: {worker.checksum}")
    click.echo(f"Codehash: {worker.codehash}")
    click.echo(f"Approved: {approved}")


# Owner administration

@main.group("codehash")
def codehash_group():
    """Approved codehash allowlist."""
    pass


@codehash_group.command("approve")
@principal_option
@click.argument("codehash")
def codehash_approve(principal: str, codehash: str):
    """Approve a codehash (owner only)."""
    try:
        with _engine() as engine:
            engine.approve_codehash(Caller(principal), codehash)
    except (StandingError, ValueError, FileNotFoundError) as exc:
        _fail(f"Failed to approve codehash: {exc}")
    click.echo(f"✅ Codehash approved: {codehash}")


@main.group("merchant")
def merchant_group():
    """Registered merchants."""
    pass


@merchant_group.command("register")
@principal_option
@click.argument("merchant_id")
def merchant_register(principal: str, merchant_id: str):
    """Register a merchant (owner only)."""
    try:
        with _engine() as engine:
            engine.register_merchant(Caller(principal), merchant_id)
    except (StandingError, ValueError, FileNotFoundError) as exc:
        _fail(f"Failed to register merchant: {exc}")
    click.echo(f"✅ Merchant registered: {merchant_id}")


@merchant_group.command("list")
def merchant_list():
    """List registered merchants."""
    try:
        merchants = _state_store().load().merchants
    except FileNotFoundError as exc:
        _fail(str(exc))
    if not merchants:
        click.echo("No merchants registered")
        return
    for merchant_id in sorted(merchants):
        click.echo(merchant_id)


# Subscriptions

@main.group("subscription")
def subscription_group():
    """Subscription lifecycle."""
    pass


@subscription_group.command("create")
@principal_option
@click.option("--merchant", required=True, help="Registered merchant id")
@click.option("--amount", required=True, help="Amount per payment in base units")
@click.option(
    "--frequency",
    type=click.Choice([f.value for f in Frequency], case_sensitive=False),
    required=True,
)
@click.option("--token-id", default=None, help="Pay with this fungible token instead of native currency")
@click.option("--max-payments", type=int, default=None, help="Cancel after this many payments")
@click.option("--end-date", type=int, default=None, help="Cancel at this unix timestamp")
def subscription_create(
    principal: str,
    merchant: str,
    amount: str,
    frequency: str,
    token_id: Optional[str],
    max_payments: Optional[int],
    end_date: Optional[int],
):
    """Create a subscription paid by the calling principal."""
    try:
        method = PaymentMethod.token(token_id) if token_id else PaymentMethod.native()
        with _engine() as engine:
            subscription_id = engine.create_subscription(
                Caller(principal),
                merchant,
                parse_amount(amount),
                Frequency(frequency.lower()),
                method,
                max_payments=max_payments,
                end_date=end_date,
            )
            subscription = engine.get_subscription(subscription_id)
    except (StandingError, ValueError, FileNotFoundError) as exc:
        _fail(f"Failed to create subscription: {exc}")
    click.echo("✅ Subscription created")
    _echo_subscription(subscription)


def _lifecycle_command(name: str, verb: str):
    def command(principal: str, subscription_id: str):
        try:
            with _engine() as engine:
                subscription = getattr(engine, f"{name}_subscription")(Caller(principal), subscription_id)
        except (StandingError, FileNotFoundError) as exc:
            _fail(f"Failed to {name} subscription: {exc}")
        click.echo(f"✅ Subscription {verb}: {subscription.id}")

    command.__doc__ = f"{name.capitalize()} a subscription (payer only)."
    command = click.argument("subscription_id")(command)
    command = principal_option(command)
    return subscription_group.command(name)(command)


subscription_cancel = _lifecycle_command("cancel", "canceled")
subscription_pause = _lifecycle_command("pause", "paused")
subscription_resume = _lifecycle_command("resume", "resumed")


@subscription_group.command("show")
@click.argument("subscription_id")
def subscription_show(subscription_id: str):
    """Show one subscription."""
    try:
        subscription = _state_store().load().subscriptions.get(subscription_id)
    except FileNotFoundError as exc:
        _fail(str(exc))
    if subscription is None:
        _fail(f"Subscription not found: {subscription_id}")
    _echo_subscription(subscription)


@subscription_group.command("list")
@click.option("--user", default=None, help="Filter by payer")
@click.option("--merchant", default=None, help="Filter by merchant")
def subscription_list(user: Optional[str], merchant: Optional[str]):
    """List subscriptions for a payer or a merchant."""
    if bool(user) == bool(merchant):
        _fail("Pass exactly one of --user or --merchant")
    try:
        with _engine() as engine:
            if user:
                subscriptions = engine.get_user_subscriptions(user)
            else:
                subscriptions = engine.get_merchant_subscriptions(merchant)
    except FileNotFoundError as exc:
        _fail(str(exc))
    if not subscriptions:
        click.echo("No subscriptions found")
        return
    for subscription in subscriptions:
        _echo_subscription(subscription)


# Delegated keys

@main.group("key")
def key_group():
    """Delegated subscription keys."""
    pass


@key_group.command("generate")
@click.option("--out", type=click.Path(dir_okay=False, path_type=Path), required=True,
              help="File to write the private key to")
def key_generate(out: Path):
    """Generate a new delegated key."""
    if out.exists():
        _fail(f"Refusing to overwrite existing key file: {out}")
    key = generate_delegated_key()
    save_delegated_key(key, out)
    click.echo(f"✅ Delegated key written to {out}")
    click.echo(f"   Public key: {key.public_key}")


@key_group.command("register")
@principal_option
@click.option("--public-key", required=True, help="Delegated public key")
@click.argument("subscription_id")
def key_register(principal: str, public_key: str, subscription_id: str):
    """Bind a delegated key to one of the caller's subscriptions."""
    try:
        with _engine() as engine:
            engine.register_subscription_key(Caller(principal), public_key, subscription_id)
    except (StandingError, ValueError, FileNotFoundError) as exc:
        _fail(f"Failed to register key: {exc}")
    click.echo(f"✅ Key registered for subscription: {subscription_id}")


# Billing

@main.command()
@principal_option
@click.option("--limit", type=int, default=10, help="Maximum subscriptions to return")
def due(principal: str, limit: int):
    """List subscriptions that are due (approved workers only)."""
    try:
        with _engine() as engine:
            subscriptions = engine.get_due_subscriptions(Caller(principal), limit)
    except (StandingError, ValueError, FileNotFoundError) as exc:
        _fail(f"Failed to list due subscriptions: {exc}")
    if not subscriptions:
        click.echo("No subscriptions due")
        return
    for subscription in subscriptions:
        click.echo(f"{subscription.id}  amount={subscription.amount}  due={subscription.next_payment_date}")


@main.command()
@principal_option
@click.option("--key-file", type=click.Path(exists=True, dir_okay=False, path_type=Path), required=True,
              help="Delegated private key for this subscription")
@click.argument("subscription_id")
def pay(principal: str, key_file: Path, subscription_id: str):
    """Process the due payment for one subscription."""
    try:
        key = load_delegated_key(key_file)
    except ValueError as exc:
        _fail(f"Failed to load delegated key: {exc}")
    try:
        with _engine() as engine:
            timestamp = engine.clock.now()
            signature = sign_payment_request(key, subscription_id, timestamp)
            result = engine.process_signed_payment(principal, subscription_id, timestamp, signature)
    except (StandingError, FileNotFoundError) as exc:
        _fail(f"Failed to process payment: {exc}")

    if not result.success:
        _fail(f"Payment not made: {result.error}")
    click.echo("✅ Payment dispatched")
    click.echo(f"   Amount:   {result.amount}")
    click.echo(f"   Transfer: {result.transfer_id}")


@main.command()
@click.option("--subscription-id", default=None, help="Filter by subscription")
@click.option("--limit", type=int, default=20, help="Number of events")
@click.option("--verify", "verify_only", is_flag=True, help="Only check the hash chain")
def audit(subscription_id: Optional[str], limit: int, verify_only: bool):
    """View the audit trail."""
    try:
        trail = _audit()
        if verify_only:
            click.echo(f"✅ Audit chain intact ({trail.verify()} events)")
            return
        events = trail.read_events(subscription_id=subscription_id, limit=limit)
    except RuntimeError as exc:
        _fail(str(exc))

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        merchant = f" → {event.merchant}" if event.merchant else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{merchant}{reason}")


@main.command()
def demo():
    """Run the full subscription flow in memory."""
    click.echo("🎬 Standing Demo — Recurring Payment Flow")
    click.echo("=" * 50)

    clock = FixedClock(int(time.time()))
    transfers = RecordingTransferExecutor()
    engine = SubscriptionEngine(
        EngineState(owner="operator"),
        verifier=SignedQuoteVerifier(),
        transfers=transfers,
        clock=clock,
    )
    operator, alice, worker = Caller("operator"), Caller("alice"), Caller("worker-1")
    codehash = "demo-codehash"

    click.echo("\n1️⃣  Operator approves worker code and a merchant...")
    engine.approve_codehash(operator, codehash)
    engine.register_merchant(operator, "streaming-co")
    click.echo(f"   Codehash: {codehash}")
    click.echo("   Merchant: streaming-co")

    click.echo("\n2️⃣  Worker attests and registers...")
    quoting_key, anchor = generate_quoting_key()
    quote = issue_quote(quoting_key, codehash, issued_at=clock.now())
    ok = engine.register_worker(worker, quote, anchor, "demo-checksum", codehash)
    click.echo(f"   {'✅' if ok else '❌'} worker-1 approved: {engine.is_approved_worker('worker-1')}")

    click.echo("\n3️⃣  Alice subscribes (daily, 100 units, max 2 payments)...")
    subscription_id = engine.create_subscription(
        alice, "streaming-co", 100, Frequency.DAILY, max_payments=2
    )
    key = generate_delegated_key()
    engine.register_subscription_key(alice, key.public_key, subscription_id)
    click.echo(f"   ✅ {subscription_id}")
    click.echo(f"   Delegated key: {key.public_key}")

    agent = PaymentAgent(engine, "worker-1", {subscription_id: key})

    click.echo("\n4️⃣  Agent polls over three billing days...")
    for day in range(1, 4):
        clock.advance(86_400)
        report = agent.run_once()
        sub = engine.get_subscription(subscription_id)
        click.echo(
            f"   Day {day}: processed={report.processed} succeeded={report.succeeded} "
            f"→ payments={sub.payments_made} status={sub.status.value}"
        )

    click.echo("\n5️⃣  A direct call after the cap is reached...")
    result = engine.process_payment(Caller("worker-1", key.public_key), subscription_id)
    click.echo(f"   {'✅' if result.success else '❌'} {result.error or 'paid'}")

    click.echo(f"\n   Transfers dispatched: {len(transfers.instructions)}")
    click.echo("\n" + "=" * 50)
    click.echo("🎉 Demo complete! Attest → Subscribe → Delegate → Poll → Pay → Cancel")


if __name__ == "__main__":
    main()
