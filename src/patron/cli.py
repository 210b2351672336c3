"""
Patron CLI — sponsored execution credits.

Commands:
    patron mint          Mint credit backed by an escrow deposit
    patron balance       Show an identity's credit balance
    patron delegate      Authorize another key to sign permits for you
    patron undelegate    Remove a delegate
    patron delegations   List a sponsor's delegates
    patron permit        Sign, inspect and verify permits
    patron nonce check   Check whether a signer's nonce is consumed
    patron hash-op       Print an operation's draft hash
    patron simulate      Run a batch through pre-check and settlement
    patron audit         View audit trail
"""

from __future__ import annotations

import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional

import click
from click.core import ParameterSource
from eth_account import Account

from .audit import AuditTrail
from .batch import BatchItem, BatchRunner
from .config import EngineConfig
from .engine import AuthorizationEngine, build_local_engine
from .errors import PatronError
from .operation import DraftEncoding, Operation, hash_draft_operation
from .permit import encode_permit, is_self_pay, parse_permit, routing_tag, sign_permit


# ── Wiring ────────────────────────────────────────────────────────

def _config() -> EngineConfig:
    return EngineConfig.from_env()


def _audit(config: EngineConfig) -> AuditTrail:
    return AuditTrail(path=config.audit_path, key_path=config.audit_key_path)


def _engine(config: Optional[EngineConfig] = None) -> AuthorizationEngine:
    config = config or _config()
    return build_local_engine(config, audit=_audit(config))


def _resolve_private_key(key_input: str) -> str:
    candidate = key_input.strip()
    if candidate.startswith("0x"):
        candidate = candidate[2:]
    if len(candidate) != 64:
        raise ValueError("Private key must be a 32-byte hex string")
    int(candidate, 16)
    return "0x" + candidate


def _refuse_key_from_argv(param_name: str, option: str, unsafe_allow_key_arg: bool) -> None:
    ctx = click.get_current_context(silent=True)
    key_from_argv = (
        ctx is not None
        and ctx.get_parameter_source(param_name) == ParameterSource.COMMANDLINE
    )
    if key_from_argv and not unsafe_allow_key_arg:
        click.echo(
            f"❌ Refusing {option} from argv. Re-run with prompt input or pass "
            "--unsafe-allow-key-arg to acknowledge the risk.",
            err=True,
        )
        sys.exit(1)


def _caller_from_key(key_input: str) -> tuple[str, str]:
    private_key = _resolve_private_key(key_input)
    return private_key, Account.from_key(private_key).address.lower()


def _load_operation(path: str) -> Operation:
    with open(path, encoding="utf-8") as f:
        return Operation.from_dict(json.load(f))


def _fail(message: str) -> None:
    click.echo(f"❌ {message}", err=True)
    sys.exit(1)


def _unsafe_key_option(option: str):
    return click.option(
        "--unsafe-allow-key-arg",
        is_flag=True,
        default=False,
        help=f"Allow passing {option} via argv (unsafe; can leak in shell/process history).",
    )


# ── CLI ───────────────────────────────────────────────────────────

@click.group()
@click.version_option(version="0.1.0")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(verbose: bool):
    """Patron — sponsored execution credits."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@main.command()
@click.option("--key", prompt=True, hide_input=True, help="Funding account private key (hex)")
@_unsafe_key_option("--key")
@click.option("--amount", type=int, required=True, help="Credit to mint (base units)")
@click.option("--to", "recipient", default=None, help="Recipient identity (default: yourself)")
def mint(key: str, unsafe_allow_key_arg: bool, amount: int, recipient: Optional[str]):
    """Mint credit, paired with an equal escrow deposit."""
    _refuse_key_from_argv("key", "--key", unsafe_allow_key_arg)
    engine = _engine()
    try:
        _, caller = _caller_from_key(key)
        target = recipient or caller
        engine.mint(caller, amount, recipient=target)
    except (PatronError, ValueError) as e:
        _fail(f"Mint failed: {e}")
        return

    click.echo(f"✅ Minted {amount} to {target}")
    click.echo(f"   Balance: {engine.credit.balance_of(target)}")


@main.command()
@click.argument("identity")
def balance(identity: str):
    """Show the credit balance of IDENTITY."""
    try:
        amount = _engine().credit.balance_of(identity)
    except ValueError as e:
        _fail(str(e))
        return
    click.echo(f"💳 {identity}: {amount}")


@main.command()
@click.option("--key", prompt=True, hide_input=True, help="Sponsor private key (hex)")
@_unsafe_key_option("--key")
@click.option("--to", "delegate_address", required=True, help="Delegate identity")
def delegate(key: str, unsafe_allow_key_arg: bool, delegate_address: str):
    """Allow DELEGATE to sign permits charged to your credit."""
    _refuse_key_from_argv("key", "--key", unsafe_allow_key_arg)
    engine = _engine()
    try:
        _, caller = _caller_from_key(key)
        engine.delegate(caller, delegate_address)
    except ValueError as e:
        _fail(f"Delegation failed: {e}")
        return
    click.echo(f"✅ {delegate_address} may now sign permits for {caller}")


@main.command()
@click.option("--key", prompt=True, hide_input=True, help="Sponsor private key (hex)")
@_unsafe_key_option("--key")
@click.option("--delegate", "delegate_address", required=True, help="Delegate identity to remove")
def undelegate(key: str, unsafe_allow_key_arg: bool, delegate_address: str):
    """Remove a delegate."""
    _refuse_key_from_argv("key", "--key", unsafe_allow_key_arg)
    engine = _engine()
    try:
        _, caller = _caller_from_key(key)
        engine.undelegate(caller, delegate_address)
    except ValueError as e:
        _fail(f"Undelegation failed: {e}")
        return
    click.echo(f"✅ {delegate_address} can no longer sign permits for {caller}")


@main.command()
@click.argument("sponsor")
def delegations(sponsor: str):
    """List the delegates of SPONSOR."""
    try:
        delegates = _engine().delegations.delegates_of(sponsor)
    except ValueError as e:
        _fail(str(e))
        return
    if not delegates:
        click.echo("No delegates.")
        return
    for address in delegates:
        click.echo(f"  {address}")


@main.group("permit")
def permit_group():
    """Permit issuing and inspection."""
    pass


@permit_group.command("sign")
@click.option("--key", prompt=True, hide_input=True, help="Signer private key (hex)")
@_unsafe_key_option("--key")
@click.option("--sponsor", default=None, help="Sponsor identity (default: the signer)")
@click.option("--nonce", type=int, default=None, help="Permit nonce (default: current timestamp)")
@click.option("--operation", "operation_path", type=click.Path(exists=True, dir_okay=False), required=True,
              help="Operation JSON file")
@click.option("--valid-after", type=int, default=0, help="Unix time the permit becomes valid")
@click.option("--valid-until", type=int, default=0, help="Unix time the permit expires (0 = never)")
@click.option("--output", type=click.Path(dir_okay=False), default=None,
              help="Write the operation with the permit embedded to this file")
def permit_sign(
    key: str,
    unsafe_allow_key_arg: bool,
    sponsor: Optional[str],
    nonce: Optional[int],
    operation_path: str,
    valid_after: int,
    valid_until: int,
    output: Optional[str],
):
    """Sign a permit for an operation and print the authorization blob."""
    _refuse_key_from_argv("key", "--key", unsafe_allow_key_arg)
    config = _config()
    try:
        private_key, signer = _caller_from_key(key)
        operation = _load_operation(operation_path)
        permit = sign_permit(
            private_key,
            sponsor=sponsor or signer,
            nonce=nonce if nonce is not None else int(time.time()),
            operation_hash=hash_draft_operation(operation, config.draft_encoding),
            paymaster=config.paymaster,
            chain_id=config.chain_id,
            valid_after=valid_after,
            valid_until=valid_until,
            domain_name=config.domain_name,
        )
        blob = encode_permit(config.paymaster, permit)
    except (PatronError, ValueError) as e:
        _fail(f"Failed to sign permit: {e}")
        return

    click.echo(f"✅ Permit signed by {permit.signer} for sponsor {permit.sponsor}")
    click.echo(f"   Nonce:          {permit.nonce}")
    click.echo(f"   Operation hash: 0x{permit.operation_hash.hex()}")
    click.echo(f"   Blob:           0x{blob.hex()}")
    if output:
        operation.paymaster_and_data = blob
        Path(output).write_text(json.dumps(operation.to_dict(), indent=2))
        click.echo(f"   Saved to:       {output}")


@permit_group.command("inspect")
@click.argument("blob_hex")
def permit_inspect(blob_hex: str):
    """Decode an authorization blob."""
    try:
        blob = bytes.fromhex(blob_hex[2:] if blob_hex.startswith("0x") else blob_hex)
        tag = routing_tag(blob)
        if is_self_pay(blob):
            click.echo(f"Self-pay blob routed to {tag}")
            return
        permit = parse_permit(blob)
    except (PatronError, ValueError) as e:
        _fail(f"Cannot decode blob: {e}")
        return
    click.echo(json.dumps({"paymaster": tag, **permit.to_dict()}, indent=2))


@permit_group.command("verify")
@click.argument("operation_path", type=click.Path(exists=True, dir_okay=False))
def permit_verify(operation_path: str):
    """Check the permit embedded in an operation without consuming its nonce."""
    engine = _engine()
    try:
        operation = _load_operation(operation_path)
        permit = parse_permit(operation.paymaster_and_data)
        permit.operation_hash = hash_draft_operation(operation, engine.config.draft_encoding)
        valid = engine.verifier.verify(permit)
    except (PatronError, ValueError) as e:
        _fail(f"Verification failed: {e}")
        return

    delegated = permit.signer == permit.sponsor or engine.is_delegated(permit.sponsor, permit.signer)
    consumed = engine.nonces.is_consumed(permit.signer, permit.nonce)
    click.echo(f"{'✅' if valid else '❌'} Signature {'valid' if valid else 'invalid'}")
    click.echo(f"   Sponsor:   {permit.sponsor} (balance {engine.credit.balance_of(permit.sponsor)})")
    click.echo(f"   Signer:    {permit.signer} ({'authorized' if delegated else 'NOT delegated'})")
    click.echo(f"   Nonce:     {permit.nonce} ({'consumed' if consumed else 'unused'})")
    if not (valid and delegated and not consumed):
        sys.exit(1)


@main.group("nonce")
def nonce_group():
    """Replay-protection ledger queries."""
    pass


@nonce_group.command("check")
@click.argument("signer")
@click.argument("nonce", type=int)
def nonce_check(signer: str, nonce: int):
    """Report whether NONCE is consumed for SIGNER."""
    try:
        consumed = _engine().nonces.is_consumed(signer, nonce)
    except ValueError as e:
        _fail(str(e))
        return
    click.echo(f"Nonce {nonce} for {signer}: {'consumed' if consumed else 'unused'}")


@main.command("hash-op")
@click.argument("operation_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--encoding",
    type=click.Choice([e.value for e in DraftEncoding]),
    default=None,
    help="Draft hash encoding (default: configured encoding)",
)
def hash_op(operation_path: str, encoding: Optional[str]):
    """Print the draft hash a permit for this operation must sign."""
    config = _config()
    try:
        operation = _load_operation(operation_path)
        digest = hash_draft_operation(operation, DraftEncoding(encoding or config.draft_encoding))
    except ValueError as e:
        _fail(str(e))
        return
    click.echo("0x" + digest.hex())


@main.command()
@click.argument("batch_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--now", type=int, default=None, help="Timestamp used for validity windows")
def simulate(batch_path: str, now: Optional[int]):
    """Run a JSON batch of operations through pre-check and settlement.

    Each entry: {"operation": {...}, "max_cost": N, "actual_cost": N, "actual_fee_rate": N}
    """
    engine = _engine()
    try:
        with open(batch_path, encoding="utf-8") as f:
            entries = json.load(f)
        items = [
            BatchItem(
                operation=Operation.from_dict(entry["operation"]),
                max_cost=int(entry["max_cost"]),
                actual_cost=int(entry["actual_cost"]),
                actual_fee_rate=int(entry["actual_fee_rate"]),
            )
            for entry in entries
        ]
    except (KeyError, TypeError, ValueError) as e:
        _fail(f"Invalid batch file: {e}")
        return

    for outcome in BatchRunner(engine).run(items, now=now):
        status = "✅" if outcome.settled else "❌"
        detail = f" charged {outcome.charged} to {outcome.payer}" if outcome.settled else f" {outcome.reason}"
        click.echo(f"  #{outcome.index} {status} {outcome.state.value}{detail}")
        if outcome.message and not outcome.settled:
            click.echo(f"      {outcome.message}")


@main.command()
@click.option("--identity", default=None, help="Filter by payer/sponsor/signer/sender")
@click.option("--limit", type=int, default=20, help="Number of events")
def audit(identity: Optional[str], limit: int):
    """View the audit trail."""
    trail = _audit(_config())
    events = trail.read_events(identity=identity, limit=limit)

    if not events:
        click.echo("No audit events found.")
        return

    for event in events:
        ts = time.strftime("%H:%M:%S", time.localtime(event.timestamp))
        status = "✅" if event.success else "❌"
        amount = f" {event.amount}" if event.amount else ""
        party = f" → {event.payer or event.sponsor or event.sender}" if (event.payer or event.sponsor or event.sender) else ""
        reason = f" ({event.reason})" if event.reason and not event.success else ""
        click.echo(f"  {ts} {status} {event.event_type}{amount}{party}{reason}")


if __name__ == "__main__":
    main()
