#!/usr/bin/env python3
"""
IVS console.

Decryption commands:
  decrypt       request one decryption and wait for the relayer's result
  decrypt-all   decrypt health and IVS for every registered user, print a summary table
  listen        print every DecryptionCompleted event as it arrives (Ctrl+C to stop)
  check-events  list recent DecryptionRequested / DecryptionCompleted events
  simulate      run the five-user example on the in-memory engine

Contract administration (sender must be the contract admin):
  register      register a user id
  add-contact   add an undirected contact between two users
  set-health    store an encrypted health flag (handle + proof from an FHE input encryptor)
  compute       recompute every IVS on chain with the given dMax
  get-score     show a user's encrypted IVS and health handles
  setup-test    register users 1-5 and the example contacts
  info          admin, registered users and their contacts

Env: IVS_RPC_URL, IVS_CONTRACT_ADDRESS, IVS_SENDER_ADDRESS, IVS_ABI_PATH,
IVS_DECRYPT_TIMEOUT_SEC. See backend_ivs.config.

Usage:
  py -m backend_ivs.tools.ivs_cli decrypt --userid 2 --kind ivs
  py -m backend_ivs.tools.ivs_cli setup-test --health-inputs health_inputs.json
  py -m backend_ivs.tools.ivs_cli simulate --dmax 2
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Mapping

from eth_utils import is_0x_prefixed, is_hex
from web3 import Web3

from backend_ivs.analysis_engine.score_model import compute_scores, to_scaled
from backend_ivs.config.env import print_ivs_startup
from backend_ivs.config.settings import Settings, get_settings
from backend_ivs.core.exceptions import (
    REASON_DUPLICATE,
    ConfigError,
    EngineUnavailable,
    IVSError,
    MalformedNotification,
    SubmissionRejected,
)
from backend_ivs.decryption.correlator import EventCorrelator
from backend_ivs.decryption.models import (
    CompletionNotification,
    DataKind,
    DecryptionOutcome,
    DecryptionStatus,
)
from backend_ivs.decryption.registry import RequestRegistry
from backend_ivs.decryption.session import DecryptionService
from backend_ivs.engine.base import is_zero_handle
from backend_ivs.engine.evm import COMPLETED_EVENT, REQUESTED_EVENT, EvmEngineClient
from backend_ivs.engine.log_stream import LogPollingSubscription
from backend_ivs.engine.memory import InMemoryEngine
from backend_ivs.logging import get_logger

logger = get_logger(__name__)

SEP = "=" * 42

# Five-user example: 1 infected; 2, 3 at one hop; 4, 5 at two hops
EXAMPLE_USERS = (1, 2, 3, 4, 5)
EXAMPLE_CONTACTS = ((1, 2), (1, 3), (2, 4), (3, 5))
EXAMPLE_INFECTED = (1,)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_TIMEOUT = 2


def _kind_arg(value: str) -> DataKind:
    try:
        return DataKind.from_tag(value)
    except IVSError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _hex_arg(value: str) -> str:
    if not (is_0x_prefixed(value) and is_hex(value)):
        raise argparse.ArgumentTypeError(f"expected 0x-prefixed hex, got {value!r}")
    return value


def _handle_arg(value: str) -> str:
    value = _hex_arg(value)
    if len(value) != 66:
        raise argparse.ArgumentTypeError("ciphertext handle must be 32 bytes (0x + 64 hex)")
    return value


def open_engine(settings: Settings) -> EvmEngineClient:
    return EvmEngineClient.from_settings(settings)


def format_receipt(receipt: Mapping[str, Any]) -> str:
    return (
        f"tx {Web3.to_hex(receipt['transactionHash'])} confirmed in block "
        f"{receipt.get('blockNumber')} (gas used {receipt.get('gasUsed')})"
    )


def format_outcome(outcome: DecryptionOutcome) -> str:
    """One-line console form of an outcome."""
    head = f"user {outcome.subject_user_id} [{outcome.kind.value}]"
    rid = f" request {outcome.request_id}" if outcome.request_id is not None else ""
    if outcome.ok:
        return f"{head}{rid}: {outcome.rendered.label} (raw {outcome.raw_value})"
    return f"{head}{rid}: {outcome.status.value.upper()} - {outcome.message}"


def format_notification(n: CompletionNotification, result: str) -> str:
    lines = [
        "Decryption completed",
        f"  Request ID: {n.request_id}",
        f"  User ID: {n.subject_user_id}",
        f"  Data Type: {n.kind.value}",
        f"  Raw Decrypted Value: {n.raw_value}",
        f"  Scaled Value: {n.scaled_value}",
        f"  Correlation: {result}",
    ]
    return "\n".join(lines)


def _cell(outcome: DecryptionOutcome | None) -> str:
    if outcome is None:
        return "N/A"
    if outcome.ok:
        r = outcome.rendered
        return r.decimal if r.kind is DataKind.SCORE else str(r.raw_value)
    return outcome.status.value.upper()


def format_summary(results: Mapping[int, Mapping[DataKind, DecryptionOutcome | None]]) -> str:
    """Summary table: User | Health | IVS | Tier."""
    rows = ["User | Health | IVS    | Tier", "-----|--------|--------|--------"]
    for user in sorted(results):
        per_kind = results[user]
        ivs = per_kind.get(DataKind.SCORE)
        tier = ivs.rendered.tier.value if ivs is not None and ivs.ok else "-"
        rows.append(
            f"{user:>4} | {_cell(per_kind.get(DataKind.HEALTH_STATUS)):>6} | "
            f"{_cell(ivs):>6} | {tier}"
        )
    return "\n".join(rows)


async def _with_correlator(client: EvmEngineClient, settings: Settings, coro_factory):
    registry = RequestRegistry()
    subscription = LogPollingSubscription(
        client,
        poll_interval_sec=settings.poll_interval_sec,
        lookback_blocks=settings.log_lookback_blocks,
    )
    service = DecryptionService(client, registry, default_timeout=settings.decrypt_timeout_sec)
    async with EventCorrelator(registry, subscription):
        return await coro_factory(service)


async def cmd_decrypt(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        print(f"Requesting {args.kind.value} decryption for user {args.userid}...")
        outcome = await _with_correlator(
            client,
            settings,
            lambda svc: svc.request_and_await(args.userid, args.kind, args.timeout),
        )
    print(format_outcome(outcome))
    if outcome.ok:
        return EXIT_OK
    return EXIT_TIMEOUT if outcome.status is DecryptionStatus.TIMEOUT else EXIT_FAILED


async def cmd_decrypt_all(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        results = await _with_correlator(
            client, settings, lambda svc: svc.decrypt_all(timeout=args.timeout)
        )
    print("Summary:")
    print(SEP)
    print(format_summary(results))
    failed = [o for per in results.values() for o in per.values() if o is not None and not o.ok]
    return EXIT_FAILED if failed else EXIT_OK


async def cmd_listen(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        subscription = LogPollingSubscription(
            client,
            poll_interval_sec=settings.poll_interval_sec,
            lookback_blocks=args.lookback,
        )
        print(f"Listening for DecryptionCompleted events on {client.contract_address}")
        print("Press Ctrl+C to stop listening")
        print(SEP)

        def _show(n: CompletionNotification, result: str) -> None:
            print(format_notification(n, result))
            print(SEP)

        correlator = EventCorrelator(RequestRegistry(), subscription, on_notification=_show)
        await correlator.start()
        try:
            await correlator.join()
        finally:
            await correlator.stop()
    return EXIT_OK


def _decode_all(
    client: EvmEngineClient, event_name: str, logs: list[dict[str, Any]]
) -> tuple[list[dict[str, Any]], int]:
    events: list[dict[str, Any]] = []
    skipped = 0
    for log in logs:
        try:
            events.append(client.decode_log(event_name, log))
        except MalformedNotification as e:
            skipped += 1
            logger.warning("cli_undecodable_log", event_name=event_name, error=str(e))
    return events, skipped


async def cmd_check_events(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        head = await client.block_number()
        start = max(0, head - args.blocks)
        requested, skipped_req = _decode_all(
            client, REQUESTED_EVENT, await client.get_logs(REQUESTED_EVENT, start, head)
        )
        completed, skipped_done = _decode_all(
            client, COMPLETED_EVENT, await client.get_logs(COMPLETED_EVENT, start, head)
        )
    print(f"Blocks {start}..{head}")
    print(f"DecryptionRequested: {len(requested)}")
    for ev in requested:
        print(f"  Block {ev['blockNumber']}: RequestID={ev['requestId']}, UserID={ev['userId']}")
    print(f"DecryptionCompleted: {len(completed)}")
    for ev in completed:
        print(
            f"  Block {ev['blockNumber']}: RequestID={ev['requestId']}, "
            f"UserID={ev['userId']}, DecryptedValue={ev['decryptedValue']}, Type={ev['dataType']}"
        )
    if skipped_req or skipped_done:
        print(f"Skipped {skipped_req + skipped_done} undecodable log(s)")
    done = {ev["requestId"] for ev in completed}
    outstanding = [ev["requestId"] for ev in requested if ev["requestId"] not in done]
    if outstanding:
        print(f"\n{len(outstanding)} request(s) with no completion yet: {outstanding}")
        print("The relayer may still be processing (observed latency up to a few minutes).")
    return EXIT_OK


# --- contract administration ---


async def cmd_register(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        print(f"Registering user {args.userid}...")
        receipt = await client.register_user(args.userid)
        print(format_receipt(receipt))
        total = await client.get_total_users()
        registered = await client.is_user_registered(args.userid)
    print(f"Total users: {total}")
    print(f"User {args.userid} registered: {registered}")
    return EXIT_OK


async def cmd_add_contact(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        print(f"Adding contact {args.user_a} <-> {args.user_b}...")
        receipt = await client.add_contact(args.user_a, args.user_b)
        print(format_receipt(receipt))
        contacts_a = await client.get_user_contacts(args.user_a)
        contacts_b = await client.get_user_contacts(args.user_b)
    print(f"User {args.user_a} contacts: {contacts_a}")
    print(f"User {args.user_b} contacts: {contacts_b}")
    return EXIT_OK


async def cmd_set_health(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        print(f"Setting encrypted health status for user {args.userid}...")
        receipt = await client.set_health_status(args.userid, args.handle, args.proof)
    print(format_receipt(receipt))
    return EXIT_OK


async def cmd_compute(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        print(f"Computing IVS scores with dMax={args.dmax} (admin {client.sender_address})...")
        receipt = await client.compute_ivs(args.dmax)
    print(format_receipt(receipt))
    return EXIT_OK


async def cmd_get_score(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        ivs = await client.get_ciphertext_handle(args.userid, DataKind.SCORE)
        health = await client.get_ciphertext_handle(args.userid, DataKind.HEALTH_STATUS)
    for label, handle in (("Encrypted IVS", ivs), ("Encrypted health status", health)):
        print(f"{label}: {'(not set)' if is_zero_handle(handle) else handle}")
    print(f"Run `decrypt --userid {args.userid}` to request decryption.")
    return EXIT_OK


def load_health_inputs(path: Path) -> dict[int, tuple[str, str]]:
    """
    Read pre-encrypted health inputs: {"<userId>": {"handle": "0x..", "proof": "0x.."}}.
    Handles and proofs come from an FHE input encryptor bound to the contract and sender.
    """
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigError(f"cannot read health inputs {path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"health inputs {path} must be a JSON object keyed by user id")
    inputs: dict[int, tuple[str, str]] = {}
    for key, value in raw.items():
        try:
            inputs[int(key)] = (value["handle"], value["proof"])
        except (TypeError, ValueError, KeyError) as e:
            raise ConfigError(f"bad health input for user {key!r}: {e}") from e
    return inputs


async def cmd_setup_test(args: argparse.Namespace, settings: Settings) -> int:
    """Five-user example on chain. Already-registered users are not failures."""
    health_inputs = load_health_inputs(args.health_inputs) if args.health_inputs else {}
    failures = 0
    async with open_engine(settings) as client:
        print("1. Registering users 1-5...")
        for user in EXAMPLE_USERS:
            try:
                await client.register_user(user)
                print(f"  + user {user} registered")
            except SubmissionRejected as e:
                if e.reason == REASON_DUPLICATE:
                    print(f"  - user {user} already registered")
                else:
                    failures += 1
                    print(f"  x user {user} failed: {e}")
            except EngineUnavailable as e:
                failures += 1
                print(f"  x user {user} failed: {e}")

        print("2. Adding contacts...")
        for a, b in EXAMPLE_CONTACTS:
            try:
                await client.add_contact(a, b)
                print(f"  + contact {a} <-> {b}")
            except (SubmissionRejected, EngineUnavailable) as e:
                failures += 1
                print(f"  x contact {a}-{b} failed: {e}")

        print("3. Setting health status...")
        if not health_inputs:
            print("  (no --health-inputs given; set each user with `set-health`)")
        for user, (handle, proof) in sorted(health_inputs.items()):
            try:
                await client.set_health_status(user, handle, proof)
                print(f"  + user {user} health status set")
            except (SubmissionRejected, EngineUnavailable, ValueError) as e:
                failures += 1
                print(f"  x user {user} health status failed: {e}")

    print("Setup complete." if not failures else f"Setup finished with {failures} failure(s).")
    print("Next: compute --dmax 2, then decrypt-all")
    return EXIT_FAILED if failures else EXIT_OK


async def cmd_info(args: argparse.Namespace, settings: Settings) -> int:
    async with open_engine(settings) as client:
        admin = await client.get_admin()
        total = await client.get_total_users()
        users = await client.get_all_users()
        contacts = {u: await client.get_user_contacts(u) for u in users}
        contract = client.contract_address
    print(f"Contract: {contract}")
    print(f"Admin: {admin}")
    print(f"Total users: {total}")
    for user in users:
        print(f"  User {user}: contacts {contacts[user]}")
    return EXIT_OK


async def run_simulation(d_max: int, latency_sec: float, timeout: float) -> tuple[dict, dict]:
    """Five-user example on the in-memory engine. Returns (results, expected_scaled)."""
    engine = InMemoryEngine(latency_sec=latency_sec)
    for u in EXAMPLE_USERS:
        engine.register_user(u)
    for a, b in EXAMPLE_CONTACTS:
        engine.add_contact(a, b)
    for u in EXAMPLE_USERS:
        engine.set_health_status(u, 1 if u in EXAMPLE_INFECTED else 0)
    engine.compute_ivs(d_max)
    expected = {
        u: to_scaled(s)
        for u, s in compute_scores(engine.graph, EXAMPLE_INFECTED, d_max).items()
    }
    registry = RequestRegistry()
    service = DecryptionService(engine, registry, default_timeout=timeout)
    try:
        async with EventCorrelator(registry, engine.subscribe()):
            results = await service.decrypt_all()
    finally:
        engine.shutdown()
    return results, expected


async def cmd_simulate(args: argparse.Namespace, settings: Settings) -> int:
    results, expected = await run_simulation(args.dmax, args.latency, args.timeout or 10.0)
    print(format_summary(results))
    print()
    print(f"Expected IVS (dMax={args.dmax}):")
    mismatches = 0
    for user in sorted(expected):
        got = results[user].get(DataKind.SCORE)
        actual = got.raw_value if got is not None and got.ok else None
        flag = "" if actual == expected[user] else "  <-- mismatch"
        mismatches += bool(flag)
        print(f"  User {user}: expected {expected[user]}, decrypted {actual}{flag}")
    return EXIT_FAILED if mismatches else EXIT_OK


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="IVS console")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("decrypt", help="Request decryption and wait for the result")
    p.add_argument("--userid", type=int, required=True)
    p.add_argument("--kind", type=_kind_arg, default=DataKind.SCORE, help="ivs | health")
    p.add_argument("--timeout", type=float, default=None, help="Seconds to wait")
    p.set_defaults(handler=cmd_decrypt)

    p = sub.add_parser("decrypt-all", help="Decrypt every registered user")
    p.add_argument("--timeout", type=float, default=None)
    p.set_defaults(handler=cmd_decrypt_all)

    p = sub.add_parser("listen", help="Print DecryptionCompleted events")
    p.add_argument("--lookback", type=int, default=0, help="Blocks before head to start from")
    p.set_defaults(handler=cmd_listen)

    p = sub.add_parser("check-events", help="List recent decryption events")
    p.add_argument("--blocks", type=int, default=100)
    p.set_defaults(handler=cmd_check_events)

    p = sub.add_parser("simulate", help="Run the five-user example in memory")
    p.add_argument("--dmax", type=int, default=2)
    p.add_argument("--latency", type=float, default=0.05, help="Simulated relayer latency")
    p.add_argument("--timeout", type=float, default=None)
    p.set_defaults(handler=cmd_simulate)

    p = sub.add_parser("register", help="Register a user (admin)")
    p.add_argument("--userid", type=int, required=True)
    p.set_defaults(handler=cmd_register)

    p = sub.add_parser("add-contact", help="Add a contact between two users (admin)")
    p.add_argument("--user-a", type=int, required=True)
    p.add_argument("--user-b", type=int, required=True)
    p.set_defaults(handler=cmd_add_contact)

    p = sub.add_parser("set-health", help="Store an encrypted health status (admin)")
    p.add_argument("--userid", type=int, required=True)
    p.add_argument("--handle", type=_handle_arg, required=True, help="Encrypted input handle")
    p.add_argument("--proof", type=_hex_arg, required=True, help="Input proof")
    p.set_defaults(handler=cmd_set_health)

    p = sub.add_parser("compute", help="Recompute every IVS on chain (admin)")
    p.add_argument("--dmax", type=int, default=2)
    p.set_defaults(handler=cmd_compute)

    p = sub.add_parser("get-score", help="Show encrypted IVS and health handles")
    p.add_argument("--userid", type=int, required=True)
    p.set_defaults(handler=cmd_get_score)

    p = sub.add_parser("setup-test", help="Register the five-user example (admin)")
    p.add_argument(
        "--health-inputs", type=Path, default=None, help="JSON of pre-encrypted health inputs"
    )
    p.set_defaults(handler=cmd_setup_test)

    p = sub.add_parser("info", help="Show admin, users and contacts")
    p.set_defaults(handler=cmd_info)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        settings = get_settings()
        if args.command != "simulate":
            print_ivs_startup(args.command)
        return asyncio.run(args.handler(args, settings))
    except KeyboardInterrupt:
        return EXIT_OK
    except IVSError as e:
        logger.error("cli_failed", command=args.command, error=str(e))
        print(f"ERROR: {e}", file=sys.stderr)
        return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
