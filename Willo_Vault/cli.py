"""
CLI entry point for Willo Vault operations.

Usage:
    # One sweep (what cron or an external scheduler runs)
    python -m Willo_Vault.cli sweep
    python -m Willo_Vault.cli sweep --dry-run

    # Sweep forever at a fixed cadence
    python -m Willo_Vault.cli monitor --interval 300

    # Inspect
    python -m Willo_Vault.cli status <claim_id>
    python -m Willo_Vault.cli audit <vault_id>
    python -m Willo_Vault.cli verify-audit <vault_id>

    # Copy terminal claims to the PostgreSQL archive
    python -m Willo_Vault.cli archive
"""

import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime, timezone

from Willo_Vault.willo_shared import config, errors
from Willo_Vault.willo_shared.types import SweepResult
from Willo_Vault.willo_db import connection
from Willo_Vault.willo_server import config as server_config
from Willo_Vault.willo_server import db
from Willo_Vault.willo_server.archive import ClaimArchive
from Willo_Vault.inheritance import InheritanceService
from Willo_Vault.bridge import archive_all

logger = logging.getLogger("Willo_Vault.cli")


def _fmt_ms(ms) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _print_sweep(result: SweepResult, label: str = "sweep") -> None:
    print(f"{label}: {result.vaults_scanned} vaults scanned, "
          f"{result.claims_created} created, {result.claims_promoted} promoted, "
          f"{result.claims_expired} expired")
    for vault_id in result.aborted:
        print(f"  aborted: {vault_id} (vault changed during sweep)")


def cmd_sweep(service: InheritanceService, args: argparse.Namespace) -> int:
    if args.dry_run:
        _print_sweep(service.monitor.dry_run(), label="dry run")
    else:
        _print_sweep(service.sweep())
    return 0


def cmd_monitor(service: InheritanceService, args: argparse.Namespace) -> int:
    logger.info("monitor started, sweeping every %ds", args.interval)
    try:
        while True:
            try:
                _print_sweep(service.sweep())
            except (errors.StoreUnavailableError, errors.ConcurrencyConflict) as e:
                logger.warning("sweep failed, will retry next interval: %s", e)
            time.sleep(args.interval)
    except KeyboardInterrupt:
        logger.info("monitor stopped")
    return 0


def cmd_status(service: InheritanceService, args: argparse.Namespace) -> int:
    snap = service.get_claim_status(args.claim_id)
    claim = snap.claim
    print(f"claim       {claim.claim_id}")
    print(f"vault       {claim.vault_id}")
    print(f"beneficiary {claim.beneficiary_id}")
    print(f"state       {claim.state}")
    print(f"eligible at {_fmt_ms(claim.eligible_at)}")
    print(f"approvals   {snap.tally.approvals}/{snap.tally.quorum}  {', '.join(snap.approvals)}")
    if claim.release_alert:
        print(f"ALERT       release stuck after {claim.release_attempts} failed transfers")
    if claim.receipt:
        print(f"released    {_fmt_ms(claim.receipt.released_at)}  ref {claim.receipt.transfer_reference}")
    return 0


def cmd_audit(service: InheritanceService, args: argparse.Namespace) -> int:
    for e in service.get_audit_trail(args.vault_id):
        transition = f"{e.from_state or '(new)'} -> {e.to_state}"
        print(f"{e.sequence:>5}  {_fmt_ms(e.timestamp)}  {e.entity_type:<11} {transition:<28} "
              f"{e.actor:<24} {e.reason}")
    return 0


def cmd_verify_audit(service: InheritanceService, args: argparse.Namespace) -> int:
    result = service.verify_audit(args.vault_id)
    if result.valid:
        print(f"audit chain of {args.vault_id} intact ({result.entries} entries)")
        return 0
    print(f"audit chain of {args.vault_id} BROKEN at sequence {result.broken_at}")
    return 1


async def _archive(service: InheritanceService) -> int:
    pool = await db.create_pool(server_config.PG_DSN, min_size=1, max_size=4)
    try:
        archive = ClaimArchive(pool)
        await archive.ensure_schema()
        counts = await archive_all(service, archive)
    finally:
        await db.close_pool()
    print(f"archived {sum(counts.values())} claims from {len(counts)} vaults")
    return 0


def cmd_archive(service: InheritanceService, args: argparse.Namespace) -> int:
    return asyncio.run(_archive(service))


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Willo Vault: inactivity monitor and claim inspection",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("sweep", help="Run one inactivity sweep")
    p.add_argument("--dry-run", action="store_true", help="Report what would change, write nothing")
    p.set_defaults(func=cmd_sweep)

    p = sub.add_parser("monitor", help="Sweep repeatedly")
    p.add_argument("--interval", type=int, default=config.SWEEP_INTERVAL_SECONDS,
                   help=f"Seconds between sweeps (default: {config.SWEEP_INTERVAL_SECONDS})")
    p.set_defaults(func=cmd_monitor)

    p = sub.add_parser("status", help="Show a claim")
    p.add_argument("claim_id")
    p.set_defaults(func=cmd_status)

    p = sub.add_parser("audit", help="Print a vault's audit trail")
    p.add_argument("vault_id")
    p.set_defaults(func=cmd_audit)

    p = sub.add_parser("verify-audit", help="Check a vault's audit hash chain")
    p.add_argument("vault_id")
    p.set_defaults(func=cmd_verify_audit)

    p = sub.add_parser("archive", help="Copy terminal claims to PostgreSQL")
    p.set_defaults(func=cmd_archive)

    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        client = connection.create_client()
    except errors.StoreUnavailableError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    service = InheritanceService(client)
    try:
        return args.func(service, args)
    except errors.WilloVaultError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2 if e.retryable else 1
    except errors.ArchiveError as e:
        print(f"archive error: {e}", file=sys.stderr)
        return 1
    finally:
        connection.close(client)


if __name__ == "__main__":
    sys.exit(main())
