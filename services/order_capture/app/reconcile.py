"""
Reconciliation between the ledger and the relational store.

reconcile() is a read-only diagnostic: it loads both identifier sets, splits
them into ledger-only, relational-only and shared ids, and classifies each
divergence. It never repairs anything. repair_missing_in_relational() is a
separate action that an operator has to request explicitly.

Usage:
    order-capture-reconcile [--json] [--repair] [--ledger-path PATH]
"""
import argparse
import asyncio
import json
import logging
import sys
from typing import Dict, Iterable, List, Optional

from fastapi.concurrency import run_in_threadpool

from . import schemas
from .config import Settings
from .crud import RelationalOrderStore
from .database import ConnectionManager
from .errors import ConfigurationError, OrderCaptureError
from .ledger import LedgerWriter
from .schemas import utcnow

logger = logging.getLogger(__name__)

DATABASE_REPAIRED = "database_repaired"


def classify(
    ledger_orders: Dict[str, schemas.Order],
    relational_orders: Dict[str, schemas.StoredOrder],
) -> schemas.ReconciliationReport:
    """
    Compare the two stores' contents.

    Args:
        ledger_orders: Ledger orders keyed by id
        relational_orders: Relational rows keyed by id

    Returns:
        ReconciliationReport with the three partitions and classified discrepancies
    """
    ledger_ids = set(ledger_orders)
    relational_ids = set(relational_orders)
    report = schemas.ReconciliationReport(
        in_ledger_only=sorted(ledger_ids - relational_ids),
        in_relational_only=sorted(relational_ids - ledger_ids),
        in_both=sorted(ledger_ids & relational_ids),
        generated_at=utcnow(),
    )

    for order_id in report.in_ledger_only:
        failed = ledger_orders[order_id].has_timeline_status("database_error")
        report.discrepancies.append(schemas.Discrepancy(
            order_id=order_id,
            kind="missing_in_relational",
            detail="relational write failed at capture" if failed else None,
        ))

    for order_id in report.in_relational_only:
        report.discrepancies.append(schemas.Discrepancy(order_id=order_id, kind="missing_in_ledger"))

    for order_id in report.in_both:
        order, row = ledger_orders[order_id], relational_orders[order_id]
        differences = []
        if order.email != row.email:
            differences.append(f"email {order.email!r} != {row.email!r}")
        if order.totals.total != row.total_amount:
            differences.append(f"total {order.totals.total} != {row.total_amount}")
        if differences:
            report.discrepancies.append(schemas.Discrepancy(
                order_id=order_id, kind="field_mismatch", detail="; ".join(differences),
            ))

    for discrepancy in report.discrepancies:
        logger.warning(
            f"{discrepancy.kind}: {discrepancy.order_id}"
            + (f" ({discrepancy.detail})" if discrepancy.detail else "")
        )
    return report


async def reconcile(ledger: LedgerWriter, store: RelationalOrderStore) -> schemas.ReconciliationReport:
    """
    Load both stores and compare them. Holds no locks.

    Raises:
        LedgerWriteError: If the ledger cannot be read
        ConfigurationError, TransientInfrastructureError: If the relational store is unreachable
    """
    ledger_orders = {order.id: order for order in await run_in_threadpool(ledger.list_orders)}
    relational_orders = {row.id: row for row in await store.list_orders(limit=None)}
    report = classify(ledger_orders, relational_orders)
    logger.info(report.summary())
    return report


async def repair_missing_in_relational(
    ledger: LedgerWriter, store: RelationalOrderStore, order_ids: Iterable[str]
) -> List[str]:
    """
    Copy ledger-only orders into the relational store.

    Args:
        ledger: Ledger writer
        store: Relational store
        order_ids: Ids reported as missing_in_relational

    Returns:
        Ids that were repaired
    """
    repaired = []
    for order_id in order_ids:
        order = await run_in_threadpool(ledger.get, order_id)
        if order is None:
            logger.warning(f"Cannot repair {order_id}: no longer in ledger")
            continue
        try:
            await store.upsert_order(order)
        except OrderCaptureError as e:
            logger.error(f"Repair of order {order_id} failed: {e}")
            continue
        entry = schemas.TimelineEntry(
            status=DATABASE_REPAIRED, timestamp=utcnow(), detail="copied from ledger by reconciliation",
        )
        await run_in_threadpool(ledger.append_timeline, order_id, entry)
        logger.info(f"Repaired order {order_id} in relational store")
        repaired.append(order_id)
    return repaired


def format_report(report: schemas.ReconciliationReport) -> str:
    lines = [
        f"Ledger only ({len(report.in_ledger_only)}):",
        *[f"  - {order_id}" for order_id in report.in_ledger_only],
        f"Relational only ({len(report.in_relational_only)}):",
        *[f"  - {order_id}" for order_id in report.in_relational_only],
        f"In both ({len(report.in_both)}):",
        *[f"  - {order_id}" for order_id in report.in_both],
    ]
    if report.discrepancies:
        lines.append("Discrepancies:")
        for d in report.discrepancies:
            lines.append(f"  [{d.kind}] {d.order_id}" + (f": {d.detail}" if d.detail else ""))
    lines.append(report.summary())
    return "\n".join(lines)


async def _run(args: argparse.Namespace, settings: Settings) -> int:
    manager = ConnectionManager(settings)
    ledger = LedgerWriter(args.ledger_path or settings.ledger_path)
    store = RelationalOrderStore(manager)
    try:
        report = await reconcile(ledger, store)
        if args.repair and report.in_ledger_only:
            repaired = await repair_missing_in_relational(ledger, store, report.in_ledger_only)
            print(f"Repaired {len(repaired)} of {len(report.in_ledger_only)} ledger-only orders", file=sys.stderr)
            report = await reconcile(ledger, store)
    finally:
        manager.close()

    if args.json:
        print(json.dumps(
            {**report.model_dump(mode="json"), "summary": report.summary()}, indent=2
        ))
    else:
        print(format_report(report))
    return 0 if report.is_consistent else 1


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compare the order ledger with the relational store."
    )
    parser.add_argument("--json", action="store_true", help="print the report as JSON")
    parser.add_argument(
        "--repair", action="store_true",
        help="copy ledger-only orders into the relational store, then report again",
    )
    parser.add_argument("--ledger-path", help="ledger file (default: LEDGER_PATH)")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level, stream=sys.stderr)

    try:
        return asyncio.run(_run(args, settings))
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2
    except OrderCaptureError as e:
        print(f"Reconciliation failed: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
