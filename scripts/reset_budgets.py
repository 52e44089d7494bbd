#!/usr/bin/env python3
"""Budget period reset — zero site spend counters at a month / year boundary.

Run from cron on the first day of each month (and with --yearly on the first
day of the financial year). Resets ``monthly_spend`` and the once-per-month
budget alert marker; ``--yearly`` also resets ``yearly_spend``. Lifetime
totals (``total_expenses``, ``total_amount``) are never touched.

Usage:
    python scripts/reset_budgets.py                      # monthly reset, all sites
    python scripts/reset_budgets.py --yearly             # yearly + monthly reset
    python scripts/reset_budgets.py --site MUM           # single site by code
    python scripts/reset_budgets.py --dry-run            # report only, don't write

Requires in .env (project root):
    DATABASE_URL, JWT_SECRET
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# ── Path setup ────────────────────────────────────────────────────────
PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

env_path = PROJECT_ROOT / ".env"
if env_path.exists():
    load_dotenv(env_path)

from sqlalchemy import select  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession  # noqa: E402

from expenseflow.budget.ledger import BudgetLedger  # noqa: E402
from expenseflow.common.audit import create_audit_entry  # noqa: E402
from expenseflow.sites.models import Site  # noqa: E402

logger = logging.getLogger("reset_budgets")


# ══════════════════════════════════════════════════════════════════════
# Reset
# ══════════════════════════════════════════════════════════════════════

async def reset_budgets(
    session: AsyncSession,
    *,
    yearly: bool = False,
    site_code: Optional[str] = None,
    dry_run: bool = False,
) -> int:
    """Reset spend counters on active sites. Returns the number of sites reset."""
    query = select(Site).where(Site.is_active.is_(True)).order_by(Site.code)
    if site_code:
        query = query.where(Site.code == site_code.upper())
    sites = list((await session.execute(query)).scalars().all())

    for site in sites:
        old_values = {
            "monthly_spend": str(site.monthly_spend),
            "yearly_spend": str(site.yearly_spend),
            "alert_period": site.alert_period,
        }
        logger.info(
            "%s %s: monthly %s, yearly %s",
            "Would reset" if dry_run else "Resetting",
            site.code, site.monthly_spend, site.yearly_spend,
        )
        if dry_run:
            continue

        if yearly:
            BudgetLedger.reset_yearly(site)
        else:
            BudgetLedger.reset_monthly(site)
        await session.flush()

        await create_audit_entry(
            session,
            action="reset_yearly" if yearly else "reset_monthly",
            entity_type="site",
            entity_id=site.id,
            old_values=old_values,
            new_values={
                "monthly_spend": str(site.monthly_spend),
                "yearly_spend": str(site.yearly_spend),
            },
        )

    if not dry_run:
        await session.commit()
    return len(sites)


async def _run(args: argparse.Namespace) -> int:
    from expenseflow.database import async_session_factory, engine

    try:
        async with async_session_factory() as session:
            return await reset_budgets(
                session, yearly=args.yearly, site_code=args.site, dry_run=args.dry_run,
            )
    finally:
        await engine.dispose()


# ══════════════════════════════════════════════════════════════════════
# Main
# ══════════════════════════════════════════════════════════════════════

def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    parser = argparse.ArgumentParser(
        description="Reset site budget spend counters for a new period",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Cron schedule (recommended):
    5 0 1 * *      (00:05 on the 1st of every month)
    10 0 1 4 *     (yearly reset, 1st April, with --yearly)
""",
    )
    parser.add_argument("--yearly", action="store_true", help="Also reset yearly spend")
    parser.add_argument("--site", type=str, help="Reset a single site by code")
    parser.add_argument("--dry-run", action="store_true", help="Report only, don't write")
    args = parser.parse_args()

    count = asyncio.run(_run(args))
    if args.site and count == 0:
        logger.error("No active site with code %s", args.site.upper())
        sys.exit(1)
    logger.info("%s %d site(s)", "Checked" if args.dry_run else "Reset", count)


if __name__ == "__main__":
    main()
