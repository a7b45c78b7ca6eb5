#!/usr/bin/env python3
"""
Seed a fresh database with the default catalog.

Creates, when missing:
- GST tax setting for India (rate from DEFAULT_GST_RATE)
- Invoice numbering settings
- A freemium plan plus a paid plan priced in INR and USD

Usage:
    python scripts/seed_catalog.py
    python scripts/seed_catalog.py --paid-inr 999 --paid-usd 12
"""
import argparse
import asyncio
from decimal import Decimal

import structlog
from sqlalchemy import select

from subscription_engine.config import settings
from subscription_engine.database import AsyncSessionLocal
from subscription_engine.middleware.logging import setup_logging
from subscription_engine.models.feature import FeatureType, LimitType, ResetFrequency
from subscription_engine.models.invoice import InvoiceSettings
from subscription_engine.models.plan import Plan, Region
from subscription_engine.models.tax import TaxSetting, TaxType
from subscription_engine.schemas.plan import FeatureCreate, PlanCreate, PlanFeatureSet, PlanPricingCreate
from subscription_engine.services.plan_catalog import PlanCatalog

logger = structlog.get_logger(__name__)

FEATURES = [
    FeatureCreate(code="resume_generation", name="Resume generation", feature_type=FeatureType.ADVANCED),
    FeatureCreate(code="cover_letter", name="Cover letter", feature_type=FeatureType.ADVANCED, is_token_based=True),
    FeatureCreate(code="profile_page", name="Profile page", feature_type=FeatureType.ESSENTIAL, is_countable=False),
]


async def seed(paid_inr: Decimal, paid_usd: Decimal) -> None:
    async with AsyncSessionLocal() as db:
        catalog = PlanCatalog(db)

        if (await db.execute(select(TaxSetting).limit(1))).scalar_one_or_none() is None:
            db.add(
                TaxSetting(
                    name="GST",
                    tax_type=TaxType.GST,
                    percentage=settings.default_gst_rate,
                    apply_to_region=Region.INDIA,
                    apply_currency="INR",
                )
            )
            logger.info("tax_setting_seeded", rate=str(settings.default_gst_rate))

        if (await db.execute(select(InvoiceSettings).limit(1))).scalar_one_or_none() is None:
            db.add(
                InvoiceSettings(
                    invoice_prefix=settings.invoice_prefix,
                    next_invoice_number=settings.invoice_start_number,
                    default_due_days=settings.invoice_due_days,
                )
            )

        if (await db.execute(select(Plan).limit(1))).scalar_one_or_none() is not None:
            await db.commit()
            logger.info("catalog_already_seeded")
            return

        for feature in FEATURES:
            await catalog.create_feature(feature)

        free = await catalog.create_plan(PlanCreate(name="Free", is_freemium=True))
        await catalog.set_plan_feature(
            free.id,
            PlanFeatureSet(
                feature_code="resume_generation",
                limit_type=LimitType.COUNT,
                limit_value=3,
                reset_frequency=ResetFrequency.MONTHLY,
            ),
        )

        pro = await catalog.create_plan(PlanCreate(name="Pro", is_featured=True))
        await catalog.set_pricing(
            pro.id, PlanPricingCreate(region=Region.INDIA, currency="INR", price=paid_inr, tax_inclusive=True)
        )
        await catalog.set_pricing(pro.id, PlanPricingCreate(region=Region.GLOBAL, currency="USD", price=paid_usd))
        await catalog.set_plan_feature(
            pro.id, PlanFeatureSet(feature_code="resume_generation", limit_type=LimitType.UNLIMITED)
        )
        await catalog.set_plan_feature(
            pro.id,
            PlanFeatureSet(
                feature_code="cover_letter",
                limit_type=LimitType.COUNT,
                limit_value=50,
                reset_frequency=ResetFrequency.MONTHLY,
            ),
        )

        await db.commit()
        logger.info("catalog_seeded", free_plan_id=str(free.id), pro_plan_id=str(pro.id))


def main():
    """CLI entry point for catalog seeding."""
    parser = argparse.ArgumentParser(description="Seed the default plan catalog")
    parser.add_argument("--paid-inr", type=Decimal, default=Decimal("999.00"), help="Pro price in INR (GST inclusive)")
    parser.add_argument("--paid-usd", type=Decimal, default=Decimal("12.00"), help="Pro price in USD")
    args = parser.parse_args()

    setup_logging()
    asyncio.run(seed(args.paid_inr, args.paid_usd))


if __name__ == "__main__":
    main()
