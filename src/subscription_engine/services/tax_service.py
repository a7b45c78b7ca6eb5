"""Tax calculation from configured regional tax settings."""
from decimal import Decimal
from uuid import UUID

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.models.plan import Region
from subscription_engine.models.tax import TaxSetting
from subscription_engine.schemas.invoice import TaxBreakdown, TaxLine
from subscription_engine.services.plan_catalog import PlanCatalog
from subscription_engine.utils.currency import parse_amount, quantize_money, require_currency

logger = structlog.get_logger(__name__)

HUNDRED = Decimal("100")


class TaxCalculator:
    """
    Splits prices into subtotal and tax.

    Handles:
    - Tax-inclusive prices (tax is backed out of the price)
    - Tax-exclusive prices (tax is added on top)
    - Several settings for the same region, e.g. CGST plus SGST
    """

    def __init__(self, db: AsyncSession, catalog: PlanCatalog | None = None):
        """Initialize tax calculator with database session."""
        self.db = db
        self.catalog = catalog or PlanCatalog(db)

    async def get_tax_settings(self, region: Region, currency: str) -> list[TaxSetting]:
        """Enabled settings that apply to a region/currency pair."""
        result = await self.db.execute(
            select(TaxSetting)
            .where(
                TaxSetting.enabled.is_(True),
                TaxSetting.apply_to_region == region,
                TaxSetting.apply_currency == currency.upper(),
            )
            .order_by(TaxSetting.created_at)
        )
        return list(result.scalars().all())

    async def calculate(
        self,
        amount: Decimal,
        region: Region,
        currency: str,
        tax_inclusive: bool = False,
    ) -> TaxBreakdown:
        """
        Calculate the tax breakdown of a price.

        Args:
            amount: Price in major units
            region: Region the price applies to
            currency: ISO 4217 currency code
            tax_inclusive: Whether ``amount`` already contains tax

        Returns:
            TaxBreakdown rounded half-up to 0.01

        Example:
            1000.00 INR inclusive of 18% GST gives subtotal 847.46,
            tax 152.54 and total 1000.00.
        """
        amount = parse_amount(amount)
        currency = require_currency(currency)
        tax_settings = await self.get_tax_settings(region, currency)

        total_percentage = sum((Decimal(s.percentage) for s in tax_settings), Decimal("0"))
        rate = total_percentage / HUNDRED

        if tax_inclusive:
            subtotal = quantize_money(amount / (1 + rate))
            tax_amount = amount - subtotal
            total = amount
        else:
            subtotal = amount
            tax_amount = quantize_money(amount * rate)
            total = amount + tax_amount

        breakdown = TaxBreakdown(
            subtotal=subtotal,
            tax_amount=tax_amount,
            total=total,
            currency=currency,
            tax_rate=total_percentage,
            tax_inclusive=tax_inclusive,
            lines=self._split(tax_settings, tax_amount, total_percentage),
        )

        logger.debug(
            "tax_calculated",
            region=region.value,
            currency=currency,
            subtotal=str(subtotal),
            tax_amount=str(tax_amount),
            tax_inclusive=tax_inclusive,
        )
        return breakdown

    async def quote(self, plan_id: UUID, region: Region, currency: str) -> TaxBreakdown:
        """
        Tax breakdown for a plan's regional price.

        Raises:
            NotFound: If the plan is not priced for region/currency
        """
        pricing = await self.catalog.get_pricing(plan_id, region, currency)
        return await self.calculate(pricing.price, region, currency, pricing.tax_inclusive)

    @staticmethod
    def _split(tax_settings: list[TaxSetting], tax_amount: Decimal, total_percentage: Decimal) -> list[TaxLine]:
        """Distribute the tax over its components; the last one takes the rounding remainder."""
        lines = []
        allocated = Decimal("0.00")
        for index, setting in enumerate(tax_settings):
            if index == len(tax_settings) - 1:
                line_amount = tax_amount - allocated
            elif total_percentage:
                line_amount = quantize_money(tax_amount * Decimal(setting.percentage) / total_percentage)
                allocated += line_amount
            else:
                line_amount = Decimal("0.00")
            lines.append(
                TaxLine(
                    name=setting.name,
                    tax_type=setting.tax_type.value,
                    percentage=Decimal(setting.percentage),
                    amount=line_amount,
                )
            )
        return lines
