"""Gateway configuration, plan mappings and credential checks."""
from typing import Any
from uuid import UUID

import pydantic
import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from subscription_engine.adapters.base import PaymentGatewayAdapter
from subscription_engine.adapters.registry import GatewayRegistry
from subscription_engine.config import Settings
from subscription_engine.errors import Conflict, NotFound, ValidationError
from subscription_engine.models.gateway import GatewayPlanMapping, PaymentGatewayConfig
from subscription_engine.models.payment import PaymentGateway
from subscription_engine.models.plan import Region
from subscription_engine.schemas.gateway import (
    RazorpayGatewayConfig,
    StripeGatewayConfig,
    VerificationResult,
    dump_gateway_config,
    parse_gateway_config,
)
from subscription_engine.services.plan_catalog import PlanCatalog
from subscription_engine.utils.currency import require_currency

logger = structlog.get_logger(__name__)


def normalize_legacy_plan_mappings(raw: dict[str, Any]) -> dict[str, dict[str, str]]:
    """
    Normalize stored plan mappings to ``{plan_id: {currency: external_id}}``.

    Older configs stored a bare external id per plan, which always meant
    an INR plan.

    Example:
        >>> normalize_legacy_plan_mappings({"p1": "plan_abc", "p2": {"inr": "plan_x"}})
        {'p1': {'INR': 'plan_abc'}, 'p2': {'INR': 'plan_x'}}

    Raises:
        ValidationError: If an entry is neither a string nor a mapping
    """
    normalized: dict[str, dict[str, str]] = {}
    for plan_id, value in raw.items():
        if isinstance(value, str):
            normalized[plan_id] = {"INR": value}
        elif isinstance(value, dict):
            normalized[plan_id] = {currency.upper(): external_id for currency, external_id in value.items()}
        else:
            raise ValidationError(f"Unrecognized plan mapping for {plan_id}", plan_id=plan_id)
    return normalized


async def load_registry(db: AsyncSession, settings: Settings) -> GatewayRegistry:
    """
    Build a registry from active stored configs.

    Gateways without a stored config fall back to environment credentials.
    """
    result = await db.execute(select(PaymentGatewayConfig).where(PaymentGatewayConfig.is_active.is_(True)))
    stored = {row.gateway: parse_gateway_config(row.config) for row in result.scalars().all()}

    configs = []
    for adapter in GatewayRegistry.from_settings(settings):
        configs.append(stored.get(adapter.gateway) or adapter.config)
    return GatewayRegistry.from_configs(configs)


class GatewayService:
    """Admin-facing operations over configured payment gateways."""

    def __init__(self, db: AsyncSession, registry: GatewayRegistry, catalog: PlanCatalog | None = None):
        """
        Initialize gateway service.

        Args:
            db: Database session
            registry: Configured adapters
            catalog: Plan catalog (a new one on ``db`` when omitted)
        """
        self.db = db
        self.registry = registry
        self.catalog = catalog or PlanCatalog(db)

    def get_adapter(self, gateway: PaymentGateway) -> PaymentGatewayAdapter:
        return self.registry.get(gateway)

    def adapter_for(self, region: Region, currency: str) -> PaymentGatewayAdapter:
        return self.registry.for_region(region, require_currency(currency))

    async def get_external_plan_id(self, gateway: PaymentGateway, plan_id: UUID, currency: str) -> str | None:
        mapping = await self._find_mapping(gateway, plan_id, currency.upper())
        return mapping.external_plan_id if mapping else None

    async def ensure_plan_mapping(self, gateway: PaymentGateway, plan_id: UUID, currency: str) -> GatewayPlanMapping:
        """
        Return the gateway plan for (plan, currency), creating it when absent.

        The price comes from the plan's pricing row in a region the gateway
        serves.

        Raises:
            ValidationError: If the gateway does not support the currency
            NotFound: If the plan has no pricing the gateway can use
            GatewayError: If the gateway call fails
        """
        currency = require_currency(currency)
        adapter = self.get_adapter(gateway)
        if currency not in adapter.supported_currencies:
            raise ValidationError(
                f"{gateway.value} does not support {currency}",
                gateway=gateway.value,
                currency=currency,
            )

        existing = await self._find_mapping(gateway, plan_id, currency)
        if existing is not None:
            return existing

        plan = await self.catalog.get_plan(plan_id)
        pricing = None
        for region in adapter.supported_regions:
            pricing = await self.catalog.find_pricing(plan_id, region, currency)
            if pricing is not None:
                break
        if pricing is None:
            raise NotFound(
                f"Plan {plan.name} has no {currency} pricing for {gateway.value}",
                plan_id=str(plan_id),
                currency=currency,
            )

        external_plan_id = await adapter.create_plan(plan, currency, pricing.price)
        mapping = await self._store_mapping(gateway, plan_id, currency, external_plan_id)

        logger.info(
            "gateway_plan_mapped",
            gateway=gateway.value,
            plan_id=str(plan_id),
            currency=currency,
            external_plan_id=external_plan_id,
        )
        return mapping

    async def list_mappings(self, gateway: PaymentGateway) -> list[GatewayPlanMapping]:
        result = await self.db.execute(
            select(GatewayPlanMapping)
            .where(GatewayPlanMapping.gateway == gateway)
            .order_by(GatewayPlanMapping.created_at)
        )
        return list(result.scalars().all())

    async def mappings_by_plan(self, gateway: PaymentGateway) -> dict[str, dict[str, str]]:
        """Stored mappings in the canonical ``{plan_id: {currency: external_id}}`` shape."""
        mappings: dict[str, dict[str, str]] = {}
        for mapping in await self.list_mappings(gateway):
            mappings.setdefault(str(mapping.plan_id), {})[mapping.currency] = mapping.external_plan_id
        return mappings

    async def verify_credentials(self, gateway: PaymentGateway, key: str | None = None) -> VerificationResult:
        """Check a credential string against the live gateway without storing it."""
        result = await self.get_adapter(gateway).verify_credentials(key)
        logger.info("gateway_credentials_checked", gateway=gateway.value, valid=result.valid)
        return result

    async def save_config(
        self,
        raw: dict[str, Any],
        name: str | None = None,
        is_default: bool = False,
        test_mode: bool = True,
    ) -> PaymentGatewayConfig:
        """
        Validate and store a gateway config.

        A legacy ``plan_mappings`` entry in ``raw`` is imported into the
        mapping table instead of being stored in the blob.

        Raises:
            ValidationError: If the config does not match its gateway's schema
        """
        raw = dict(raw)
        legacy_mappings = raw.pop("plan_mappings", None)
        try:
            config = parse_gateway_config(raw)
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid gateway config", errors=[err["msg"] for err in e.errors()]) from e

        gateway = PaymentGateway(config.gateway)
        result = await self.db.execute(select(PaymentGatewayConfig).where(PaymentGatewayConfig.gateway == gateway))
        row = result.scalar_one_or_none()
        if row is None:
            row = PaymentGatewayConfig(gateway=gateway)
            self.db.add(row)

        row.name = name or gateway.value.title()
        row.config = dump_gateway_config(config)
        row.is_active = True
        row.is_default = is_default
        row.test_mode = test_mode
        await self.db.flush()

        imported = 0
        if legacy_mappings:
            imported = await self.import_legacy_mappings(gateway, legacy_mappings)

        logger.info("gateway_config_saved", gateway=gateway.value, test_mode=test_mode, imported_mappings=imported)
        return row

    async def get_config(self, gateway: PaymentGateway) -> RazorpayGatewayConfig | StripeGatewayConfig:
        result = await self.db.execute(select(PaymentGatewayConfig).where(PaymentGatewayConfig.gateway == gateway))
        row = result.scalar_one_or_none()
        if row is None:
            raise NotFound(f"No stored config for {gateway.value}", gateway=gateway.value)
        return parse_gateway_config(row.config)

    async def import_legacy_mappings(self, gateway: PaymentGateway, raw: dict[str, Any]) -> int:
        """
        Import plan mappings from a legacy config blob.

        Existing mappings are left untouched.

        Returns:
            Number of mappings created
        """
        created = 0
        for plan_id, by_currency in normalize_legacy_plan_mappings(raw).items():
            for currency, external_plan_id in by_currency.items():
                if await self._find_mapping(gateway, UUID(plan_id), currency) is not None:
                    continue
                await self._store_mapping(gateway, UUID(plan_id), currency, external_plan_id)
                created += 1
        return created

    async def _find_mapping(self, gateway: PaymentGateway, plan_id: UUID, currency: str) -> GatewayPlanMapping | None:
        result = await self.db.execute(
            select(GatewayPlanMapping).where(
                GatewayPlanMapping.gateway == gateway,
                GatewayPlanMapping.plan_id == plan_id,
                GatewayPlanMapping.currency == currency,
            )
        )
        return result.scalar_one_or_none()

    async def _store_mapping(
        self,
        gateway: PaymentGateway,
        plan_id: UUID,
        currency: str,
        external_plan_id: str,
    ) -> GatewayPlanMapping:
        mapping = GatewayPlanMapping(
            gateway=gateway,
            plan_id=plan_id,
            currency=currency,
            external_plan_id=external_plan_id,
        )
        self.db.add(mapping)
        try:
            await self.db.flush()
        except IntegrityError as e:
            raise Conflict(
                "Gateway plan mapping was created concurrently",
                gateway=gateway.value,
                plan_id=str(plan_id),
                currency=currency,
            ) from e
        return mapping
