"""Tax configuration and billing party details."""
from sqlalchemy import Column, Integer, String, Boolean, Numeric, Enum as SQLEnum, Text
import enum

from subscription_engine.models.base import Base
from subscription_engine.models.plan import Region


class TaxType(enum.Enum):
    """Indian GST components."""

    GST = "gst"
    CGST = "cgst"
    SGST = "sgst"
    IGST = "igst"


class TaxSetting(Base):
    """A tax rate applied to prices sold in one region/currency."""

    __tablename__ = "tax_settings"

    name = Column(String, nullable=False)
    tax_type = Column(SQLEnum(TaxType), nullable=False, default=TaxType.GST)
    percentage = Column(Numeric(5, 2), nullable=False)
    country = Column(String, nullable=False, default="India")
    state_applicable = Column(String, nullable=True)
    enabled = Column(Boolean, nullable=False, default=True, index=True)
    apply_to_region = Column(SQLEnum(Region), nullable=False, default=Region.INDIA)
    apply_currency = Column(String(3), nullable=False, default="INR")

    def __repr__(self) -> str:
        """String representation."""
        return f"<TaxSetting(name={self.name}, {self.percentage}% {self.apply_to_region.value}/{self.apply_currency})>"


class CompanyTaxInfo(Base):
    """Seller details printed on invoices."""

    __tablename__ = "company_tax_info"

    company_name = Column(String, nullable=False)
    address = Column(Text, nullable=False)
    city = Column(String, nullable=False)
    state = Column(String, nullable=False)
    country = Column(String, nullable=False, default="India")
    postal_code = Column(String, nullable=False)
    gstin = Column(String, nullable=True)
    pan = Column(String, nullable=True)
    tax_reg_number = Column(String, nullable=True)
    email = Column(String, nullable=True)
    phone = Column(String, nullable=True)

    def snapshot(self, include_gstin: bool = True) -> dict:
        data = {
            "company_name": self.company_name,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "country": self.country,
            "postal_code": self.postal_code,
            "pan": self.pan,
            "tax_reg_number": self.tax_reg_number,
            "email": self.email,
            "phone": self.phone,
        }
        if include_gstin:
            data["gstin"] = self.gstin
        return data

    def __repr__(self) -> str:
        """String representation."""
        return f"<CompanyTaxInfo(company_name={self.company_name})>"


class BillingDetails(Base):
    """Buyer details a user entered at checkout."""

    __tablename__ = "user_billing_details"

    user_id = Column(Integer, nullable=False, unique=True, index=True)
    full_name = Column(String, nullable=False)
    country = Column(String, nullable=False)
    address = Column(Text, nullable=True)
    city = Column(String, nullable=True)
    state = Column(String, nullable=True)
    postal_code = Column(String, nullable=True)
    tax_id = Column(String, nullable=True)
    company_name = Column(String, nullable=True)

    def snapshot(self) -> dict:
        return {
            "full_name": self.full_name,
            "country": self.country,
            "address": self.address,
            "city": self.city,
            "state": self.state,
            "postal_code": self.postal_code,
            "tax_id": self.tax_id,
            "company_name": self.company_name,
        }

    def __repr__(self) -> str:
        """String representation."""
        return f"<BillingDetails(user_id={self.user_id}, country={self.country})>"
