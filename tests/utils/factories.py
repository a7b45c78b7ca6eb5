"""Test data factories using Faker for generating realistic test data."""
from typing import Any

from faker import Faker

fake = Faker("en_IN")


class BillingDetailsFactory:
    """Factory for buyer details entered at checkout."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Create billing details test data.

        Args:
            overrides: Optional field overrides

        Returns:
            dict: BillingDetails data
        """
        data = {
            "user_id": fake.random_int(min=1000, max=999999),
            "full_name": fake.name(),
            "country": "India",
            "address": fake.street_address(),
            "city": fake.city(),
            "state": fake.state(),
            "postal_code": fake.postcode(),
            "tax_id": None,
            "company_name": None,
        }
        if overrides:
            data.update(overrides)
        return data


class CompanyTaxInfoFactory:
    """Factory for seller details printed on invoices."""

    @staticmethod
    def create(overrides: dict[str, Any] | None = None) -> dict[str, Any]:
        """
        Create company tax info test data.

        Args:
            overrides: Optional field overrides

        Returns:
            dict: CompanyTaxInfo data
        """
        data = {
            "company_name": fake.company(),
            "address": fake.street_address(),
            "city": fake.city(),
            "state": fake.state(),
            "country": "India",
            "postal_code": fake.postcode(),
            "gstin": "29ABCDE1234F1Z5",
            "pan": "ABCDE1234F",
            "email": fake.company_email(),
            "phone": fake.phone_number(),
        }
        if overrides:
            data.update(overrides)
        return data


class RazorpayEventFactory:
    """Factory for Razorpay webhook bodies."""

    @staticmethod
    def payment(
        event: str = "payment.captured",
        amount_paise: int = 100000,
        subscription_id: str | None = None,
        payment_id: str | None = None,
    ) -> dict[str, Any]:
        """
        Create a payment webhook body.

        Args:
            event: Razorpay event name
            amount_paise: Amount in paise
            subscription_id: Internal subscription id placed in the notes
            payment_id: Razorpay payment id

        Returns:
            dict: Webhook body
        """
        notes = {"subscription_id": subscription_id} if subscription_id else []
        return {
            "entity": "event",
            "event": event,
            "created_at": fake.unix_time(),
            "payload": {
                "payment": {
                    "entity": {
                        "id": payment_id or f"pay_{fake.lexify('??????????????')}",
                        "amount": amount_paise,
                        "currency": "INR",
                        "status": "captured" if event == "payment.captured" else "failed",
                        "notes": notes,
                        "error_description": None if event == "payment.captured" else "Card declined",
                    }
                }
            },
        }
