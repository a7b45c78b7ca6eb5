"""Currency validation and fixed-point money helpers."""
from decimal import Decimal, ROUND_HALF_UP

from subscription_engine.errors import ValidationError

# ISO 4217 currency codes the engine can price and invoice in
supported_currencies = [
    "INR",  # Indian Rupee
    "USD",  # United States Dollar
]

currency_symbols = {
    "INR": "₹",
    "USD": "$",
}

CENT = Decimal("0.01")


def validate_currency(currency: str) -> bool:
    """
    Validate if a currency code is supported.

    Args:
        currency: ISO 4217 currency code (e.g., "USD", "INR")

    Returns:
        True if currency is supported, False otherwise

    Example:
        >>> validate_currency("INR")
        True
        >>> validate_currency("XYZ")
        False
    """
    if not currency:
        return False

    return currency.upper() in supported_currencies


def require_currency(currency: str) -> str:
    """Return the normalized currency code or raise ValidationError."""
    if not validate_currency(currency):
        raise ValidationError(f"Unsupported currency: {currency}", currency=currency)
    return currency.upper()


def quantize_money(amount: Decimal) -> Decimal:
    """
    Round to two decimal places using half-up rounding.

    Example:
        >>> quantize_money(Decimal("847.4576"))
        Decimal('847.46')
    """
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value: object) -> Decimal:
    """
    Coerce a payload amount into a non-negative Decimal.

    Floats are rejected; strings and integers are accepted.

    Raises:
        ValidationError: If the value is not a valid non-negative amount
    """
    if isinstance(value, (float, bool)) or value is None:
        raise ValidationError(f"Invalid amount: {value!r}")
    try:
        amount = Decimal(str(value))
    except ArithmeticError:
        raise ValidationError(f"Invalid amount: {value!r}")
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"Invalid amount: {value!r}")
    return quantize_money(amount)


def convert_to_smallest_unit(amount: Decimal, currency: str) -> int:
    """
    Convert a decimal amount to the smallest currency unit (paise, cents).

    Examples:
        >>> convert_to_smallest_unit(Decimal("499.00"), "INR")
        49900
    """
    require_currency(currency)
    return int((quantize_money(amount) * 100).to_integral_value(rounding=ROUND_HALF_UP))


def convert_from_smallest_unit(amount: int, currency: str) -> Decimal:
    """
    Convert from the smallest currency unit back to a decimal amount.

    Examples:
        >>> convert_from_smallest_unit(49900, "INR")
        Decimal('499.00')
    """
    require_currency(currency)
    return quantize_money(Decimal(amount) / 100)


def format_amount_for_currency(amount: Decimal, currency: str) -> str:
    """
    Format an amount for display on invoices.

    Examples:
        >>> format_amount_for_currency(Decimal("1000"), "INR")
        '₹1,000.00 INR'
    """
    currency_upper = currency.upper()
    symbol = currency_symbols.get(currency_upper, currency_upper)
    return f"{symbol}{quantize_money(amount):,.2f} {currency_upper}"
