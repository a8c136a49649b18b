"""
Royalty, VAT and fee arithmetic for marketplace sales.

Seller tiers by trailing 12-month net sales (GBP):

- Bronze (£0 - £999.99): 60% royalty
- Silver (£1,000 - £5,999.99): 70% royalty
- Gold (£6,000+): 80% royalty

Prices arrive VAT inclusive and in the smallest currency unit. VAT is taken
out first, the seller's share is computed on the net price, and items under
£3/$3/€3 carry a 20p/20c transaction fee charged against the seller's share.

Everything here is pure: no database, no Stripe.
"""
import math
from typing import Dict

from pydantic import BaseModel

VAT_RATES = {
    "GB": 0.2,
    "DE": 0.19,
    "FR": 0.2,
    "ES": 0.21,
    "IT": 0.22,
    "NL": 0.21,
    "BE": 0.21,
    "AT": 0.2,
    "IE": 0.23,
    "PT": 0.23,
    "PL": 0.23,
    "SE": 0.25,
    "DK": 0.25,
    "FI": 0.24,
    "US": 0,
    "CA": 0,  # GST/HST not modelled
    "AU": 0.1,
    "NZ": 0.15,
}

# Thresholds in GBP major units
TIER_THRESHOLDS = {
    "Bronze": {"min": 0, "max": 999.99, "rate": 0.6},
    "Silver": {"min": 1000, "max": 5999.99, "rate": 0.7},
    "Gold": {"min": 6000, "max": math.inf, "rate": 0.8},
}

TIER_LEVELS = {"Bronze": 1, "Silver": 2, "Gold": 3}

SMALL_TRANSACTION_FEE = {"GBP": 20, "USD": 20, "EUR": 20, "PKR": 0}
SMALL_TRANSACTION_THRESHOLD = {"GBP": 300, "USD": 300, "EUR": 300, "PKR": 30000}

CURRENCY_SYMBOLS = {"GBP": "£", "USD": "$", "EUR": "€", "PKR": "Rs"}
CURRENCY_MULTIPLIERS = {"GBP": 100, "USD": 100, "EUR": 100, "PKR": 1}

PAYOUT_FEES = {
    "stripe": {"percentage": 0.029, "fixed": 30},
    "paypal": {"percentage": 0.034, "fixed": 35},
    "bank_transfer": {"percentage": 0, "fixed": 250},
}


class RoyaltyBreakdown(BaseModel):
    original_price: int
    currency: str
    vat_amount: int
    net_price: int
    transaction_fee: int
    royalty_rate: float
    seller_tier: str
    seller_earnings: int
    platform_commission: int
    breakdown: Dict[str, str]


class PayoutFee(BaseModel):
    gross_amount: int
    fee_amount: int
    net_amount: int
    fee_percentage: str
    fee_description: str


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def get_vat_rate(country_code: str) -> float:
    return VAT_RATES.get((country_code or "").upper(), 0)


def calculate_vat(price: int, country_code: str) -> int:
    """Extract the VAT already included in ``price``"""
    rate = get_vat_rate(country_code)
    return round_half_up(price * (rate / (1 + rate)))


def determine_seller_tier(total_sales: float) -> Dict[str, object]:
    """Tier for a trailing 12-month total expressed in major units"""
    if total_sales >= TIER_THRESHOLDS["Gold"]["min"]:
        return {"tier": "Gold", "rate": TIER_THRESHOLDS["Gold"]["rate"]}
    if total_sales >= TIER_THRESHOLDS["Silver"]["min"]:
        return {"tier": "Silver", "rate": TIER_THRESHOLDS["Silver"]["rate"]}
    return {"tier": "Bronze", "rate": TIER_THRESHOLDS["Bronze"]["rate"]}


def calculate_transaction_fee(price: int, currency: str) -> int:
    threshold = SMALL_TRANSACTION_THRESHOLD.get(currency, 0)
    fee = SMALL_TRANSACTION_FEE.get(currency, 0)
    return fee if price < threshold else 0


def calculate_royalty(
    price: int,
    currency: str,
    buyer_country: str,
    royalty_rate: float,
    seller_tier: str,
) -> RoyaltyBreakdown:
    vat_amount = calculate_vat(price, buyer_country)
    net_price = price - vat_amount
    transaction_fee = calculate_transaction_fee(price, currency)

    seller_earnings = max(0, round_half_up(net_price * royalty_rate) - transaction_fee)
    # Remainder, so earnings + commission + fee always equals the net price.
    # Goes negative only when the fee exceeds the seller's share on tiny prices.
    platform_commission = net_price - seller_earnings - transaction_fee

    return RoyaltyBreakdown(
        original_price=price,
        currency=currency,
        vat_amount=vat_amount,
        net_price=net_price,
        transaction_fee=transaction_fee,
        royalty_rate=royalty_rate,
        seller_tier=seller_tier,
        seller_earnings=seller_earnings,
        platform_commission=platform_commission,
        breakdown={
            "gross": format_currency(price, currency),
            "vat": format_currency(vat_amount, currency),
            "net": format_currency(net_price, currency),
            "fee": format_currency(transaction_fee, currency),
            "seller_share": f"{royalty_rate * 100:.0f}%",
            "seller_earnings": format_currency(seller_earnings, currency),
            "platform_share": f"{(1 - royalty_rate) * 100:.0f}%",
            "platform_commission": format_currency(platform_commission, currency),
        },
    )


def format_currency(amount: int, currency: str) -> str:
    symbol = CURRENCY_SYMBOLS.get(currency, currency)
    divisor = CURRENCY_MULTIPLIERS.get(currency, 100)
    return f"{symbol}{amount / divisor:.2f}"


def to_smallest_unit(amount: float, currency: str) -> int:
    return round_half_up(float(amount) * CURRENCY_MULTIPLIERS.get(currency, 100))


def from_smallest_unit(amount: int, currency: str) -> float:
    return amount / CURRENCY_MULTIPLIERS.get(currency, 100)


def calculate_payout_fee(amount: int, currency: str, method: str) -> PayoutFee:
    fee = PAYOUT_FEES.get(method, PAYOUT_FEES["bank_transfer"])
    fee_amount = round_half_up(amount * fee["percentage"] + fee["fixed"])
    return PayoutFee(
        gross_amount=amount,
        fee_amount=fee_amount,
        net_amount=amount - fee_amount,
        fee_percentage=f"{fee['percentage'] * 100:.1f}%",
        fee_description=f"{fee['percentage'] * 100:.1f}% + {format_currency(fee['fixed'], currency)}",
    )
