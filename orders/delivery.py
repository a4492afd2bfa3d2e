from decimal import Decimal

from django.conf import settings

# (minimum subtotal, flat fee), highest threshold first.
# The fees are this shop's own defaults; set DELIVERY_FEE_TIERS to replace them.
DEFAULT_DELIVERY_FEE_TIERS = [
    (Decimal("50000"), Decimal("2000")),
    (Decimal("35000"), Decimal("1500")),
    (Decimal("10000"), Decimal("1000")),
    (Decimal("0"), Decimal("500")),
]


def calculate_delivery_fee(subtotal) -> Decimal:
    subtotal = Decimal(str(subtotal))
    tiers = getattr(settings, "DELIVERY_FEE_TIERS", DEFAULT_DELIVERY_FEE_TIERS)
    for threshold, fee in sorted(tiers, key=lambda tier: Decimal(str(tier[0])), reverse=True):
        if subtotal >= Decimal(str(threshold)):
            return Decimal(str(fee))
    return Decimal("0")
