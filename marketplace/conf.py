"""
Access to the MARKETPLACE settings dict.

Every key has a default here so the engine works with an empty or partial
MARKETPLACE setting.
"""

from decimal import Decimal

from django.conf import settings

DEFAULTS = {
    'DEFAULT_COMMISSION_PERCENTAGE': Decimal('5.00'),
    'MIN_WITHDRAWAL_AMOUNT': Decimal('50000'),
    'RENTAL_PAYMENT_TIMEOUT_MINUTES': 60,
    'SALE_CONFIRMATION_TIMEOUT_HOURS': 24,
    'TESTDRIVE_TIMEOUT_HOURS': 2,
    'PAYMENT_WEBHOOK_SERVER_KEY': '',
}


def get_setting(name):
    """Return a MARKETPLACE setting, falling back to DEFAULTS."""
    if name not in DEFAULTS:
        raise KeyError(f'Unknown marketplace setting: {name}')
    overrides = getattr(settings, 'MARKETPLACE', None) or {}
    value = overrides.get(name, DEFAULTS[name])
    if isinstance(DEFAULTS[name], Decimal) and not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value
