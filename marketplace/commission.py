"""
Platform commission calculation.

``compute_commission`` is a pure function of its arguments: the caller passes
the list of commission settings to choose from. ``calculate_commission``
loads that list from the database on every call, so a rate change applies to
the next computation and never to entries already written.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP

from django.core.exceptions import ValidationError
from django.db import transaction
from django.utils import timezone

from .conf import get_setting
from .models import CommissionSetting

logger = logging.getLogger(__name__)

CENT = Decimal('0.01')
HUNDRED = Decimal('100')


def quantize_money(value):
    """Round a Decimal to 2 places, half up."""
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def parse_amount(value, field):
    """Decimal from user or gateway input; bad values raise ValidationError keyed by field."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError({field: f'Invalid amount {value!r}.'})
    if not amount.is_finite():
        raise ValidationError({field: f'Invalid amount {value!r}.'})
    return amount


@dataclass(frozen=True)
class CommissionBreakdown:
    rate: Decimal
    commission_amount: Decimal
    net_amount: Decimal
    setting_id: int = None


def select_setting(kind, settings, at):
    """
    Pick the setting in effect for kind at the given moment.

    Among active settings whose [effective_from, effective_until) window
    contains ``at``, the one with the latest effective_from wins.
    """
    candidates = [
        setting for setting in settings
        if setting.transaction_type == kind and setting.is_active and setting.applies_at(at)
    ]
    if not candidates:
        return None
    return max(candidates, key=lambda setting: setting.effective_from)


def compute_commission(kind, amount, settings, at=None):
    """
    Split amount into platform commission and seller net amount.

    Args:
        kind: 'rental' or 'sale'
        amount: Gross amount (Decimal, > 0)
        settings: Iterable of CommissionSetting rows to choose from
        at: Moment the rate applies to (defaults to now)

    Returns:
        CommissionBreakdown

    Raises:
        ValidationError: If kind is unknown or amount is not positive
    """
    if kind not in ('rental', 'sale'):
        raise ValidationError({'kind': f'Unknown transaction kind "{kind}".'})

    amount = Decimal(amount)
    if amount <= 0:
        raise ValidationError({'amount': 'Amount must be greater than 0.'})
    amount = quantize_money(amount)

    if at is None:
        at = timezone.now()

    setting = select_setting(kind, settings, at)

    if setting is None:
        rate = get_setting('DEFAULT_COMMISSION_PERCENTAGE')
        logger.warning(
            f"No active {kind} commission setting at {at.isoformat()}; "
            f"falling back to default rate {rate}%"
        )
        min_commission = max_commission = None
        setting_id = None
    else:
        rate = setting.commission_percentage
        min_commission = setting.min_commission
        max_commission = setting.max_commission
        setting_id = setting.pk

    commission = quantize_money(amount * Decimal(rate) / HUNDRED)

    if min_commission is not None and commission < min_commission:
        commission = min_commission
    if max_commission is not None and commission > max_commission:
        commission = max_commission

    # A minimum commission never takes more than the whole amount
    commission = min(quantize_money(commission), amount)

    return CommissionBreakdown(
        rate=quantize_money(rate),
        commission_amount=commission,
        net_amount=amount - commission,
        setting_id=setting_id,
    )


def calculate_commission(kind, amount, at=None):
    """Compute the commission using the rate table as currently stored."""
    if at is None:
        at = timezone.now()
    settings = list(
        CommissionSetting.objects.filter(
            transaction_type=kind,
            is_active=True,
            effective_from__lte=at,
        )
    )
    return compute_commission(kind, amount, settings, at=at)


def schedule_commission_rate(kind, percentage, effective_from=None, min_commission=None,
                             max_commission=None, description=''):
    """
    Introduce a new rate for kind starting at effective_from.

    The currently open-ended setting (if any) is closed at effective_from so
    the active windows stay non-overlapping.
    """
    if effective_from is None:
        effective_from = timezone.now()

    with transaction.atomic():
        open_settings = CommissionSetting.objects.select_for_update().filter(
            transaction_type=kind,
            is_active=True,
            effective_until__isnull=True,
            effective_from__lt=effective_from,
        )
        for setting in open_settings:
            setting.effective_until = effective_from
            setting.save()

        new_setting = CommissionSetting(
            transaction_type=kind,
            commission_percentage=percentage,
            min_commission=min_commission,
            max_commission=max_commission,
            effective_from=effective_from,
            description=description,
        )
        new_setting.save()

    logger.info(
        f"Scheduled {kind} commission rate {percentage}% from {effective_from.isoformat()} "
        f"(setting {new_setting.pk})"
    )
    return new_setting
