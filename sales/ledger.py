"""Customer debt balance mutations.

``Customer.current_debt`` is a running total maintained by deltas. Every
mutation here is one conditional UPDATE that re-checks the resulting balance
in the WHERE clause, so concurrent writers for the same customer can never
drive it negative. Callers wrap the triggering Sale / DebtPayment write and
the ledger call in the same ``transaction.atomic()`` block.
"""

import logging
from decimal import Decimal

from django.conf import settings
from django.db.models import F, Q
from rest_framework.exceptions import NotFound

from common.exceptions import InvalidAmount
from common.utils import to_money
from sales.models import Customer

logger = logging.getLogger("sales.ledger")


def _debt_limit_enforced():
    return bool(getattr(settings, "SALES_ENFORCE_DEBT_LIMIT", False))


def _apply_delta(customer_id, delta, *, operation):
    """Add `delta` to the customer's balance or raise without touching it."""
    delta = to_money(delta)
    if delta == 0:
        if not Customer.objects.filter(pk=customer_id).exists():
            raise NotFound("Customer not found.")
        return delta

    queryset = Customer.objects.filter(pk=customer_id, current_debt__gte=-delta)
    if delta > 0 and _debt_limit_enforced():
        # A limit of zero means "no limit".
        queryset = queryset.filter(Q(debt_limit__lte=0) | Q(debt_limit__gte=F("current_debt") + delta))

    updated = queryset.update(current_debt=F("current_debt") + delta)
    if updated:
        logger.info("ledger_delta_applied op=%s", operation, extra={"customer_id": customer_id, "delta": str(delta)})
        if delta > 0 and not _debt_limit_enforced():
            _warn_if_over_limit(customer_id)
        return delta

    if not Customer.objects.filter(pk=customer_id).exists():
        raise NotFound("Customer not found.")

    logger.info("ledger_delta_rejected op=%s", operation, extra={"customer_id": customer_id, "delta": str(delta)})
    if delta > 0:
        raise InvalidAmount("Amount exceeds customer debt limit.")
    raise InvalidAmount()


def _warn_if_over_limit(customer_id):
    customer = Customer.objects.filter(pk=customer_id).values("current_debt", "debt_limit").first()
    if customer and customer["debt_limit"] > 0 and customer["current_debt"] > customer["debt_limit"]:
        logger.warning(
            "debt_limit_exceeded current_debt=%s debt_limit=%s",
            customer["current_debt"],
            customer["debt_limit"],
            extra={"customer_id": customer_id},
        )


def apply_debt_sale_create(customer_id, amount):
    return _apply_delta(customer_id, Decimal(amount), operation="debt_sale_create")


def apply_debt_sale_amount_change(customer_id, old_amount, new_amount):
    return _apply_delta(customer_id, Decimal(new_amount) - Decimal(old_amount), operation="debt_sale_amount_change")


def apply_debt_sale_delete(customer_id, amount):
    return _apply_delta(customer_id, -Decimal(amount), operation="debt_sale_delete")


def apply_payment_create(customer_id, amount):
    """Decrease the balance by a payment; paying more than is owed is rejected."""
    return _apply_delta(customer_id, -Decimal(amount), operation="payment_create")


def apply_payment_amount_change(customer_id, old_amount, new_amount):
    return _apply_delta(customer_id, Decimal(old_amount) - Decimal(new_amount), operation="payment_amount_change")


def apply_payment_delete(customer_id, amount):
    return _apply_delta(customer_id, Decimal(amount), operation="payment_delete")
