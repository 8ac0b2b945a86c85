import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import Count
from django.db.models.functions import TruncDate
from django.utils import timezone
from rest_framework.exceptions import NotFound

from common.exceptions import EmptyUpdate, ImmutableRecord, InvalidOperation
from common.utils import to_money
from inventory.models import StockMovement
from inventory.services import allocate_fefo_batch, record_stock_movement
from sales import ledger
from sales.models import Customer, DebtPayment, Sale, SaleItem

logger = logging.getLogger(__name__)

DEBT_LINE_FIELDS = ("amount", "purchase_date", "due_date", "notes")
PAYMENT_FIELDS = ("amount", "payment_method", "notes")
INVOICE_NUMBER_ATTEMPTS = 3


def generate_invoice_number(now=None):
    now = now or timezone.now()
    return f"HD{now:%Y%m%d%H%M%S}{now.microsecond // 1000:03d}"


def _unique_invoice_number():
    number = generate_invoice_number()
    suffix = 1
    candidate = number
    while Sale.objects.filter(invoice_number=candidate).exists():
        candidate = f"{number}-{suffix}"
        suffix += 1
    return candidate


def _create_sale(**fields):
    """Insert a sale under a fresh invoice number, retrying when a concurrent insert took it."""
    for attempt in range(1, INVOICE_NUMBER_ATTEMPTS + 1):
        invoice_number = _unique_invoice_number()
        try:
            with transaction.atomic():
                return Sale.objects.create(invoice_number=invoice_number, **fields)
        except IntegrityError:
            if attempt == INVOICE_NUMBER_ATTEMPTS:
                raise
            logger.warning("invoice_number_collision invoice_number=%s attempt=%s", invoice_number, attempt)


def _user_or_none(user):
    return user if user is not None and user.is_authenticated else None


# Debt-line guard


def ensure_editable_debt_line(sale):
    """Only manually entered debt lines (debt sales without items) may change."""
    if sale.payment_method != Sale.PaymentMethod.DEBT:
        raise InvalidOperation("Only debt sales can be modified as debt lines.")
    if sale.items.exists():
        raise ImmutableRecord()


def _locked_sale(sale_id):
    sale = Sale.objects.select_for_update().filter(pk=sale_id).first()
    if sale is None:
        raise NotFound("Debt line not found.")
    return sale


@transaction.atomic
def create_debt_line(*, customer, amount, purchase_date=None, due_date=None, notes=None, user=None):
    amount = to_money(amount)
    sale = _create_sale(
        customer=customer,
        total_amount=amount,
        discount_amount=Decimal("0"),
        final_amount=amount,
        payment_method=Sale.PaymentMethod.DEBT,
        payment_status=Sale.PaymentStatus.UNPAID,
        due_date=due_date,
        notes=notes,
        created_at=purchase_date or timezone.now(),
        created_by=_user_or_none(user),
    )
    ledger.apply_debt_sale_create(customer.id, amount)
    return sale


@transaction.atomic
def update_debt_line(sale_id, changes):
    """Apply the supplied subset of amount / purchase_date / due_date / notes."""
    changes = {key: value for key, value in changes.items() if key in DEBT_LINE_FIELDS}
    # A null purchase date keeps the current one.
    if changes.get("purchase_date") is None:
        changes.pop("purchase_date", None)
    if not changes:
        raise EmptyUpdate()

    sale = _locked_sale(sale_id)
    ensure_editable_debt_line(sale)

    update_fields = ["updated_at"]
    if "amount" in changes:
        new_amount = to_money(changes["amount"])
        ledger.apply_debt_sale_amount_change(sale.customer_id, sale.final_amount, new_amount)
        sale.total_amount = new_amount
        sale.final_amount = new_amount
        sale.discount_amount = Decimal("0")
        update_fields += ["total_amount", "final_amount", "discount_amount"]
    if "purchase_date" in changes:
        sale.created_at = changes["purchase_date"]
        update_fields.append("created_at")
    if "due_date" in changes:
        sale.due_date = changes["due_date"]
        update_fields.append("due_date")
    if "notes" in changes:
        sale.notes = changes["notes"]
        update_fields.append("notes")

    sale.save(update_fields=update_fields)
    return sale


@transaction.atomic
def delete_debt_line(sale_id):
    sale = _locked_sale(sale_id)
    ensure_editable_debt_line(sale)
    ledger.apply_debt_sale_delete(sale.customer_id, sale.final_amount)
    sale.delete()
    return sale_id


def duplicate_debt_lines(queryset):
    """Debt lines sharing purchase date and final amount with another line."""
    duplicates = (
        queryset.annotate(purchase_day=TruncDate("created_at"))
        .values("customer_id", "purchase_day", "final_amount")
        .annotate(line_count=Count("id"))
        .filter(line_count__gt=1)
    )
    keys = {(row["customer_id"], row["purchase_day"], row["final_amount"]) for row in duplicates}
    if not keys:
        return queryset.none()

    ids = [
        row["id"]
        for row in queryset.annotate(purchase_day=TruncDate("created_at")).values(
            "id", "customer_id", "purchase_day", "final_amount"
        )
        if (row["customer_id"], row["purchase_day"], row["final_amount"]) in keys
    ]
    return queryset.filter(id__in=ids)


# Debt payments


@transaction.atomic
def create_payment(*, customer, amount, payment_method, notes=None, user=None):
    amount = to_money(amount)
    ledger.apply_payment_create(customer.id, amount)
    return DebtPayment.objects.create(
        customer=customer,
        amount=amount,
        payment_method=payment_method,
        notes=notes,
        created_by=_user_or_none(user),
    )


@transaction.atomic
def update_payment(payment_id, changes):
    changes = {key: value for key, value in changes.items() if key in PAYMENT_FIELDS}
    if not changes:
        raise EmptyUpdate()

    payment = DebtPayment.objects.select_for_update().filter(pk=payment_id).first()
    if payment is None:
        raise NotFound("Payment not found.")

    update_fields = ["updated_at"]
    if "amount" in changes:
        new_amount = to_money(changes["amount"])
        ledger.apply_payment_amount_change(payment.customer_id, payment.amount, new_amount)
        payment.amount = new_amount
        update_fields.append("amount")
    for field in ("payment_method", "notes"):
        if field in changes:
            setattr(payment, field, changes[field])
            update_fields.append(field)

    payment.save(update_fields=update_fields)
    return payment


@transaction.atomic
def delete_payment(payment_id):
    payment = DebtPayment.objects.select_for_update().filter(pk=payment_id).first()
    if payment is None:
        raise NotFound("Payment not found.")
    ledger.apply_payment_delete(payment.customer_id, payment.amount)
    payment.delete()
    return payment_id


# Checkout


def checkout(*, items, payment_method, customer=None, discount_amount=None, due_date=None, notes=None, user=None):
    """Create a sale and its items, allocating every line from a single FEFO batch.

    Allocation, sale rows and the debt balance change commit together; an
    `InsufficientStock` on any line rolls back the whole sale. Stock movements
    are written afterwards on a best-effort basis.
    """
    total = to_money(sum((Decimal(item["quantity"]) * Decimal(item["unit_price"]) for item in items), Decimal("0")))
    discount = to_money(discount_amount or 0)
    final_amount = to_money(total - discount)
    is_debt = payment_method == Sale.PaymentMethod.DEBT

    with transaction.atomic():
        allocations = [(item, allocate_fefo_batch(item["product"].id, item["quantity"])) for item in items]

        sale = _create_sale(
            customer=customer,
            total_amount=total,
            discount_amount=discount,
            final_amount=final_amount,
            payment_method=payment_method,
            payment_status=Sale.PaymentStatus.UNPAID if is_debt else Sale.PaymentStatus.PAID,
            due_date=due_date,
            notes=notes,
            created_by=_user_or_none(user),
        )
        sale_items = SaleItem.objects.bulk_create(
            [
                SaleItem(
                    sale=sale,
                    product=item["product"],
                    batch=batch,
                    quantity=item["quantity"],
                    unit_price=item["unit_price"],
                    cost_price=batch.cost_price,
                    subtotal=to_money(Decimal(item["quantity"]) * Decimal(item["unit_price"])),
                )
                for item, batch in allocations
            ]
        )

        if is_debt:
            ledger.apply_debt_sale_create(customer.id, final_amount)

        for sale_item in sale_items:
            record_stock_movement(
                product_id=sale_item.product_id,
                batch_id=sale_item.batch_id,
                movement_type=StockMovement.MovementType.OUT,
                quantity=sale_item.quantity,
                reference_type="sale",
                reference_id=sale.id,
                user=user,
            )

    logger.info(
        "checkout_completed items=%s method=%s final_amount=%s",
        len(sale_items),
        payment_method,
        final_amount,
        extra={"sale_id": sale.id, "customer_id": customer.id if customer else None},
    )
    return sale, sale_items


# Sale lifecycle


@transaction.atomic
def lock_sale(sale_id, user=None):
    sale = Sale.objects.select_for_update().filter(pk=sale_id).first()
    if sale is None:
        raise NotFound("Sale not found.")
    if sale.is_locked:
        raise InvalidOperation("Sale is already locked.")

    sale.is_locked = True
    sale.locked_at = timezone.now()
    sale.locked_by = _user_or_none(user)
    sale.save(update_fields=["is_locked", "locked_at", "locked_by", "updated_at"])
    return sale


@transaction.atomic
def refund_sale(sale_id, reason=None, user=None):
    sale = Sale.objects.select_for_update().filter(pk=sale_id).first()
    if sale is None:
        raise NotFound("Sale not found.")
    if sale.refunded_at is not None:
        raise InvalidOperation("Sale is already refunded.")

    now = timezone.now()
    sale.refunded_at = now
    sale.refunded_by = _user_or_none(user)
    sale.refund_notes = reason
    update_fields = ["refunded_at", "refunded_by", "refund_notes", "updated_at"]
    if not sale.is_locked:
        sale.is_locked = True
        sale.locked_at = now
        sale.locked_by = _user_or_none(user)
        update_fields += ["is_locked", "locked_at", "locked_by"]

    sale.save(update_fields=update_fields)
    return sale


def customer_history(customer, *, limit=20, year=None):
    sales = Sale.objects.filter(customer=customer).order_by("-created_at")
    payments = DebtPayment.objects.filter(customer=customer).order_by("-created_at")
    if year is not None:
        sales = sales.filter(created_at__year=year)
        payments = payments.filter(created_at__year=year)
    return list(sales[:limit]), list(payments[:limit])


def deactivate_customer(customer_id):
    updated = Customer.objects.filter(pk=customer_id).update(is_active=False, updated_at=timezone.now())
    if not updated:
        raise NotFound("Customer not found.")
    return customer_id
