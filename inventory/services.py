import logging
from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import DecimalField, ExpressionWrapper, F, Min, Q, Sum, Value
from django.db.models.functions import Coalesce
from django.utils import timezone

from common.exceptions import InsufficientStock
from common.utils import to_money
from inventory.models import InventoryBatch, Product, StockMovement

logger = logging.getLogger("inventory.fefo")

ZERO = Decimal("0")
QTY_FIELD = DecimalField(max_digits=12, decimal_places=2)
VALUE_FIELD = DecimalField(max_digits=24, decimal_places=4)


def fefo_candidates(product_id, quantity):
    """Batches able to cover `quantity` on their own, soonest expiry first (no expiry last)."""
    return InventoryBatch.objects.filter(product_id=product_id, remaining_quantity__gte=quantity).order_by(
        F("expiry_date").asc(nulls_last=True),
        F("received_date").asc(nulls_last=True),
        "created_at",
        "id",
    )


def allocate_fefo_batch(product_id, quantity):
    """Reserve `quantity` of `product_id` from exactly one batch.

    Must run inside the caller's transaction: the candidate rows are locked so
    two concurrent checkouts cannot both take the last units of a batch, and
    the decrement is a conditional update that re-checks the remaining
    quantity. Orders are never split across batches.
    """
    quantity = Decimal(quantity)
    if quantity <= 0:
        raise InsufficientStock(f"Insufficient stock for product {product_id}.")

    batch = fefo_candidates(product_id, quantity).select_for_update().first()
    if batch is None:
        logger.info(
            "fefo_insufficient_stock",
            extra={"product_id": product_id, "delta": str(quantity)},
        )
        raise InsufficientStock(f"Insufficient stock for product {product_id}.")

    updated = InventoryBatch.objects.filter(pk=batch.pk, remaining_quantity__gte=quantity).update(
        remaining_quantity=F("remaining_quantity") - quantity
    )
    if not updated:
        raise InsufficientStock(f"Insufficient stock for product {product_id}.")

    batch.refresh_from_db(fields=["remaining_quantity"])
    logger.info(
        "fefo_batch_allocated",
        extra={"product_id": product_id, "batch_id": batch.id, "delta": str(quantity)},
    )
    return batch


def record_stock_movement(*, product_id, batch_id, movement_type, quantity, reference_type, reference_id, user=None):
    """Best-effort movement audit; never raises and never rolls back the caller."""
    try:
        with transaction.atomic():
            return StockMovement.objects.create(
                product_id=product_id,
                batch_id=batch_id,
                movement_type=movement_type,
                quantity=quantity,
                reference_type=reference_type,
                reference_id=reference_id,
                created_by=user if user is not None and user.is_authenticated else None,
            )
    except DatabaseError:
        logger.warning(
            "stock_movement_write_failed type=%s reference=%s:%s",
            movement_type,
            reference_type,
            reference_id,
            exc_info=True,
            extra={"product_id": product_id, "batch_id": batch_id},
        )
        return None


@transaction.atomic
def receive_stock(*, product, quantity, cost_price, batch_number=None, expiry_date=None, received_date=None, user=None):
    batch = InventoryBatch.objects.create(
        product=product,
        quantity=quantity,
        remaining_quantity=quantity,
        cost_price=cost_price,
        batch_number=batch_number,
        expiry_date=expiry_date,
        received_date=received_date,
    )
    record_stock_movement(
        product_id=product.id,
        batch_id=batch.id,
        movement_type=StockMovement.MovementType.IN,
        quantity=quantity,
        reference_type="purchase",
        reference_id=batch.id,
        user=user,
    )
    return batch


def annotate_inventory_summary(queryset):
    in_stock = Q(batches__remaining_quantity__gt=0)
    return queryset.annotate(
        total_quantity=Coalesce(Sum("batches__remaining_quantity"), Value(ZERO), output_field=QTY_FIELD),
        stock_value=Coalesce(
            Sum(
                ExpressionWrapper(F("batches__remaining_quantity") * F("batches__cost_price"), output_field=VALUE_FIELD),
                filter=in_stock,
            ),
            Value(ZERO),
            output_field=VALUE_FIELD,
        ),
        nearest_expiry_date=Min("batches__expiry_date", filter=in_stock),
    )


def average_cost(product):
    total = Decimal(getattr(product, "total_quantity", ZERO) or ZERO)
    if total <= 0:
        return None
    return to_money(Decimal(product.stock_value) / total)


def products_near_expiry(days_threshold=None):
    if days_threshold is None:
        days_threshold = getattr(settings, "INVENTORY_EXPIRY_ALERT_DAYS", 7)
    today = timezone.localdate()
    horizon = today + timedelta(days=days_threshold)

    batches = (
        InventoryBatch.objects.select_related("product")
        .filter(
            remaining_quantity__gt=0,
            expiry_date__isnull=False,
            expiry_date__lte=horizon,
            product__is_active=True,
        )
        .order_by("expiry_date", "product__name")
    )
    return [
        {
            "product_id": batch.product_id,
            "product_name": batch.product.name,
            "unit": batch.product.unit,
            "batch_id": batch.id,
            "batch_number": batch.batch_number,
            "quantity": batch.remaining_quantity,
            "expiry_date": batch.expiry_date,
            "days_until_expiry": (batch.expiry_date - today).days,
        }
        for batch in batches
    ]


def low_stock_products():
    products = annotate_inventory_summary(Product.objects.filter(is_active=True)).order_by("name")
    return [
        {
            "product_id": product.id,
            "name": product.name,
            "unit": product.unit,
            "current_stock": product.total_quantity,
            "min_stock_level": product.min_stock_level,
        }
        for product in products
        if product.total_quantity < product.min_stock_level
    ]
