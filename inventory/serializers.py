from decimal import Decimal

from django.db import transaction
from django.utils import timezone
from rest_framework import serializers

from common.utils import to_money
from inventory.models import Category, InventoryBatch, Product, PurchaseOrder, PurchaseOrderItem, Supplier
from inventory.services import average_cost


class CategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ["id", "name", "description", "created_at"]
        read_only_fields = ["id", "created_at"]


class ProductSerializer(serializers.ModelSerializer):
    category_name = serializers.CharField(source="category.name", read_only=True, default=None)
    total_quantity = serializers.SerializerMethodField()
    avg_cost_price = serializers.SerializerMethodField()
    nearest_expiry_date = serializers.SerializerMethodField()

    class Meta:
        model = Product
        fields = [
            "id",
            "barcode",
            "name",
            "category",
            "category_name",
            "unit",
            "min_stock_level",
            "is_active",
            "created_at",
            "updated_at",
            "total_quantity",
            "avg_cost_price",
            "nearest_expiry_date",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]

    # Inventory fields are only present when the queryset was annotated.
    def get_total_quantity(self, obj):
        total = getattr(obj, "total_quantity", None)
        return str(to_money(total)) if total is not None else "0.00"

    def get_avg_cost_price(self, obj):
        if getattr(obj, "stock_value", None) is None:
            return None
        cost = average_cost(obj)
        return str(cost) if cost is not None else None

    def get_nearest_expiry_date(self, obj):
        value = getattr(obj, "nearest_expiry_date", None)
        return value.isoformat() if value else None

    def validate_min_stock_level(self, value):
        if value < 0:
            raise serializers.ValidationError("Minimum stock level cannot be negative.")
        return value


class SupplierSerializer(serializers.ModelSerializer):
    class Meta:
        model = Supplier
        fields = ["id", "code", "name", "phone", "email", "address", "tax_code", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class PurchaseOrderItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)

    class Meta:
        model = PurchaseOrderItem
        fields = ["id", "product", "product_name", "quantity", "unit_price", "subtotal"]
        read_only_fields = ["id", "subtotal"]

    def validate_quantity(self, value):
        if value <= 0:
            raise serializers.ValidationError("Quantity must be greater than zero.")
        return value

    def validate_unit_price(self, value):
        if value < 0:
            raise serializers.ValidationError("Unit price cannot be negative.")
        return value


def generate_order_number(now=None):
    now = now or timezone.now()
    return f"PO{now:%Y%m%d}{int(now.timestamp() * 1000) % 10000:04d}"


class PurchaseOrderSerializer(serializers.ModelSerializer):
    items = PurchaseOrderItemSerializer(many=True)
    supplier_name = serializers.CharField(source="supplier.name", read_only=True, default=None)
    total_items = serializers.SerializerMethodField()
    order_number = serializers.CharField(max_length=64, required=False, allow_blank=True, allow_null=True)

    class Meta:
        model = PurchaseOrder
        fields = [
            "id",
            "order_number",
            "supplier",
            "supplier_name",
            "status",
            "total_amount",
            "total_items",
            "warehouse",
            "notes",
            "created_by",
            "received_by",
            "created_at",
            "updated_at",
            "items",
        ]
        read_only_fields = ["id", "status", "total_amount", "created_by", "received_by", "created_at", "updated_at"]

    def get_total_items(self, obj):
        return str(sum((item.quantity for item in obj.items.all()), Decimal("0")))

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required.")
        return value

    def validate_order_number(self, value):
        if value and PurchaseOrder.objects.filter(order_number=value).exists():
            raise serializers.ValidationError("A purchase order with this number already exists.")
        return value

    @transaction.atomic
    def create(self, validated_data):
        items = validated_data.pop("items")
        if not validated_data.get("order_number"):
            validated_data["order_number"] = generate_order_number()

        total = Decimal("0")
        order = PurchaseOrder.objects.create(status=PurchaseOrder.Status.PENDING, **validated_data)
        for item in items:
            subtotal = to_money(Decimal(item["quantity"]) * Decimal(item["unit_price"]))
            PurchaseOrderItem.objects.create(
                purchase_order=order,
                product=item["product"],
                quantity=item["quantity"],
                unit_price=item["unit_price"],
                subtotal=subtotal,
            )
            total += subtotal

        order.total_amount = to_money(total)
        order.save(update_fields=["total_amount", "updated_at"])
        return order


class PurchaseOrderUpdateSerializer(serializers.ModelSerializer):
    class Meta:
        model = PurchaseOrder
        fields = ["status", "warehouse", "notes", "supplier", "received_by"]
        extra_kwargs = {field: {"required": False} for field in fields}


class StockInSerializer(serializers.Serializer):
    product_id = serializers.PrimaryKeyRelatedField(queryset=Product.objects.all(), source="product")
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2)
    cost_price = serializers.DecimalField(max_digits=14, decimal_places=2)
    batch_number = serializers.CharField(max_length=64, required=False, allow_null=True, allow_blank=True)
    expiry_date = serializers.DateField(required=False, allow_null=True)
    received_date = serializers.DateField(required=False, allow_null=True)

    def validate_quantity(self, value):
        if value <= 0:
            raise serializers.ValidationError("Quantity must be greater than zero.")
        return value

    def validate_cost_price(self, value):
        if value <= 0:
            raise serializers.ValidationError("Cost price must be greater than zero.")
        return value


class InventoryBatchSerializer(serializers.ModelSerializer):
    class Meta:
        model = InventoryBatch
        fields = [
            "id",
            "product",
            "quantity",
            "remaining_quantity",
            "cost_price",
            "batch_number",
            "expiry_date",
            "received_date",
            "created_at",
        ]
        read_only_fields = fields
