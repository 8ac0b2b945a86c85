import datetime

from django.utils.dateparse import parse_date
from rest_framework import serializers

from inventory.models import Product
from sales.models import Customer, DebtPayment, Sale, SaleItem


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = [
            "id",
            "name",
            "phone",
            "address",
            "debt_limit",
            "current_debt",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "current_debt", "created_at", "updated_at"]

    def validate_name(self, value):
        if not value.strip():
            raise serializers.ValidationError("Name is required.")
        return value

    def validate_debt_limit(self, value):
        if value < 0:
            raise serializers.ValidationError("Debt limit cannot be negative.")
        return value


class SaleItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True, default="")
    unit = serializers.CharField(source="product.unit", read_only=True, default="")

    class Meta:
        model = SaleItem
        fields = [
            "id",
            "product",
            "product_name",
            "unit",
            "batch",
            "quantity",
            "unit_price",
            "cost_price",
            "discount",
            "subtotal",
        ]
        read_only_fields = fields


class SaleSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    customer_phone = serializers.CharField(source="customer.phone", read_only=True, default=None)
    customer_address = serializers.CharField(source="customer.address", read_only=True, default=None)

    class Meta:
        model = Sale
        fields = [
            "id",
            "invoice_number",
            "customer",
            "customer_name",
            "customer_phone",
            "customer_address",
            "total_amount",
            "discount_amount",
            "final_amount",
            "payment_method",
            "payment_status",
            "due_date",
            "notes",
            "is_locked",
            "locked_at",
            "locked_by",
            "refunded_at",
            "refunded_by",
            "refund_notes",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class SaleDetailSerializer(SaleSerializer):
    items = SaleItemSerializer(many=True, read_only=True)

    class Meta(SaleSerializer.Meta):
        fields = SaleSerializer.Meta.fields + ["items"]
        read_only_fields = fields


class DebtLineSerializer(serializers.ModelSerializer):
    items = SaleItemSerializer(many=True, read_only=True)

    class Meta:
        model = Sale
        fields = ["id", "invoice_number", "created_at", "due_date", "final_amount", "notes", "payment_method", "items"]
        read_only_fields = fields


class PurchaseDateField(serializers.DateTimeField):
    """Accepts a plain date (midnight, local time) as well as a full timestamp."""

    def to_internal_value(self, value):
        if isinstance(value, str):
            parsed = parse_date(value.strip())
            if parsed is not None:
                value = datetime.datetime.combine(parsed, datetime.time.min)
        return super().to_internal_value(value)


class DebtLineWriteSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    purchase_date = PurchaseDateField(required=False, allow_null=True)
    due_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Amount must be greater than zero.")
        return value


class DebtPaymentSerializer(serializers.ModelSerializer):
    customer_id = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.all(), source="customer")

    class Meta:
        model = DebtPayment
        fields = ["id", "customer_id", "amount", "payment_method", "notes", "created_by", "created_at", "updated_at"]
        read_only_fields = ["id", "created_by", "created_at", "updated_at"]

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Payment amount must be greater than zero.")
        return value


class DebtPaymentUpdateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2, required=False)
    payment_method = serializers.ChoiceField(choices=DebtPayment.Method.choices, required=False)
    notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)

    def validate_amount(self, value):
        if value <= 0:
            raise serializers.ValidationError("Payment amount must be greater than zero.")
        return value


class CheckoutItemSerializer(serializers.Serializer):
    product_id = serializers.PrimaryKeyRelatedField(queryset=Product.objects.all(), source="product")
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2)
    unit_price = serializers.DecimalField(max_digits=14, decimal_places=2)

    def validate_quantity(self, value):
        if value <= 0:
            raise serializers.ValidationError("Quantity must be greater than zero.")
        return value

    def validate_unit_price(self, value):
        if value < 0:
            raise serializers.ValidationError("Unit price cannot be negative.")
        return value


class CheckoutSerializer(serializers.Serializer):
    customer_id = serializers.PrimaryKeyRelatedField(
        queryset=Customer.objects.all(), source="customer", required=False, allow_null=True
    )
    payment_method = serializers.ChoiceField(choices=Sale.PaymentMethod.choices)
    discount_amount = serializers.DecimalField(max_digits=14, decimal_places=2, required=False, allow_null=True)
    due_date = serializers.DateField(required=False, allow_null=True)
    notes = serializers.CharField(required=False, allow_null=True, allow_blank=True)
    items = CheckoutItemSerializer(many=True)

    def validate_items(self, value):
        if not value:
            raise serializers.ValidationError("At least one item is required.")
        return value

    def validate_discount_amount(self, value):
        if value is not None and value < 0:
            raise serializers.ValidationError("Discount cannot be negative.")
        return value

    def validate(self, attrs):
        if attrs["payment_method"] == Sale.PaymentMethod.DEBT and not attrs.get("customer"):
            raise serializers.ValidationError({"customer_id": "A customer is required for debt sales."})

        total = sum(item["quantity"] * item["unit_price"] for item in attrs["items"])
        discount = attrs.get("discount_amount") or 0
        if discount > total:
            raise serializers.ValidationError({"discount_amount": "Discount cannot exceed the sale total."})
        return attrs


class RefundSerializer(serializers.Serializer):
    reason = serializers.CharField(required=False, allow_null=True, allow_blank=True)