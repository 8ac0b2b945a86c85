from django.utils.dateparse import parse_date
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.exceptions import EmptyUpdate
from common.permissions import RoleCapabilityPermission
from common.utils import UUID_REGEX, is_uuid, query_flag, query_int
from sales import services
from sales.models import Customer, DebtPayment, Sale
from sales.serializers import (
    CheckoutSerializer,
    CustomerSerializer,
    DebtLineSerializer,
    DebtLineWriteSerializer,
    DebtPaymentSerializer,
    DebtPaymentUpdateSerializer,
    RefundSerializer,
    SaleDetailSerializer,
    SaleItemSerializer,
    SaleSerializer,
)

DEFAULT_HISTORY_LIMIT = 20
DEFAULT_SALES_LIMIT = 200


def _sale_snapshot(sale):
    return SaleSerializer(sale).data


class CustomerViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Customer.objects.all()
    serializer_class = CustomerSerializer
    lookup_value_regex = UUID_REGEX
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "customers.view",
        "retrieve": "customers.view",
        "create": "customers.manage",
        "update": "customers.manage",
        "partial_update": "customers.manage",
        "destroy": "customers.manage",
        "history": "debt.view",
        "debt_lines": "debt.view",
    }
    audit_entity = "customer"

    def get_permissions(self):
        if self.action == "debt_lines" and self.request.method == "POST":
            self.permission_action_map = {**self.permission_action_map, "debt_lines": "debt.record"}
        return super().get_permissions()

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        if self.action != "list":
            return qs

        if not query_flag(self.request, "includeInactive"):
            qs = qs.filter(is_active=True)
        if query_flag(self.request, "onlyDebt"):
            qs = qs.filter(current_debt__gt=0)
        phone = self.request.query_params.get("phone")
        if phone:
            qs = qs.filter(phone=phone)
        return qs

    def perform_update(self, serializer):
        if not serializer.validated_data:
            raise EmptyUpdate()
        super().perform_update(serializer)

    def destroy(self, request, *args, **kwargs):
        customer = self.get_object()
        services.deactivate_customer(customer.id)
        self._audit(action="deactivate", instance=customer, before_snapshot={"is_active": customer.is_active})
        return Response({"id": str(customer.id)})

    @action(detail=True, methods=["get"])
    def history(self, request, pk=None):
        customer = self.get_object()
        limit = query_int(request, "limit", DEFAULT_HISTORY_LIMIT)
        if limit <= 0:
            limit = DEFAULT_HISTORY_LIMIT
        sales, payments = services.customer_history(customer, limit=limit, year=query_int(request, "year"))
        return Response(
            {
                "sales": SaleSerializer(sales, many=True).data,
                "payments": DebtPaymentSerializer(payments, many=True).data,
            }
        )

    @action(detail=True, methods=["get", "post"], url_path="debt-lines")
    def debt_lines(self, request, pk=None):
        customer = self.get_object()
        if request.method == "POST":
            return self._create_debt_line(request, customer)

        qs = Sale.objects.filter(customer=customer, payment_method=Sale.PaymentMethod.DEBT)
        year = query_int(request, "year")
        if year is not None:
            qs = qs.filter(created_at__year=year)
        if query_flag(request, "duplicateOnly"):
            qs = services.duplicate_debt_lines(qs)
        qs = qs.prefetch_related("items__product").order_by("-created_at")
        return Response(DebtLineSerializer(qs, many=True).data)

    def _create_debt_line(self, request, customer):
        serializer = DebtLineWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        sale = services.create_debt_line(customer=customer, user=request.user, **serializer.validated_data)

        payload = _sale_snapshot(sale)
        create_audit_log_from_request(
            request,
            action="debt_line.create",
            entity="debt_line",
            entity_id=sale.id,
            after_snapshot=payload,
        )
        return Response(payload, status=status.HTTP_201_CREATED)


class DebtLineViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    """Manually entered debt lines: debt sales that carry no items."""

    queryset = Sale.objects.filter(payment_method=Sale.PaymentMethod.DEBT).prefetch_related("items__product")
    serializer_class = DebtLineSerializer
    lookup_value_regex = UUID_REGEX
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "retrieve": "debt.view",
        "update": "debt.manage",
        "partial_update": "debt.manage",
        "destroy": "debt.manage",
    }

    def update(self, request, pk=None, **kwargs):
        serializer = DebtLineWriteSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        before = Sale.objects.filter(pk=pk).first()
        sale = services.update_debt_line(pk, serializer.validated_data)
        payload = _sale_snapshot(sale)
        create_audit_log_from_request(
            request,
            action="debt_line.update",
            entity="debt_line",
            entity_id=sale.id,
            before_snapshot=_sale_snapshot(before) if before else None,
            after_snapshot=payload,
        )
        return Response(payload)

    def partial_update(self, request, pk=None, **kwargs):
        return self.update(request, pk=pk, **kwargs)

    def destroy(self, request, pk=None, **kwargs):
        before = Sale.objects.filter(pk=pk).first()
        sale_id = services.delete_debt_line(pk)
        create_audit_log_from_request(
            request,
            action="debt_line.delete",
            entity="debt_line",
            entity_id=sale_id,
            before_snapshot=_sale_snapshot(before) if before else None,
        )
        return Response({"id": str(sale_id)})


class DebtPaymentViewSet(viewsets.ModelViewSet):
    queryset = DebtPayment.objects.select_related("customer")
    serializer_class = DebtPaymentSerializer
    lookup_value_regex = UUID_REGEX
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "debt.view",
        "retrieve": "debt.view",
        "create": "debt.payment.record",
        "update": "debt.manage",
        "partial_update": "debt.manage",
        "destroy": "debt.manage",
    }

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        customer_id = self.request.query_params.get("customer_id")
        if self.action == "list" and customer_id:
            if not is_uuid(customer_id):
                return qs.none()
            qs = qs.filter(customer_id=customer_id)
        return qs

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = services.create_payment(user=request.user, **serializer.validated_data)

        payload = self.get_serializer(payment).data
        create_audit_log_from_request(
            request, action="debt_payment.create", entity="debt_payment", entity_id=payment.id, after_snapshot=payload
        )
        return Response(payload, status=status.HTTP_201_CREATED)

    def update(self, request, pk=None, **kwargs):
        serializer = DebtPaymentUpdateSerializer(data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)

        before = DebtPayment.objects.filter(pk=pk).first()
        payment = services.update_payment(pk, serializer.validated_data)
        payload = self.get_serializer(payment).data
        create_audit_log_from_request(
            request,
            action="debt_payment.update",
            entity="debt_payment",
            entity_id=payment.id,
            before_snapshot=self.get_serializer(before).data if before else None,
            after_snapshot=payload,
        )
        return Response(payload)

    def partial_update(self, request, pk=None, **kwargs):
        return self.update(request, pk=pk, **kwargs)

    def destroy(self, request, pk=None, **kwargs):
        before = DebtPayment.objects.filter(pk=pk).first()
        payment_id = services.delete_payment(pk)
        create_audit_log_from_request(
            request,
            action="debt_payment.delete",
            entity="debt_payment",
            entity_id=payment_id,
            before_snapshot=self.get_serializer(before).data if before else None,
        )
        return Response({"id": str(payment_id)})


class SaleViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Sale.objects.select_related("customer")
    serializer_class = SaleSerializer
    lookup_value_regex = UUID_REGEX
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "sales.view",
        "retrieve": "sales.view",
        "lock": "sales.lock",
        "refund": "sales.refund",
    }

    def get_serializer_class(self):
        if self.action == "retrieve":
            return SaleDetailSerializer
        return SaleSerializer

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")
        if self.action == "retrieve":
            return qs.prefetch_related("items__product")
        if self.action != "list":
            return qs

        date_from = parse_date(self.request.query_params.get("dateFrom") or "")
        date_to = parse_date(self.request.query_params.get("dateTo") or "")
        if date_from:
            qs = qs.filter(created_at__date__gte=date_from)
        if date_to:
            qs = qs.filter(created_at__date__lte=date_to)
        return qs

    def list(self, request, *args, **kwargs):
        limit = query_int(request, "limit", DEFAULT_SALES_LIMIT)
        if limit <= 0:
            limit = DEFAULT_SALES_LIMIT
        sales = self.get_queryset()[:limit]
        return Response(self.get_serializer(sales, many=True).data)

    @action(detail=True, methods=["post"])
    def lock(self, request, pk=None):
        sale = services.lock_sale(pk, user=request.user)
        payload = _sale_snapshot(sale)
        create_audit_log_from_request(request, action="sale.lock", entity="sale", entity_id=sale.id, after_snapshot=payload)
        return Response(payload)

    @action(detail=True, methods=["post"])
    def refund(self, request, pk=None):
        serializer = RefundSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        sale = services.refund_sale(pk, reason=serializer.validated_data.get("reason"), user=request.user)
        payload = _sale_snapshot(sale)
        create_audit_log_from_request(
            request, action="sale.refund", entity="sale", entity_id=sale.id, after_snapshot=payload
        )
        return Response(payload)


class CheckoutView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "pos.checkout"}

    def post(self, request):
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        sale, items = services.checkout(user=request.user, **serializer.validated_data)

        payload = {
            "sale": _sale_snapshot(sale),
            "items": SaleItemSerializer(items, many=True).data,
        }
        create_audit_log_from_request(
            request, action="sale.checkout", entity="sale", entity_id=sale.id, after_snapshot=payload
        )
        return Response(payload, status=status.HTTP_201_CREATED)
