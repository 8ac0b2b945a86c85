from rest_framework import mixins, status, viewsets
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.exceptions import EmptyUpdate
from common.permissions import RoleCapabilityPermission
from common.utils import query_flag, query_int
from inventory.models import Category, Product, PurchaseOrder, Supplier
from inventory.serializers import (
    CategorySerializer,
    InventoryBatchSerializer,
    ProductSerializer,
    PurchaseOrderSerializer,
    PurchaseOrderUpdateSerializer,
    StockInSerializer,
    SupplierSerializer,
)
from inventory.services import annotate_inventory_summary, low_stock_products, products_near_expiry, receive_stock


class CategoryViewSet(AuditedMutationMixin, mixins.ListModelMixin, mixins.CreateModelMixin, viewsets.GenericViewSet):
    queryset = Category.objects.order_by("name")
    serializer_class = CategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "catalog.view", "create": "catalog.manage"}
    audit_entity = "category"


class ProductViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.select_related("category")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "catalog.view",
        "retrieve": "catalog.view",
        "create": "catalog.manage",
        "update": "catalog.manage",
        "partial_update": "catalog.manage",
        "destroy": "catalog.manage",
    }
    audit_entity = "product"

    def get_queryset(self):
        qs = annotate_inventory_summary(super().get_queryset()).order_by("-created_at")
        if self.action == "list" and not query_flag(self.request, "includeInactive"):
            qs = qs.filter(is_active=True)
        return qs

    def destroy(self, request, *args, **kwargs):
        product = self.get_object()
        Product.objects.filter(pk=product.pk).update(is_active=False)
        self._audit(action="deactivate", instance=product, before_snapshot={"is_active": product.is_active})
        return Response({"id": str(product.id)})


class SupplierViewSet(
    AuditedMutationMixin,
    mixins.ListModelMixin,
    mixins.CreateModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Supplier.objects.order_by("-created_at")
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "create": "inventory.manage",
        "update": "inventory.manage",
        "partial_update": "inventory.manage",
    }
    audit_entity = "supplier"


class PurchaseOrderViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = PurchaseOrder.objects.select_related("supplier").prefetch_related("items__product").order_by("-created_at")
    serializer_class = PurchaseOrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "create": "inventory.manage",
        "update": "inventory.manage",
        "partial_update": "inventory.manage",
        "destroy": "inventory.manage",
    }
    audit_entity = "purchase_order"

    def perform_create(self, serializer):
        order = serializer.save(created_by=self.request.user)
        self._audit(action="create", instance=order, after_snapshot=self.get_serializer(order).data)

    def update(self, request, *args, **kwargs):
        order = self.get_object()
        serializer = PurchaseOrderUpdateSerializer(order, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        if not serializer.validated_data:
            raise EmptyUpdate()

        before_snapshot = self.get_serializer(order).data
        serializer.save()
        order = self.get_queryset().get(pk=order.pk)
        after_snapshot = self.get_serializer(order).data
        self._audit(action="update", instance=order, before_snapshot=before_snapshot, after_snapshot=after_snapshot)
        return Response(after_snapshot)

    def destroy(self, request, *args, **kwargs):
        order = self.get_object()
        order_id = order.id
        self.perform_destroy(order)
        return Response({"id": str(order_id)})


class StockInView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "inventory.manage"}

    def post(self, request):
        serializer = StockInSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        batch = receive_stock(user=request.user, **serializer.validated_data)

        payload = InventoryBatchSerializer(batch).data
        create_audit_log_from_request(
            request,
            action="inventory_batch.create",
            entity="inventory_batch",
            entity_id=batch.id,
            after_snapshot=payload,
        )
        return Response(payload, status=status.HTTP_201_CREATED)


class InventoryAlertsView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "inventory.view"}

    def get(self, request):
        days = query_int(request, "days")
        if days is not None and days <= 0:
            days = None
        return Response(
            {
                "nearExpiry": products_near_expiry(days),
                "lowStock": low_stock_products(),
            }
        )
