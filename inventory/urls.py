from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import (
    CategoryViewSet,
    InventoryAlertsView,
    ProductViewSet,
    PurchaseOrderViewSet,
    StockInView,
    SupplierViewSet,
)

router = DefaultRouter()
router.register(r"catalog/categories", CategoryViewSet, basename="category")
router.register(r"catalog/products", ProductViewSet, basename="product")
router.register(r"inventory/suppliers", SupplierViewSet, basename="supplier")
router.register(r"inventory/purchase-orders", PurchaseOrderViewSet, basename="purchase-order")

urlpatterns = router.urls + [
    path("inventory/alerts/", InventoryAlertsView.as_view(), name="inventory-alerts"),
    path("inventory/stock-in/", StockInView.as_view(), name="inventory-stock-in"),
]
