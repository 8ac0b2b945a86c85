from django.urls import path
from rest_framework.routers import DefaultRouter

from sales.views import CheckoutView, CustomerViewSet, DebtLineViewSet, DebtPaymentViewSet, SaleViewSet

router = DefaultRouter()
router.register(r"debt/customers", CustomerViewSet, basename="customer")
router.register(r"debt/debt-lines", DebtLineViewSet, basename="debt-line")
router.register(r"debt/payments", DebtPaymentViewSet, basename="debt-payment")
router.register(r"pos/sales", SaleViewSet, basename="sale")

urlpatterns = router.urls + [
    path("pos/checkout/", CheckoutView.as_view(), name="pos-checkout"),
]
