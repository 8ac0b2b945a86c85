from datetime import date, timedelta
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from common.exceptions import InsufficientStock
from core.models import AuditLog
from inventory.models import Category, InventoryBatch, Product, PurchaseOrder, StockMovement, Supplier
from inventory.services import allocate_fefo_batch


class FefoAllocatorTests(TestCase):
    def setUp(self):
        self.product = Product.objects.create(name="Milk", unit="box")
        self.b1 = InventoryBatch.objects.create(
            product=self.product,
            quantity=Decimal("5"),
            remaining_quantity=Decimal("5"),
            cost_price=Decimal("10.00"),
            expiry_date=date(2024, 1, 1),
        )
        self.b2 = InventoryBatch.objects.create(
            product=self.product,
            quantity=Decimal("10"),
            remaining_quantity=Decimal("10"),
            cost_price=Decimal("11.00"),
            expiry_date=date(2024, 6, 1),
        )

    def test_soonest_expiry_batch_is_chosen_when_it_suffices(self):
        batch = allocate_fefo_batch(self.product.id, Decimal("5"))

        self.assertEqual(batch.id, self.b1.id)
        self.b1.refresh_from_db()
        self.assertEqual(self.b1.remaining_quantity, Decimal("0.00"))
        self.assertEqual(self.b1.quantity, Decimal("5.00"))

    def test_later_batch_is_chosen_when_earlier_is_insufficient(self):
        batch = allocate_fefo_batch(self.product.id, Decimal("8"))

        self.assertEqual(batch.id, self.b2.id)
        self.b2.refresh_from_db()
        self.assertEqual(self.b2.remaining_quantity, Decimal("2.00"))

    def test_request_larger_than_any_batch_is_rejected_without_splitting(self):
        with self.assertRaises(InsufficientStock):
            allocate_fefo_batch(self.product.id, Decimal("20"))

        self.b1.refresh_from_db()
        self.b2.refresh_from_db()
        self.assertEqual(self.b1.remaining_quantity, Decimal("5.00"))
        self.assertEqual(self.b2.remaining_quantity, Decimal("10.00"))

    def test_batches_without_expiry_sort_last(self):
        other = Product.objects.create(name="Salt", unit="bag")
        no_expiry = InventoryBatch.objects.create(
            product=other, quantity=Decimal("10"), remaining_quantity=Decimal("10"), cost_price=Decimal("1.00")
        )
        dated = InventoryBatch.objects.create(
            product=other,
            quantity=Decimal("10"),
            remaining_quantity=Decimal("10"),
            cost_price=Decimal("1.00"),
            expiry_date=date(2030, 1, 1),
        )

        self.assertEqual(allocate_fefo_batch(other.id, Decimal("1")).id, dated.id)
        allocate_fefo_batch(other.id, Decimal("9"))
        self.assertEqual(allocate_fefo_batch(other.id, Decimal("1")).id, no_expiry.id)


class StockInTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(username="stock-manager", password="pass1234", role="manager")
        self.cashier = self.user_model.objects.create_user(username="stock-cashier", password="pass1234")
        self.product = Product.objects.create(name="Rice", unit="kg", min_stock_level=Decimal("20"))

    def test_stock_in_creates_batch_and_in_movement(self):
        self.client.force_authenticate(user=self.manager)
        response = self.client.post(
            "/api/v1/inventory/stock-in/",
            {
                "product_id": str(self.product.id),
                "quantity": "12",
                "cost_price": "3.50",
                "batch_number": "LOT-1",
                "expiry_date": "2030-01-01",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        batch = InventoryBatch.objects.get(id=response.json()["id"])
        self.assertEqual(batch.remaining_quantity, Decimal("12.00"))
        movement = StockMovement.objects.get(batch=batch)
        self.assertEqual(movement.movement_type, StockMovement.MovementType.IN)
        self.assertEqual(movement.reference_type, "purchase")
        self.assertTrue(AuditLog.objects.filter(action="inventory_batch.create", entity_id=batch.id).exists())

    def test_stock_in_survives_movement_log_failure(self):
        self.client.force_authenticate(user=self.manager)
        with patch("inventory.services.StockMovement.objects.create", side_effect=DatabaseError("log down")):
            with self.assertLogs("inventory.fefo", level="WARNING") as logs:
                response = self.client.post(
                    "/api/v1/inventory/stock-in/",
                    {"product_id": str(self.product.id), "quantity": "4", "cost_price": "3.50"},
                    format="json",
                )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(InventoryBatch.objects.filter(id=response.json()["id"]).exists())
        self.assertTrue(any("stock_movement_write_failed" in entry for entry in logs.output))

    def test_stock_in_rejects_non_positive_values(self):
        self.client.force_authenticate(user=self.manager)
        response = self.client.post(
            "/api/v1/inventory/stock-in/",
            {"product_id": str(self.product.id), "quantity": "0", "cost_price": "0"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("quantity", payload["errors"])
        self.assertIn("cost_price", payload["errors"])

    def test_cashier_cannot_stock_in(self):
        self.client.force_authenticate(user=self.cashier)
        response = self.client.post(
            "/api/v1/inventory/stock-in/",
            {"product_id": str(self.product.id), "quantity": "4", "cost_price": "3.50"},
            format="json",
        )

        self.assertEqual(response.status_code, 403)


class InventoryAlertTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="alerts-user", password="pass1234")
        self.client.force_authenticate(user=self.user)
        today = timezone.localdate()

        self.soon = Product.objects.create(name="Yogurt", unit="cup", min_stock_level=Decimal("0"))
        InventoryBatch.objects.create(
            product=self.soon,
            quantity=Decimal("10"),
            remaining_quantity=Decimal("10"),
            cost_price=Decimal("1.00"),
            expiry_date=today + timedelta(days=3),
        )
        self.later = Product.objects.create(name="Cheese", unit="block", min_stock_level=Decimal("0"))
        InventoryBatch.objects.create(
            product=self.later,
            quantity=Decimal("10"),
            remaining_quantity=Decimal("10"),
            cost_price=Decimal("1.00"),
            expiry_date=today + timedelta(days=30),
        )
        self.low = Product.objects.create(name="Sugar", unit="kg", min_stock_level=Decimal("15"))
        InventoryBatch.objects.create(
            product=self.low, quantity=Decimal("5"), remaining_quantity=Decimal("5"), cost_price=Decimal("2.00")
        )

    def test_alerts_use_default_window(self):
        response = self.client.get("/api/v1/inventory/alerts/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        near_ids = {row["product_id"] for row in payload["nearExpiry"]}
        self.assertEqual(near_ids, {str(self.soon.id)})
        self.assertEqual(payload["nearExpiry"][0]["days_until_expiry"], 3)
        self.assertEqual([row["product_id"] for row in payload["lowStock"]], [str(self.low.id)])

    def test_alerts_accept_custom_window(self):
        response = self.client.get("/api/v1/inventory/alerts/?days=60")

        near_ids = {row["product_id"] for row in response.json()["nearExpiry"]}
        self.assertEqual(near_ids, {str(self.soon.id), str(self.later.id)})

    @override_settings(INVENTORY_EXPIRY_ALERT_DAYS=1)
    def test_alerts_default_window_is_configurable(self):
        response = self.client.get("/api/v1/inventory/alerts/")

        self.assertEqual(response.json()["nearExpiry"], [])


class CatalogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(username="catalog-manager", password="pass1234", role="manager")
        self.category = Category.objects.create(name="Dairy")

    def test_product_list_includes_inventory_summary(self):
        product = Product.objects.create(name="Butter", unit="pack", category=self.category)
        InventoryBatch.objects.create(
            product=product,
            quantity=Decimal("4"),
            remaining_quantity=Decimal("4"),
            cost_price=Decimal("10.00"),
            expiry_date=date(2031, 5, 1),
        )
        InventoryBatch.objects.create(
            product=product,
            quantity=Decimal("6"),
            remaining_quantity=Decimal("6"),
            cost_price=Decimal("20.00"),
            expiry_date=date(2031, 2, 1),
        )
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/catalog/products/")

        self.assertEqual(response.status_code, 200)
        row = response.json()[0]
        self.assertEqual(row["category_name"], "Dairy")
        self.assertEqual(row["total_quantity"], "10.00")
        self.assertEqual(row["avg_cost_price"], "16.00")
        self.assertEqual(row["nearest_expiry_date"], "2031-02-01")

    def test_product_delete_is_soft_and_hidden_from_default_list(self):
        product = Product.objects.create(name="Cream", unit="bottle")
        self.client.force_authenticate(user=self.manager)

        delete_res = self.client.delete(f"/api/v1/catalog/products/{product.id}/")
        default_list = self.client.get("/api/v1/catalog/products/")
        full_list = self.client.get("/api/v1/catalog/products/?includeInactive=true")

        self.assertEqual(delete_res.status_code, 200)
        self.assertEqual(delete_res.json(), {"id": str(product.id)})
        product.refresh_from_db()
        self.assertFalse(product.is_active)
        self.assertEqual(default_list.json(), [])
        self.assertEqual(len(full_list.json()), 1)

    def test_product_rejects_negative_min_stock_level(self):
        self.client.force_authenticate(user=self.manager)
        response = self.client.post(
            "/api/v1/catalog/products/",
            {"name": "Bad", "unit": "pc", "min_stock_level": "-1"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("min_stock_level", response.json()["errors"])


class PurchaseOrderTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.manager = get_user_model().objects.create_user(username="po-manager", password="pass1234", role="manager")
        self.client.force_authenticate(user=self.manager)
        self.supplier = Supplier.objects.create(code="SUP-1", name="Fresh Farms")
        self.product = Product.objects.create(name="Eggs", unit="tray")

    def test_create_generates_number_and_total(self):
        response = self.client.post(
            "/api/v1/inventory/purchase-orders/",
            {
                "supplier": str(self.supplier.id),
                "items": [
                    {"product": str(self.product.id), "quantity": "3", "unit_price": "2.50"},
                    {"product": str(self.product.id), "quantity": "2", "unit_price": "1.25"},
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertRegex(payload["order_number"], r"^PO\d{12}$")
        self.assertEqual(payload["status"], "pending")
        self.assertEqual(payload["total_amount"], "10.00")
        self.assertEqual(payload["supplier_name"], "Fresh Farms")
        self.assertEqual(payload["total_items"], "5.00")

    def test_create_requires_items(self):
        response = self.client.post(
            "/api/v1/inventory/purchase-orders/",
            {"supplier": str(self.supplier.id), "items": []},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("items", response.json()["errors"])

    def test_update_status_and_reject_empty_update(self):
        order = PurchaseOrder.objects.create(order_number="PO-TEST-1", supplier=self.supplier)

        empty_res = self.client.put(f"/api/v1/inventory/purchase-orders/{order.id}/", {}, format="json")
        update_res = self.client.put(
            f"/api/v1/inventory/purchase-orders/{order.id}/", {"status": "in_progress"}, format="json"
        )

        self.assertEqual(empty_res.status_code, 400)
        self.assertEqual(empty_res.json()["code"], "empty_update")
        self.assertEqual(empty_res.json()["message"], "No fields to update.")
        self.assertEqual(update_res.status_code, 200)
        order.refresh_from_db()
        self.assertEqual(order.status, PurchaseOrder.Status.IN_PROGRESS)
