from datetime import date
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase, override_settings
from rest_framework.exceptions import NotFound
from rest_framework.test import APIClient

from common.exceptions import InvalidAmount
from core.models import AuditLog
from inventory.models import InventoryBatch, Product, StockMovement
from sales import ledger, services
from sales.models import Customer, DebtPayment, Sale, SaleItem


class LedgerServiceTests(TestCase):
    def setUp(self):
        self.customer = Customer.objects.create(name="Ledger Customer")

    def _balance(self):
        self.customer.refresh_from_db()
        return self.customer.current_debt

    def test_debt_sale_create_then_delete_restores_balance(self):
        ledger.apply_debt_sale_create(self.customer.id, Decimal("40.00"))
        ledger.apply_debt_sale_create(self.customer.id, Decimal("60.00"))
        ledger.apply_debt_sale_delete(self.customer.id, Decimal("60.00"))

        self.assertEqual(self._balance(), Decimal("40.00"))

    def test_delete_larger_than_balance_is_rejected_and_balance_unchanged(self):
        ledger.apply_debt_sale_create(self.customer.id, Decimal("10.00"))

        with self.assertRaises(InvalidAmount):
            ledger.apply_debt_sale_delete(self.customer.id, Decimal("10.01"))

        self.assertEqual(self._balance(), Decimal("10.00"))

    def test_amount_change_applies_delta_and_rejects_negative_result(self):
        ledger.apply_debt_sale_create(self.customer.id, Decimal("50.00"))
        ledger.apply_payment_create(self.customer.id, Decimal("30.00"))
        ledger.apply_debt_sale_amount_change(self.customer.id, Decimal("50.00"), Decimal("45.00"))
        self.assertEqual(self._balance(), Decimal("15.00"))

        with self.assertRaises(InvalidAmount):
            ledger.apply_debt_sale_amount_change(self.customer.id, Decimal("45.00"), Decimal("20.00"))
        self.assertEqual(self._balance(), Decimal("15.00"))

    def test_payment_bound(self):
        ledger.apply_debt_sale_create(self.customer.id, Decimal("25.00"))

        with self.assertRaises(InvalidAmount):
            ledger.apply_payment_create(self.customer.id, Decimal("25.01"))
        self.assertEqual(self._balance(), Decimal("25.00"))

        ledger.apply_payment_create(self.customer.id, Decimal("25.00"))
        self.assertEqual(self._balance(), Decimal("0.00"))

    def test_payment_amount_change_and_delete(self):
        ledger.apply_debt_sale_create(self.customer.id, Decimal("100.00"))
        ledger.apply_payment_create(self.customer.id, Decimal("30.00"))

        ledger.apply_payment_amount_change(self.customer.id, Decimal("30.00"), Decimal("50.00"))
        self.assertEqual(self._balance(), Decimal("50.00"))

        with self.assertRaises(InvalidAmount):
            ledger.apply_payment_amount_change(self.customer.id, Decimal("50.00"), Decimal("101.00"))

        ledger.apply_payment_delete(self.customer.id, Decimal("50.00"))
        self.assertEqual(self._balance(), Decimal("100.00"))

    def test_unknown_customer_raises_not_found(self):
        with self.assertRaises(NotFound):
            ledger.apply_debt_sale_create("00000000-0000-0000-0000-000000000000", Decimal("1.00"))

    def test_debt_limit_is_informational_by_default(self):
        Customer.objects.filter(pk=self.customer.pk).update(debt_limit=Decimal("50.00"))

        with self.assertLogs("sales.ledger", level="WARNING") as logs:
            ledger.apply_debt_sale_create(self.customer.id, Decimal("80.00"))

        self.assertEqual(self._balance(), Decimal("80.00"))
        self.assertTrue(any("debt_limit_exceeded" in entry for entry in logs.output))

    @override_settings(SALES_ENFORCE_DEBT_LIMIT=True)
    def test_debt_limit_is_enforced_when_enabled(self):
        Customer.objects.filter(pk=self.customer.pk).update(debt_limit=Decimal("50.00"))
        ledger.apply_debt_sale_create(self.customer.id, Decimal("50.00"))

        with self.assertRaises(InvalidAmount):
            ledger.apply_debt_sale_create(self.customer.id, Decimal("0.01"))
        self.assertEqual(self._balance(), Decimal("50.00"))

    @override_settings(SALES_ENFORCE_DEBT_LIMIT=True)
    def test_zero_debt_limit_means_unlimited(self):
        ledger.apply_debt_sale_create(self.customer.id, Decimal("1000000.00"))

        self.assertEqual(self._balance(), Decimal("1000000.00"))


class DebtLineApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(username="debt-manager", password="pass1234", role="manager")
        self.cashier = self.user_model.objects.create_user(username="debt-cashier", password="pass1234")
        self.customer = Customer.objects.create(name="Debtor", phone="0900000001")
        self.client.force_authenticate(user=self.manager)

    def _create_line(self, **payload):
        body = {"amount": 100000}
        body.update(payload)
        return self.client.post(f"/api/v1/debt/customers/{self.customer.id}/debt-lines/", body, format="json")

    def test_created_debt_line_reads_back_with_flat_amounts(self):
        response = self._create_line(due_date="2024-03-01")

        self.assertEqual(response.status_code, 201)
        sale = Sale.objects.get(id=response.json()["id"])
        self.assertEqual(sale.final_amount, Decimal("100000.00"))
        self.assertEqual(sale.total_amount, Decimal("100000.00"))
        self.assertEqual(sale.discount_amount, Decimal("0.00"))
        self.assertEqual(sale.due_date, date(2024, 3, 1))
        self.assertEqual(sale.payment_method, Sale.PaymentMethod.DEBT)
        self.assertEqual(sale.payment_status, Sale.PaymentStatus.UNPAID)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("100000.00"))

    def test_purchase_date_sets_sale_timestamp(self):
        response = self._create_line(purchase_date="2024-02-15")

        self.assertEqual(response.status_code, 201)
        sale = Sale.objects.get(id=response.json()["id"])
        self.assertEqual(sale.created_at.date(), date(2024, 2, 15))

    def test_create_rejects_non_positive_amount(self):
        response = self._create_line(amount=0)

        self.assertEqual(response.status_code, 400)
        self.assertIn("amount", response.json()["errors"])
        self.assertFalse(Sale.objects.exists())

    def test_update_only_changes_supplied_fields(self):
        sale_id = self._create_line(due_date="2024-03-01", notes="first").json()["id"]

        response = self.client.put(f"/api/v1/debt/debt-lines/{sale_id}/", {"notes": "second"}, format="json")

        self.assertEqual(response.status_code, 200)
        sale = Sale.objects.get(id=sale_id)
        self.assertEqual(sale.notes, "second")
        self.assertEqual(sale.due_date, date(2024, 3, 1))
        self.assertEqual(sale.final_amount, Decimal("100000.00"))

    def test_update_amount_adjusts_balance(self):
        sale_id = self._create_line().json()["id"]

        response = self.client.put(f"/api/v1/debt/debt-lines/{sale_id}/", {"amount": 70000}, format="json")

        self.assertEqual(response.status_code, 200)
        sale = Sale.objects.get(id=sale_id)
        self.assertEqual(sale.total_amount, Decimal("70000.00"))
        self.assertEqual(sale.final_amount, Decimal("70000.00"))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("70000.00"))
        self.assertTrue(AuditLog.objects.filter(action="debt_line.update", entity_id=sale_id).exists())

    def test_update_rejected_when_balance_would_go_negative(self):
        sale_id = self._create_line().json()["id"]
        DebtPayment.objects.create(customer=self.customer, amount=Decimal("90000"), payment_method="cash")
        Customer.objects.filter(pk=self.customer.pk).update(current_debt=Decimal("10000"))

        response = self.client.put(f"/api/v1/debt/debt-lines/{sale_id}/", {"amount": 50000}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_amount")
        self.assertEqual(response.json()["message"], "Amount exceeds current debt.")
        sale = Sale.objects.get(id=sale_id)
        self.assertEqual(sale.final_amount, Decimal("100000.00"))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("10000.00"))

    def test_empty_update_is_rejected(self):
        sale_id = self._create_line().json()["id"]

        response = self.client.put(f"/api/v1/debt/debt-lines/{sale_id}/", {}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "empty_update")
        self.assertEqual(response.json()["message"], "No fields to update.")

    def test_null_purchase_date_alone_is_an_empty_update(self):
        sale_id = self._create_line(purchase_date="2024-02-15").json()["id"]

        response = self.client.patch(f"/api/v1/debt/debt-lines/{sale_id}/", {"purchase_date": None}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "empty_update")
        self.assertEqual(Sale.objects.get(id=sale_id).created_at.date(), date(2024, 2, 15))

    def test_delete_restores_balance(self):
        self._create_line(amount=5000)
        sale_id = self._create_line().json()["id"]

        response = self.client.delete(f"/api/v1/debt/debt-lines/{sale_id}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"id": sale_id})
        self.assertFalse(Sale.objects.filter(id=sale_id).exists())
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("5000.00"))

    def test_missing_debt_line_returns_404(self):
        response = self.client.delete("/api/v1/debt/debt-lines/00000000-0000-0000-0000-000000000000/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_cash_sale_cannot_be_edited_as_debt_line(self):
        sale = Sale.objects.create(
            invoice_number="CASH-1",
            total_amount=Decimal("10"),
            final_amount=Decimal("10"),
            payment_method=Sale.PaymentMethod.CASH,
        )

        response = self.client.put(f"/api/v1/debt/debt-lines/{sale.id}/", {"notes": "x"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_operation")

    def test_cash_sale_cannot_be_deleted_as_debt_line(self):
        sale = Sale.objects.create(
            invoice_number="CASH-2",
            total_amount=Decimal("10"),
            final_amount=Decimal("10"),
            payment_method=Sale.PaymentMethod.CASH,
        )

        response = self.client.delete(f"/api/v1/debt/debt-lines/{sale.id}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_operation")
        self.assertTrue(Sale.objects.filter(id=sale.id).exists())

    def test_malformed_debt_line_id_returns_404(self):
        malformed = "a" * 36

        put_res = self.client.put(f"/api/v1/debt/debt-lines/{malformed}/", {"notes": "x"}, format="json")
        delete_res = self.client.delete(f"/api/v1/debt/debt-lines/{malformed}/")

        self.assertEqual(put_res.status_code, 404)
        self.assertEqual(delete_res.status_code, 404)

    def test_failed_delete_keeps_balance_and_returns_503(self):
        sale_id = self._create_line().json()["id"]

        with patch.object(Sale, "delete", side_effect=DatabaseError("write failed")):
            with self.assertLogs("common.exceptions", level="ERROR"):
                response = self.client.delete(f"/api/v1/debt/debt-lines/{sale_id}/")

        self.assertEqual(response.status_code, 503)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["code"], "dependency_failure")
        self.assertEqual(payload["status"], 503)
        self.assertTrue(Sale.objects.filter(id=sale_id).exists())
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("100000.00"))

    def test_invoice_number_collision_is_retried(self):
        Sale.objects.create(
            invoice_number="HD-TAKEN",
            total_amount=Decimal("10"),
            final_amount=Decimal("10"),
            payment_method=Sale.PaymentMethod.CASH,
        )

        with patch("sales.services._unique_invoice_number", side_effect=["HD-TAKEN", "HD-FREE"]):
            with self.assertLogs("sales.services", level="WARNING") as logs:
                sale = services.create_debt_line(customer=self.customer, amount=Decimal("50"))

        self.assertEqual(sale.invoice_number, "HD-FREE")
        self.assertTrue(any("invoice_number_collision" in entry for entry in logs.output))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("50.00"))

    def test_cashier_cannot_edit_debt_lines_but_can_record_them(self):
        self.client.force_authenticate(user=self.cashier)
        create_res = self._create_line()
        update_res = self.client.put(
            f"/api/v1/debt/debt-lines/{create_res.json()['id']}/", {"notes": "x"}, format="json"
        )

        self.assertEqual(create_res.status_code, 201)
        self.assertEqual(update_res.status_code, 403)

    def test_list_debt_lines_filters_by_year_and_duplicates(self):
        self._create_line(amount=500, purchase_date="2024-05-01")
        self._create_line(amount=500, purchase_date="2024-05-01T15:30:00Z")
        self._create_line(amount=700, purchase_date="2024-05-01")
        self._create_line(amount=500, purchase_date="2023-05-01")

        year_res = self.client.get(f"/api/v1/debt/customers/{self.customer.id}/debt-lines/?year=2024")
        dup_res = self.client.get(f"/api/v1/debt/customers/{self.customer.id}/debt-lines/?duplicateOnly=true")

        self.assertEqual(year_res.status_code, 200)
        self.assertEqual(len(year_res.json()), 3)
        self.assertEqual(dup_res.status_code, 200)
        self.assertEqual(len(dup_res.json()), 2)
        self.assertTrue(all(row["final_amount"] == "500.00" for row in dup_res.json()))


class DebtPaymentApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(username="pay-manager", password="pass1234", role="manager")
        self.client.force_authenticate(user=self.manager)
        self.customer = Customer.objects.create(name="Payer")
        ledger.apply_debt_sale_create(self.customer.id, Decimal("300.00"))

    def _pay(self, amount, method="cash"):
        return self.client.post(
            "/api/v1/debt/payments/",
            {"customer_id": str(self.customer.id), "amount": amount, "payment_method": method},
            format="json",
        )

    def test_overpayment_is_rejected(self):
        response = self._pay("300.01")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_amount")
        self.assertFalse(DebtPayment.objects.exists())
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("300.00"))

    def test_exact_payment_clears_debt(self):
        response = self._pay("300.00", method="transfer")

        self.assertEqual(response.status_code, 201)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("0.00"))
        self.assertTrue(AuditLog.objects.filter(action="debt_payment.create").exists())

    def test_payment_method_must_be_cash_or_transfer(self):
        response = self._pay("10.00", method="debt")

        self.assertEqual(response.status_code, 400)
        self.assertIn("payment_method", response.json()["errors"])

    def test_update_amount_and_delete_adjust_balance(self):
        payment_id = self._pay("100.00").json()["id"]

        update_res = self.client.put(f"/api/v1/debt/payments/{payment_id}/", {"amount": "150.00"}, format="json")
        self.customer.refresh_from_db()
        self.assertEqual(update_res.status_code, 200)
        self.assertEqual(self.customer.current_debt, Decimal("150.00"))

        delete_res = self.client.delete(f"/api/v1/debt/payments/{payment_id}/")
        self.customer.refresh_from_db()
        self.assertEqual(delete_res.status_code, 200)
        self.assertEqual(self.customer.current_debt, Decimal("300.00"))
        self.assertFalse(DebtPayment.objects.filter(id=payment_id).exists())

    def test_update_beyond_balance_is_rejected(self):
        payment_id = self._pay("100.00").json()["id"]

        response = self.client.put(f"/api/v1/debt/payments/{payment_id}/", {"amount": "301.00"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_amount")
        self.assertEqual(DebtPayment.objects.get(id=payment_id).amount, Decimal("100.00"))

    def test_notes_only_update_keeps_balance(self):
        payment_id = self._pay("100.00").json()["id"]

        response = self.client.put(f"/api/v1/debt/payments/{payment_id}/", {"notes": "late"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notes"], "late")
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("200.00"))

    def test_failed_payment_insert_keeps_balance(self):
        with patch("sales.services.DebtPayment.objects.create", side_effect=DatabaseError("write failed")):
            with self.assertLogs("common.exceptions", level="ERROR"):
                response = self._pay("100.00")

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "dependency_failure")
        self.assertFalse(DebtPayment.objects.exists())
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("300.00"))

    def test_failed_payment_delete_keeps_balance(self):
        payment_id = self._pay("100.00").json()["id"]

        with patch.object(DebtPayment, "delete", side_effect=DatabaseError("write failed")):
            with self.assertLogs("common.exceptions", level="ERROR"):
                response = self.client.delete(f"/api/v1/debt/payments/{payment_id}/")

        self.assertEqual(response.status_code, 503)
        self.assertTrue(DebtPayment.objects.filter(id=payment_id).exists())
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("200.00"))

    def test_malformed_payment_id_returns_404(self):
        malformed = "a" * 36

        update_res = self.client.put(f"/api/v1/debt/payments/{malformed}/", {"notes": "x"}, format="json")
        delete_res = self.client.delete(f"/api/v1/debt/payments/{malformed}/")
        list_res = self.client.get(f"/api/v1/debt/payments/?customer_id={malformed}")

        self.assertEqual(update_res.status_code, 404)
        self.assertEqual(delete_res.status_code, 404)
        self.assertEqual(list_res.status_code, 200)
        self.assertEqual(list_res.json(), [])

    def test_list_filters_by_customer(self):
        other = Customer.objects.create(name="Other")
        ledger.apply_debt_sale_create(other.id, Decimal("10.00"))
        self._pay("10.00")
        DebtPayment.objects.create(customer=other, amount=Decimal("5.00"), payment_method="cash")

        response = self.client.get(f"/api/v1/debt/payments/?customer_id={self.customer.id}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()), 1)


class CustomerApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="customer-user", password="pass1234")
        self.client.force_authenticate(user=self.user)

    def test_current_debt_is_not_client_writable(self):
        response = self.client.post(
            "/api/v1/debt/customers/",
            {"name": "New", "current_debt": "999.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Customer.objects.get(id=response.json()["id"]).current_debt, Decimal("0.00"))

    def test_empty_update_is_rejected(self):
        customer = Customer.objects.create(name="Static")

        response = self.client.put(f"/api/v1/debt/customers/{customer.id}/", {}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["message"], "No fields to update.")

    def test_list_filters(self):
        debtor = Customer.objects.create(name="Debtor", phone="111")
        ledger.apply_debt_sale_create(debtor.id, Decimal("5.00"))
        Customer.objects.create(name="Clean", phone="222")
        Customer.objects.create(name="Gone", is_active=False)

        default_res = self.client.get("/api/v1/debt/customers/")
        debt_res = self.client.get("/api/v1/debt/customers/?onlyDebt=true")
        phone_res = self.client.get("/api/v1/debt/customers/?phone=222")
        all_res = self.client.get("/api/v1/debt/customers/?includeInactive=true")

        self.assertEqual(len(default_res.json()), 2)
        self.assertEqual([row["name"] for row in debt_res.json()], ["Debtor"])
        self.assertEqual([row["name"] for row in phone_res.json()], ["Clean"])
        self.assertEqual(len(all_res.json()), 3)

    def test_delete_deactivates(self):
        customer = Customer.objects.create(name="Leaving")

        response = self.client.delete(f"/api/v1/debt/customers/{customer.id}/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"id": str(customer.id)})
        customer.refresh_from_db()
        self.assertFalse(customer.is_active)

    def test_history_returns_sales_and_payments(self):
        customer = Customer.objects.create(name="History")
        ledger.apply_debt_sale_create(customer.id, Decimal("50.00"))
        Sale.objects.create(
            invoice_number="H-1",
            customer=customer,
            total_amount=Decimal("50"),
            final_amount=Decimal("50"),
            payment_method=Sale.PaymentMethod.DEBT,
        )
        DebtPayment.objects.create(customer=customer, amount=Decimal("20"), payment_method="cash")

        response = self.client.get(f"/api/v1/debt/customers/{customer.id}/history/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(len(response.json()["sales"]), 1)
        self.assertEqual(len(response.json()["payments"]), 1)


class CheckoutApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="pos-cashier", password="pass1234")
        self.manager = self.user_model.objects.create_user(username="pos-manager", password="pass1234", role="manager")
        self.client.force_authenticate(user=self.cashier)
        self.customer = Customer.objects.create(name="Regular")

        self.milk = Product.objects.create(name="Milk", unit="box")
        self.milk_b1 = InventoryBatch.objects.create(
            product=self.milk,
            quantity=Decimal("5"),
            remaining_quantity=Decimal("5"),
            cost_price=Decimal("8.00"),
            expiry_date=date(2024, 1, 1),
        )
        self.milk_b2 = InventoryBatch.objects.create(
            product=self.milk,
            quantity=Decimal("10"),
            remaining_quantity=Decimal("10"),
            cost_price=Decimal("9.00"),
            expiry_date=date(2024, 6, 1),
        )
        self.bread = Product.objects.create(name="Bread", unit="loaf")
        self.bread_batch = InventoryBatch.objects.create(
            product=self.bread, quantity=Decimal("3"), remaining_quantity=Decimal("3"), cost_price=Decimal("1.00")
        )

    def _checkout(self, items, **payload):
        body = {"payment_method": "cash", "items": items}
        body.update(payload)
        return self.client.post("/api/v1/pos/checkout/", body, format="json")

    def test_cash_checkout_allocates_fefo_and_logs_movements(self):
        response = self._checkout(
            [
                {"product_id": str(self.milk.id), "quantity": "8", "unit_price": "12.00"},
                {"product_id": str(self.bread.id), "quantity": "2", "unit_price": "2.50"},
            ],
            discount_amount="1.00",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["sale"]["total_amount"], "101.00")
        self.assertEqual(payload["sale"]["final_amount"], "100.00")
        self.assertEqual(payload["sale"]["payment_status"], "paid")
        milk_item = next(item for item in payload["items"] if item["product"] == str(self.milk.id))
        self.assertEqual(milk_item["batch"], str(self.milk_b2.id))
        self.assertEqual(milk_item["cost_price"], "9.00")
        self.assertEqual(milk_item["subtotal"], "96.00")

        self.milk_b2.refresh_from_db()
        self.assertEqual(self.milk_b2.remaining_quantity, Decimal("2.00"))
        movements = StockMovement.objects.filter(reference_type="sale", reference_id=payload["sale"]["id"])
        self.assertEqual(movements.count(), 2)
        self.assertTrue(all(m.movement_type == StockMovement.MovementType.OUT for m in movements))

    def test_debt_checkout_increases_customer_debt(self):
        response = self._checkout(
            [{"product_id": str(self.milk.id), "quantity": "2", "unit_price": "10.00"}],
            payment_method="debt",
            customer_id=str(self.customer.id),
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["sale"]["payment_status"], "unpaid")
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("20.00"))

    def test_debt_checkout_requires_customer(self):
        response = self._checkout(
            [{"product_id": str(self.milk.id), "quantity": "1", "unit_price": "10.00"}],
            payment_method="debt",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("customer_id", response.json()["errors"])

    def test_discount_cannot_exceed_total(self):
        response = self._checkout(
            [{"product_id": str(self.milk.id), "quantity": "1", "unit_price": "10.00"}],
            discount_amount="10.01",
        )

        self.assertEqual(response.status_code, 400)
        self.assertIn("discount_amount", response.json()["errors"])

    def test_insufficient_stock_rolls_back_whole_sale(self):
        response = self._checkout(
            [
                {"product_id": str(self.milk.id), "quantity": "4", "unit_price": "10.00"},
                {"product_id": str(self.bread.id), "quantity": "5", "unit_price": "2.00"},
            ],
            payment_method="debt",
            customer_id=str(self.customer.id),
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "insufficient_stock")
        self.assertEqual(response.json()["message"], f"Insufficient stock for product {self.bread.id}.")
        self.assertFalse(Sale.objects.exists())
        self.assertFalse(SaleItem.objects.exists())
        self.milk_b1.refresh_from_db()
        self.assertEqual(self.milk_b1.remaining_quantity, Decimal("5.00"))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("0.00"))

    def test_movement_log_failure_does_not_fail_checkout(self):
        with patch("inventory.services.StockMovement.objects.create", side_effect=DatabaseError("log down")):
            with self.assertLogs("inventory.fefo", level="WARNING"):
                response = self._checkout([{"product_id": str(self.bread.id), "quantity": "1", "unit_price": "2.00"}])

        self.assertEqual(response.status_code, 201)
        self.assertTrue(Sale.objects.filter(id=response.json()["sale"]["id"]).exists())
        self.bread_batch.refresh_from_db()
        self.assertEqual(self.bread_batch.remaining_quantity, Decimal("2.00"))

    def test_checkout_debt_line_is_immutable(self):
        sale_id = self._checkout(
            [{"product_id": str(self.milk.id), "quantity": "1", "unit_price": "10.00"}],
            payment_method="debt",
            customer_id=str(self.customer.id),
        ).json()["sale"]["id"]
        self.client.force_authenticate(user=self.manager)

        update_res = self.client.put(f"/api/v1/debt/debt-lines/{sale_id}/", {"amount": 5}, format="json")
        delete_res = self.client.delete(f"/api/v1/debt/debt-lines/{sale_id}/")

        self.assertEqual(update_res.status_code, 400)
        self.assertEqual(update_res.json()["code"], "immutable_record")
        self.assertEqual(delete_res.status_code, 400)
        self.assertEqual(delete_res.json()["code"], "immutable_record")
        self.assertTrue(Sale.objects.filter(id=sale_id).exists())
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.current_debt, Decimal("10.00"))


class SaleLifecycleTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.manager = self.user_model.objects.create_user(username="life-manager", password="pass1234", role="manager")
        self.cashier = self.user_model.objects.create_user(username="life-cashier", password="pass1234")
        self.customer = Customer.objects.create(name="Walk-in", phone="123", address="Main St")
        self.sale = Sale.objects.create(
            invoice_number="LIFE-1",
            customer=self.customer,
            total_amount=Decimal("20"),
            final_amount=Decimal("20"),
            payment_method=Sale.PaymentMethod.CASH,
        )

    def test_lock_twice_is_rejected(self):
        self.client.force_authenticate(user=self.manager)

        first = self.client.post(f"/api/v1/pos/sales/{self.sale.id}/lock/")
        second = self.client.post(f"/api/v1/pos/sales/{self.sale.id}/lock/")

        self.assertEqual(first.status_code, 200)
        self.assertTrue(first.json()["is_locked"])
        self.assertEqual(first.json()["locked_by"], str(self.manager.id))
        self.assertEqual(second.status_code, 400)
        self.assertEqual(second.json()["code"], "invalid_operation")

    def test_refund_locks_sale_and_rejects_second_refund(self):
        self.client.force_authenticate(user=self.manager)

        first = self.client.post(f"/api/v1/pos/sales/{self.sale.id}/refund/", {"reason": "damaged"}, format="json")
        second = self.client.post(f"/api/v1/pos/sales/{self.sale.id}/refund/", {}, format="json")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(first.json()["refund_notes"], "damaged")
        self.assertTrue(first.json()["is_locked"])
        self.assertIsNotNone(first.json()["refunded_at"])
        self.assertEqual(second.status_code, 400)

    def test_cashier_cannot_refund(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(f"/api/v1/pos/sales/{self.sale.id}/refund/", {}, format="json")

        self.assertEqual(response.status_code, 403)

    def test_malformed_sale_id_returns_404(self):
        self.client.force_authenticate(user=self.manager)
        malformed = "a" * 36

        lock_res = self.client.post(f"/api/v1/pos/sales/{malformed}/lock/")
        refund_res = self.client.post(f"/api/v1/pos/sales/{malformed}/refund/", {}, format="json")

        self.assertEqual(lock_res.status_code, 404)
        self.assertEqual(refund_res.status_code, 404)

    def test_sales_list_and_detail(self):
        self.client.force_authenticate(user=self.cashier)

        list_res = self.client.get("/api/v1/pos/sales/?limit=5")
        detail_res = self.client.get(f"/api/v1/pos/sales/{self.sale.id}/")
        filtered_res = self.client.get("/api/v1/pos/sales/?dateFrom=2000-01-01&dateTo=2000-01-02")

        self.assertEqual(list_res.status_code, 200)
        self.assertEqual(list_res.json()[0]["customer_name"], "Walk-in")
        self.assertEqual(list_res.json()[0]["customer_address"], "Main St")
        self.assertEqual(detail_res.json()["items"], [])
        self.assertEqual(filtered_res.json(), [])
