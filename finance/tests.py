from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from common.errors import ValidationError
from core.models import AuditLog, Salesperson
from finance.calculations import (
    compute_commission,
    compute_line_total,
    compute_pending_commission,
    compute_subtotal,
    compute_tax,
    compute_taxable_amount,
    compute_total,
    compute_totals,
)
from finance.models import CommissionPayment, Invoice, InvoicePayment, Quote, QuoteLineItem
from finance.services import create_quote, get_commission_summary
from orders.models import Order, OrderLineItem


class CalculationTests(SimpleTestCase):
    def test_tax_is_charged_on_discounted_amount(self):
        tax = compute_tax("500", "50", "0.0875")

        self.assertEqual(tax, Decimal("39.38"))
        self.assertEqual(compute_total("500", "50", tax), Decimal("489.38"))

    def test_twelve_line_items(self):
        items = [{"quantity": 1, "unit_price": "90.00"} for _ in range(11)]
        items.append({"quantity": 1, "unit_price": "95.00"})

        totals = compute_totals(items, discount="0", tax_rate="0.0875")

        self.assertEqual(totals["subtotal"], Decimal("1085.00"))
        self.assertEqual(totals["tax_amount"], Decimal("94.94"))
        self.assertEqual(totals["total"], Decimal("1179.94"))

    def test_line_totals_round_half_up(self):
        self.assertEqual(compute_line_total("1", "1.005"), Decimal("1.01"))
        self.assertEqual(compute_line_total("3", "0.125"), Decimal("0.38"))
        self.assertEqual(compute_line_total(0, "19.99"), Decimal("0.00"))

    def test_subtotal_accepts_objects_and_mappings(self):
        class Item:
            quantity = Decimal("2")
            unit_price = Decimal("10.00")

        self.assertEqual(compute_subtotal([Item(), {"quantity": "1", "unit_price": "5.50"}]), Decimal("25.50"))
        self.assertEqual(compute_subtotal([]), Decimal("0.00"))

    def test_discount_larger_than_subtotal(self):
        self.assertEqual(compute_taxable_amount("100", "150"), Decimal("0.00"))
        self.assertEqual(compute_tax("100", "150", "0.0875"), Decimal("0.00"))
        self.assertEqual(compute_total("100", "150", "0"), Decimal("-50.00"))

    def test_invalid_inputs_are_rejected(self):
        with self.assertRaises(ValidationError):
            compute_tax("100", "0", "1.5")
        with self.assertRaises(ValidationError):
            compute_tax("100", "-1", "0.1")
        with self.assertRaises(ValidationError):
            compute_line_total("-2", "10")
        with self.assertRaises(ValidationError):
            compute_line_total("two", "10")
        with self.assertRaises(ValidationError):
            compute_line_total("NaN", "10")

    def test_commission(self):
        self.assertEqual(compute_commission(["1000.00", "500.00"], "0.10"), Decimal("150.00"))
        self.assertEqual(compute_pending_commission(["1000.00", "500.00"], "0.10", ["100.00"]), Decimal("50.00"))
        self.assertEqual(compute_pending_commission(["100.00"], "0.10", ["25.00"]), Decimal("-15.00"))


class FinanceFixtureMixin:
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="fin-admin", password="pass1234", role="admin")
        self.sales = user_model.objects.create_user(username="fin-sales", password="pass1234", role="sales")
        self.other_sales = user_model.objects.create_user(username="fin-sales-2", password="pass1234", role="sales")
        self.finance = user_model.objects.create_user(username="fin-finance", password="pass1234", role="finance")
        self.ops = user_model.objects.create_user(username="fin-ops", password="pass1234", role="ops")


class QuoteTests(FinanceFixtureMixin, TestCase):
    def _quote(self, owner=None, **fields):
        return create_quote(
            {"quote_name": "Spring Uniforms", **fields},
            [{"item_name": "Jersey", "quantity": Decimal("10"), "unit_price": Decimal("10.00")}],
            owner or self.sales,
        )

    def test_create_with_line_items_computes_totals(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.post(
            "/api/v1/quotes/",
            {
                "quote_name": "Fall Kits",
                "discount": "50.00",
                "tax_rate": "0.0875",
                "salesperson": str(self.other_sales.id),
                "line_items": [
                    {"item_name": "Jersey", "quantity": "20", "unit_price": "15.00"},
                    {"item_name": "Shorts", "quantity": "20", "unit_price": "10.00"},
                ],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["status"], "draft")
        self.assertEqual(body["salesperson"], str(self.sales.id))
        self.assertEqual(body["subtotal"], "500.00")
        self.assertEqual(body["tax_amount"], "39.38")
        self.assertEqual(body["total"], "489.38")
        self.assertEqual(len(body["line_items"]), 2)
        self.assertTrue(body["quote_code"].startswith("Q-"))

    def test_new_quote_cannot_skip_draft(self):
        self.client.force_authenticate(user=self.sales)
        response = self.client.post("/api/v1/quotes/", {"quote_name": "X", "status": "accepted"}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_adding_line_item_recalculates(self):
        quote = self._quote()
        self.client.force_authenticate(user=self.sales)

        response = self.client.post(
            f"/api/v1/quotes/{quote.id}/line-items/",
            {"item_name": "Socks", "quantity": "10", "unit_price": "10.00"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        quote.refresh_from_db()
        self.assertEqual(quote.subtotal, Decimal("200.00"))
        self.assertEqual(quote.total, Decimal("200.00"))

    def test_updating_and_removing_line_items_recalculates(self):
        quote = self._quote(tax_rate=Decimal("0.10"))
        item = quote.line_items.get()
        self.client.force_authenticate(user=self.sales)

        response = self.client.patch(
            f"/api/v1/quotes/{quote.id}/line-items/{item.id}/",
            {"quantity": "5"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["line_total"], "50.00")
        quote.refresh_from_db()
        self.assertEqual(quote.subtotal, Decimal("50.00"))
        self.assertEqual(quote.tax_amount, Decimal("5.00"))
        self.assertEqual(quote.total, Decimal("55.00"))

        response = self.client.delete(f"/api/v1/quotes/{quote.id}/line-items/{item.id}/")

        self.assertEqual(response.status_code, 204)
        quote.refresh_from_db()
        self.assertEqual(quote.subtotal, Decimal("0.00"))
        self.assertEqual(quote.total, Decimal("0.00"))
        self.assertFalse(QuoteLineItem.objects.exists())

    def test_discount_change_recalculates(self):
        quote = self._quote(tax_rate=Decimal("0.10"))
        self.client.force_authenticate(user=self.sales)

        response = self.client.patch(f"/api/v1/quotes/{quote.id}/", {"discount": "20.00"}, format="json")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["tax_amount"], "8.00")
        self.assertEqual(body["total"], "88.00")

    def test_status_workflow(self):
        quote = self._quote()
        self.client.force_authenticate(user=self.sales)
        path = f"/api/v1/quotes/{quote.id}/status/"

        sent = self.client.post(path, {"status": "sent"}, format="json")
        back = self.client.post(path, {"status": "draft"}, format="json")
        accepted = self.client.post(path, {"status": "accepted"}, format="json")

        self.assertEqual(sent.status_code, 200)
        self.assertEqual(back.status_code, 400)
        self.assertEqual(back.json()["code"], "invalid_transition")
        self.assertEqual(accepted.status_code, 200)
        self.assertEqual(accepted.json()["allowed_next_statuses"], [])
        self.assertTrue(AuditLog.objects.filter(action="quote_status_changed").exists())

    def test_sales_cannot_see_other_reps_quotes(self):
        quote = self._quote(owner=self.other_sales)
        self.client.force_authenticate(user=self.sales)

        self.assertEqual(self.client.get("/api/v1/quotes/").json()["count"], 0)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get(f"/api/v1/quotes/{quote.id}/")
        self.assertEqual(response.status_code, 403)

    def test_sales_cannot_hand_quote_to_another_rep(self):
        quote = self._quote()
        self.client.force_authenticate(user=self.sales)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.patch(
                f"/api/v1/quotes/{quote.id}/",
                {"salesperson": str(self.other_sales.id)},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        quote.refresh_from_db()
        self.assertEqual(quote.salesperson, self.sales)

    def test_ops_can_read_but_not_write_quotes(self):
        quote = self._quote()
        self.client.force_authenticate(user=self.ops)

        self.assertEqual(self.client.get(f"/api/v1/quotes/{quote.id}/").status_code, 200)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.patch(f"/api/v1/quotes/{quote.id}/", {"notes": "x"}, format="json")
        self.assertEqual(response.status_code, 403)

    def test_only_draft_quotes_can_be_deleted(self):
        draft = self._quote()
        sent = self._quote()
        Quote.objects.filter(pk=sent.pk).update(status=Quote.Status.SENT)
        self.client.force_authenticate(user=self.admin)

        rejected = self.client.delete(f"/api/v1/quotes/{sent.id}/")
        deleted = self.client.delete(f"/api/v1/quotes/{draft.id}/")

        self.assertEqual(rejected.status_code, 400)
        self.assertEqual(rejected.json()["message"], "Only draft quotes can be deleted")
        self.assertTrue(Quote.objects.filter(pk=sent.pk).exists())
        self.assertEqual(deleted.status_code, 204)
        self.assertFalse(Quote.objects.filter(pk=draft.pk).exists())
        self.assertFalse(QuoteLineItem.objects.filter(quote_id=draft.pk).exists())


class InvoiceTests(FinanceFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.order = Order.objects.create(order_code="ORD-FIN-0001", order_name="Team Kits", salesperson=self.sales)
        for _ in range(11):
            OrderLineItem.objects.create(
                order=self.order,
                item_name="Jersey",
                quantity=Decimal("1"),
                unit_price=Decimal("90.00"),
                line_total=Decimal("90.00"),
            )
        OrderLineItem.objects.create(
            order=self.order,
            item_name="Banner",
            quantity=Decimal("1"),
            unit_price=Decimal("95.00"),
            line_total=Decimal("95.00"),
        )

    def _create_invoice(self):
        self.client.force_authenticate(user=self.finance)
        response = self.client.post(
            "/api/v1/invoices/",
            {"order": str(self.order.id), "tax_rate": "0.0875"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def test_invoice_defaults_to_order_total(self):
        body = self._create_invoice()

        self.assertEqual(body["subtotal"], "1085.00")
        self.assertEqual(body["tax_amount"], "94.94")
        self.assertEqual(body["total_amount"], "1179.94")
        self.assertEqual(body["amount_due"], "1179.94")
        self.assertEqual(body["status"], "draft")
        self.assertEqual(body["salesperson"], str(self.sales.id))
        self.assertTrue(body["invoice_number"].startswith("INV-"))
        issue_date = timezone.localdate()
        self.assertEqual(body["issue_date"], issue_date.isoformat())
        self.assertEqual(body["due_date"], (issue_date + timedelta(days=30)).isoformat())

    @override_settings(INVOICE_DEFAULT_DUE_DAYS=15)
    def test_due_date_follows_setting(self):
        body = self._create_invoice()
        expected = timezone.localdate() + timedelta(days=15)
        self.assertEqual(body["due_date"], expected.isoformat())

    def test_payments_move_invoice_through_partial_to_paid(self):
        invoice_id = self._create_invoice()["id"]
        path = f"/api/v1/invoices/{invoice_id}/payments/"

        partial = self.client.post(path, {"amount": "500.00", "payment_method": "wire"}, format="json")
        self.assertEqual(partial.status_code, 201)
        self.assertEqual(Invoice.objects.get(pk=invoice_id).status, Invoice.Status.PARTIAL)

        overpay = self.client.post(path, {"amount": "700.00", "payment_method": "wire"}, format="json")
        self.assertEqual(overpay.status_code, 400)
        self.assertEqual(InvoicePayment.objects.count(), 1)

        final = self.client.post(path, {"amount": "679.94", "payment_method": "check"}, format="json")
        self.assertEqual(final.status_code, 201)
        invoice = Invoice.objects.get(pk=invoice_id)
        self.assertEqual(invoice.status, Invoice.Status.PAID)
        self.assertEqual(invoice.amount_paid, Decimal("1179.94"))
        self.assertEqual(invoice.amount_due, Decimal("0.00"))

        listed = self.client.get(path).json()
        self.assertEqual(len(listed), 2)

        removed = self.client.delete(f"/api/v1/invoice-payments/{final.json()['id']}/")
        self.assertEqual(removed.status_code, 204)
        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.PARTIAL)
        self.assertEqual(invoice.amount_paid, Decimal("500.00"))

    def test_non_positive_payment_is_rejected(self):
        invoice_id = self._create_invoice()["id"]

        response = self.client.post(
            f"/api/v1/invoices/{invoice_id}/payments/",
            {"amount": "0", "payment_method": "cash"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_cancelled_invoice_rejects_payments(self):
        invoice_id = self._create_invoice()["id"]
        Invoice.objects.filter(pk=invoice_id).update(status=Invoice.Status.CANCELLED)

        response = self.client.post(
            f"/api/v1/invoices/{invoice_id}/payments/",
            {"amount": "10.00", "payment_method": "cash"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_total_cannot_drop_below_amount_paid(self):
        invoice_id = self._create_invoice()["id"]
        self.client.post(
            f"/api/v1/invoices/{invoice_id}/payments/",
            {"amount": "1000.00", "payment_method": "wire"},
            format="json",
        )

        response = self.client.patch(f"/api/v1/invoices/{invoice_id}/", {"discount": "500.00"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Invoice.objects.get(pk=invoice_id).total_amount, Decimal("1179.94"))

    def test_paid_status_cannot_be_set_directly(self):
        invoice_id = self._create_invoice()["id"]
        self.client.post(
            f"/api/v1/invoices/{invoice_id}/payments/",
            {"amount": "400.00", "payment_method": "wire"},
            format="json",
        )

        response = self.client.patch(f"/api/v1/invoices/{invoice_id}/", {"status": "paid"}, format="json")

        self.assertEqual(response.status_code, 400)
        invoice = Invoice.objects.get(pk=invoice_id)
        self.assertEqual(invoice.status, Invoice.Status.PARTIAL)
        self.assertEqual(invoice.amount_paid, Decimal("400.00"))

    def test_invoice_with_payments_cannot_return_to_draft(self):
        invoice_id = self._create_invoice()["id"]
        self.client.post(
            f"/api/v1/invoices/{invoice_id}/payments/",
            {"amount": "400.00", "payment_method": "wire"},
            format="json",
        )

        response = self.client.patch(f"/api/v1/invoices/{invoice_id}/", {"status": "draft"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(Invoice.objects.get(pk=invoice_id).status, Invoice.Status.PARTIAL)

    def test_status_write_is_reconciled_with_payments(self):
        invoice_id = self._create_invoice()["id"]
        self.client.post(
            f"/api/v1/invoices/{invoice_id}/payments/",
            {"amount": "400.00", "payment_method": "wire"},
            format="json",
        )

        response = self.client.patch(f"/api/v1/invoices/{invoice_id}/", {"status": "sent"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "partial")

    def test_new_invoice_cannot_start_paid(self):
        self.client.force_authenticate(user=self.finance)

        response = self.client.post(
            "/api/v1/invoices/",
            {"order": str(self.order.id), "status": "paid"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(Invoice.objects.exists())

    def test_sales_has_no_invoice_access(self):
        self.client.force_authenticate(user=self.sales)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/invoices/")
        self.assertEqual(response.status_code, 403)


class CommissionTests(FinanceFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        self.profile = Salesperson.objects.create(user=self.sales, commission_rate=Decimal("0.1000"))
        order = Order.objects.create(order_code="ORD-COM-0001", order_name="Kits", salesperson=self.sales)
        OrderLineItem.objects.create(
            order=order,
            item_name="Jersey",
            quantity=Decimal("100"),
            unit_price=Decimal("10.00"),
            line_total=Decimal("1000.00"),
        )
        self.payment = CommissionPayment.objects.create(
            salesperson=self.profile,
            payment_number="COM-TEST-0001",
            payment_date=timezone.localdate(),
            period=timezone.localdate().strftime("%Y-%m"),
            total_amount=Decimal("40.00"),
            payment_method=CommissionPayment.Method.CHECK,
        )

    def test_summary_math(self):
        summary = get_commission_summary(self.profile)

        self.assertEqual(summary["order_count"], 1)
        self.assertEqual(summary["total_sales"], Decimal("1000.00"))
        self.assertEqual(summary["commission_earned"], Decimal("100.00"))
        self.assertEqual(summary["commission_paid"], Decimal("40.00"))
        self.assertEqual(summary["commission_pending"], Decimal("60.00"))
        self.assertEqual(summary["suggested_payment"], Decimal("60.00"))

    def test_summary_for_an_empty_period(self):
        summary = get_commission_summary(self.profile, "2001-01")

        self.assertEqual(summary["order_count"], 0)
        self.assertEqual(summary["commission_pending"], Decimal("0.00"))

    def test_invalid_period_is_rejected(self):
        with self.assertRaises(ValidationError):
            get_commission_summary(self.profile, "2024-13")

    def test_salesperson_can_view_own_summary(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.get(f"/api/v1/commissions/summary/{self.profile.id}/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["commission_earned"], "100.00")
        self.assertEqual(body["commission_pending"], "60.00")
        self.assertEqual(body["commission_rate"], "0.1000")
        self.assertEqual(len(body["orders"]), 1)

    def test_other_sales_cannot_view_summary(self):
        self.client.force_authenticate(user=self.other_sales)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get(f"/api/v1/commissions/summary/{self.profile.id}/")
        self.assertEqual(response.status_code, 403)

    def test_finance_records_commission_payment(self):
        self.client.force_authenticate(user=self.finance)

        response = self.client.post(
            "/api/v1/commission-payments/",
            {
                "salesperson": str(self.profile.id),
                "period": "2025-Q3",
                "total_amount": "60.00",
                "payment_method": "direct_deposit",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(response.json()["payment_number"].startswith("COM-"))
        self.assertEqual(response.json()["processed_by"], str(self.finance.id))

    def test_bad_payment_period_is_rejected(self):
        self.client.force_authenticate(user=self.finance)

        response = self.client.post(
            "/api/v1/commission-payments/",
            {
                "salesperson": str(self.profile.id),
                "period": "Q3-2025",
                "total_amount": "60.00",
                "payment_method": "check",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_correcting_a_payment_updates_pending_commission(self):
        self.client.force_authenticate(user=self.finance)

        response = self.client.patch(
            f"/api/v1/commission-payments/{self.payment.id}/",
            {"total_amount": "25.00", "reference_number": "CHK-1001"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total_amount"], "25.00")
        self.assertEqual(get_commission_summary(self.profile)["commission_pending"], Decimal("75.00"))
        entry = AuditLog.objects.get(action="commission_payment_updated")
        self.assertEqual(entry.entity_id, str(self.payment.id))

    def test_correction_rejects_bad_amount(self):
        self.client.force_authenticate(user=self.finance)

        response = self.client.patch(
            f"/api/v1/commission-payments/{self.payment.id}/",
            {"total_amount": "0"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.payment.refresh_from_db()
        self.assertEqual(self.payment.total_amount, Decimal("40.00"))

    def test_finance_deletes_mistaken_payment(self):
        self.client.force_authenticate(user=self.finance)

        response = self.client.delete(f"/api/v1/commission-payments/{self.payment.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(CommissionPayment.objects.exists())
        self.assertEqual(get_commission_summary(self.profile)["commission_pending"], Decimal("100.00"))
        self.assertTrue(AuditLog.objects.filter(action="commission_payment_deleted").exists())

    def test_ops_cannot_delete_commission_payment(self):
        self.client.force_authenticate(user=self.ops)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.delete(f"/api/v1/commission-payments/{self.payment.id}/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(CommissionPayment.objects.filter(pk=self.payment.pk).exists())
