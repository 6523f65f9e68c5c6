import re
from datetime import date, timedelta
from decimal import Decimal

from django.conf import settings
from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from common.audit import log_activity
from common.errors import ForbiddenError, ValidationError, storage_errors
from common.permissions import Permission, Resource, can_view_all, get_user_role, user_has_permission
from common.utils import generate_code, get_or_not_found, model_snapshot
from core.models import User
from finance.calculations import (
    compute_commission,
    compute_line_total,
    compute_pending_commission,
    compute_tax,
    compute_total,
    compute_totals,
    to_decimal,
    to_money,
)
from finance.models import CommissionPayment, Invoice, InvoicePayment, Quote, QuoteLineItem
from finance.workflow import QUOTE_WORKFLOW
from orders.models import Order
from orders.services import order_total

ZERO = Decimal("0")
PERIOD_RE = re.compile(r"^\d{4}-(0[1-9]|1[0-2])$")
PAYMENT_PERIOD_RE = re.compile(r"^\d{4}-((0[1-9]|1[0-2])|Q[1-4])$")

QUOTE_SNAPSHOT_FIELDS = (
    "quote_code",
    "quote_name",
    "status",
    "salesperson_id",
    "organization_id",
    "subtotal",
    "discount",
    "tax_rate",
    "tax_amount",
    "total",
)
QUOTE_UPDATABLE_FIELDS = (
    "quote_name",
    "organization",
    "salesperson",
    "status",
    "valid_until",
    "discount",
    "tax_rate",
    "notes",
    "internal_notes",
    "terms_and_conditions",
)
LINE_ITEM_FIELDS = ("item_name", "description", "quantity", "unit_price", "notes")
INVOICE_SNAPSHOT_FIELDS = (
    "invoice_number",
    "status",
    "order_id",
    "subtotal",
    "discount",
    "tax_rate",
    "tax_amount",
    "total_amount",
    "amount_paid",
)
INVOICE_UPDATABLE_FIELDS = (
    "organization",
    "salesperson",
    "issue_date",
    "due_date",
    "status",
    "subtotal",
    "discount",
    "tax_rate",
    "payment_terms",
    "notes",
)
INVOICE_MONEY_FIELDS = {"subtotal", "discount", "tax_rate"}
# Set only by refresh_invoice_payment_status from the recorded payments.
PAYMENT_DERIVED_INVOICE_STATUSES = {Invoice.Status.PARTIAL, Invoice.Status.PAID}


# Quotes


def get_quote_by_id(quote_id):
    return get_or_not_found(Quote.objects.select_related("salesperson", "organization"), "Quote", quote_id)


def _validate_line_item(data):
    if not (data.get("item_name") or "").strip():
        raise ValidationError("Item name is required", errors={"item_name": ["This field is required."]})
    return compute_line_total(data.get("quantity"), data.get("unit_price"))


def recalculate_quote_totals(quote):
    """Recompute and persist subtotal, tax and total from the quote's line items."""
    totals = compute_totals(quote.line_items.all(), quote.discount, quote.tax_rate)
    quote.subtotal = totals["subtotal"]
    quote.tax_amount = totals["tax_amount"]
    quote.total = totals["total"]
    quote.save(update_fields=["subtotal", "tax_amount", "total", "updated_at"])
    return quote


def can_user_modify_quote(quote, user):
    if not user_has_permission(user, Resource.QUOTES, Permission.WRITE):
        return False
    if can_view_all(user, Resource.QUOTES):
        return True
    return quote.salesperson_id is not None and quote.salesperson_id == user.pk


def create_quote(data, line_items, user, *, request_id=None):
    quote_name = (data.get("quote_name") or "").strip()
    if not quote_name:
        raise ValidationError("Quote name is required", errors={"quote_name": ["This field is required."]})

    discount = to_money(data.get("discount") or ZERO)
    tax_rate = to_decimal(data.get("tax_rate") or ZERO, "tax_rate")
    # Validates the money inputs before anything is written.
    compute_tax(ZERO, discount, tax_rate)
    line_totals = [_validate_line_item(item) for item in line_items]

    salesperson = data.get("salesperson") or user
    if get_user_role(user) == User.Role.SALES:
        salesperson = user

    with storage_errors("create quote"), transaction.atomic():
        quote = Quote.objects.create(
            quote_code=generate_code("Q"),
            quote_name=quote_name,
            organization=data.get("organization"),
            salesperson=salesperson,
            status=Quote.Status.DRAFT,
            valid_until=data.get("valid_until"),
            discount=discount,
            tax_rate=tax_rate,
            notes=data.get("notes", ""),
            internal_notes=data.get("internal_notes", ""),
            terms_and_conditions=data.get("terms_and_conditions", ""),
        )
        QuoteLineItem.objects.bulk_create(
            [
                QuoteLineItem(
                    quote=quote,
                    item_name=item["item_name"].strip(),
                    description=item.get("description", ""),
                    quantity=item["quantity"],
                    unit_price=item["unit_price"],
                    line_total=line_total,
                    notes=item.get("notes", ""),
                )
                for item, line_total in zip(line_items, line_totals)
            ]
        )
        recalculate_quote_totals(quote)

    log_activity(
        entity_type="quote",
        entity_id=quote.id,
        action="quote_created",
        actor=user,
        new_state=model_snapshot(quote, QUOTE_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return quote


def update_quote(quote_id, data, user, *, request_id=None):
    quote = get_quote_by_id(quote_id)
    previous_state = model_snapshot(quote, QUOTE_SNAPSHOT_FIELDS)

    if "salesperson" in data and get_user_role(user) == User.Role.SALES and data["salesperson"] != quote.salesperson:
        raise ForbiddenError("Sales users cannot reassign quotes to another salesperson")

    status_changed = False
    if "status" in data:
        status_changed = QUOTE_WORKFLOW.validate(quote.status, data["status"])
    if "quote_name" in data and not (data["quote_name"] or "").strip():
        raise ValidationError("Quote name is required", errors={"quote_name": ["This field may not be blank."]})

    changed_fields = []
    for field in QUOTE_UPDATABLE_FIELDS:
        if field in data:
            setattr(quote, field, data[field])
            changed_fields.append(field)
    if not changed_fields:
        return quote

    needs_recalculation = "discount" in data or "tax_rate" in data
    if needs_recalculation:
        quote.discount = to_money(quote.discount)
        compute_tax(ZERO, quote.discount, quote.tax_rate)

    with storage_errors("update quote"), transaction.atomic():
        quote.save(update_fields=[*changed_fields, "updated_at"])
        if needs_recalculation:
            recalculate_quote_totals(quote)

    log_activity(
        entity_type="quote",
        entity_id=quote.id,
        action="quote_status_changed" if status_changed else "quote_updated",
        actor=user,
        previous_state=previous_state,
        new_state=model_snapshot(quote, QUOTE_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return quote


def delete_quote(quote_id, user, *, request_id=None):
    quote = get_quote_by_id(quote_id)
    if quote.status != Quote.Status.DRAFT:
        raise ValidationError(
            "Only draft quotes can be deleted",
            errors={"status": [f"Quote is {quote.status}."]},
        )

    quote_pk = quote.pk
    snapshot = model_snapshot(quote, QUOTE_SNAPSHOT_FIELDS)
    with storage_errors("delete quote"), transaction.atomic():
        quote.delete()

    log_activity(
        entity_type="quote",
        entity_id=quote_pk,
        action="quote_deleted",
        actor=user,
        previous_state=snapshot,
        request_id=request_id,
    )


def add_quote_line_item(quote, data, user, *, request_id=None):
    line_total = _validate_line_item(data)

    with storage_errors("add quote line item"), transaction.atomic():
        locked = Quote.objects.select_for_update().get(pk=quote.pk)
        item = QuoteLineItem.objects.create(
            quote=locked,
            item_name=data["item_name"].strip(),
            description=data.get("description", ""),
            quantity=data["quantity"],
            unit_price=data["unit_price"],
            line_total=line_total,
            notes=data.get("notes", ""),
        )
        recalculate_quote_totals(locked)

    _sync_quote(quote, locked)
    log_activity(
        entity_type="quote",
        entity_id=quote.id,
        action="quote_line_item_added",
        actor=user,
        new_state={"line_item_id": item.id, "line_total": line_total, "subtotal": quote.subtotal},
        request_id=request_id,
    )
    return item


def update_quote_line_item(item, data, user, *, request_id=None):
    merged = {field: data.get(field, getattr(item, field)) for field in LINE_ITEM_FIELDS}
    line_total = _validate_line_item(merged)

    with storage_errors("update quote line item"), transaction.atomic():
        locked = Quote.objects.select_for_update().get(pk=item.quote_id)
        item.quote = locked
        for field in LINE_ITEM_FIELDS:
            setattr(item, field, merged[field])
        item.item_name = item.item_name.strip()
        item.line_total = line_total
        item.save()
        recalculate_quote_totals(locked)

    log_activity(
        entity_type="quote",
        entity_id=locked.id,
        action="quote_line_item_updated",
        actor=user,
        new_state={"line_item_id": item.id, "line_total": line_total, "subtotal": locked.subtotal},
        request_id=request_id,
    )
    return item


def remove_quote_line_item(item, user, *, request_id=None):
    item_pk = item.pk
    with storage_errors("remove quote line item"), transaction.atomic():
        locked = Quote.objects.select_for_update().get(pk=item.quote_id)
        item.delete()
        recalculate_quote_totals(locked)

    log_activity(
        entity_type="quote",
        entity_id=locked.id,
        action="quote_line_item_removed",
        actor=user,
        previous_state={"line_item_id": item_pk},
        new_state={"subtotal": locked.subtotal},
        request_id=request_id,
    )
    return locked


def _sync_quote(target, source):
    for field in ("subtotal", "tax_amount", "total", "updated_at"):
        setattr(target, field, getattr(source, field))


# Invoices


def get_invoice_by_id(invoice_id):
    return get_or_not_found(Invoice.objects.select_related("order", "salesperson"), "Invoice", invoice_id)


def _validate_invoice_status(status, amount_paid):
    if status in PAYMENT_DERIVED_INVOICE_STATUSES:
        raise ValidationError(
            f"Invoice status {status} follows from recorded payments and cannot be set directly",
            errors={"status": ["Record or remove payments instead."]},
        )
    if status == Invoice.Status.DRAFT and amount_paid > 0:
        raise ValidationError(
            "An invoice with payments cannot return to draft",
            errors={"status": [f"Amount paid is {amount_paid}."]},
        )


def create_invoice(data, user, *, request_id=None):
    order = data.get("order")
    status = data.get("status") or Invoice.Status.DRAFT
    _validate_invoice_status(status, ZERO)
    subtotal = data.get("subtotal")
    if subtotal is None:
        subtotal = order_total(order) if order is not None else ZERO
    subtotal = to_money(subtotal)
    discount = to_money(data.get("discount") or ZERO)
    tax_rate = to_decimal(data.get("tax_rate") or ZERO, "tax_rate")
    tax_amount = compute_tax(subtotal, discount, tax_rate)
    total_amount = compute_total(subtotal, discount, tax_amount)

    issue_date = data.get("issue_date") or timezone.localdate()
    due_date = data.get("due_date") or issue_date + timedelta(days=settings.INVOICE_DEFAULT_DUE_DAYS)
    if due_date < issue_date:
        raise ValidationError("Due date cannot be before issue date", errors={"due_date": ["Must be on or after issue_date."]})

    salesperson = data.get("salesperson")
    if salesperson is None and order is not None:
        salesperson = order.salesperson

    with storage_errors("create invoice"), transaction.atomic():
        invoice = Invoice.objects.create(
            invoice_number=generate_code("INV"),
            order=order,
            organization=data.get("organization") or (order.organization if order is not None else None),
            salesperson=salesperson,
            issue_date=issue_date,
            due_date=due_date,
            status=status,
            subtotal=subtotal,
            discount=discount,
            tax_rate=tax_rate,
            tax_amount=tax_amount,
            total_amount=total_amount,
            payment_terms=data.get("payment_terms", ""),
            notes=data.get("notes", ""),
            created_by=user,
        )

    log_activity(
        entity_type="invoice",
        entity_id=invoice.id,
        action="invoice_created",
        actor=user,
        new_state=model_snapshot(invoice, INVOICE_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return invoice


def update_invoice(invoice, data, user, *, request_id=None):
    previous_state = model_snapshot(invoice, INVOICE_SNAPSHOT_FIELDS)
    if "status" in data and data["status"] != invoice.status:
        _validate_invoice_status(data["status"], invoice.amount_paid)

    changed_fields = []
    for field in INVOICE_UPDATABLE_FIELDS:
        if field in data:
            setattr(invoice, field, data[field])
            changed_fields.append(field)
    if not changed_fields:
        return invoice

    if INVOICE_MONEY_FIELDS & set(changed_fields):
        invoice.subtotal = to_money(invoice.subtotal)
        invoice.discount = to_money(invoice.discount)
        invoice.tax_amount = compute_tax(invoice.subtotal, invoice.discount, invoice.tax_rate)
        invoice.total_amount = compute_total(invoice.subtotal, invoice.discount, invoice.tax_amount)
        if invoice.total_amount < invoice.amount_paid:
            raise ValidationError(
                "Invoice total cannot be less than the amount already paid",
                errors={"total_amount": [f"Amount paid is {invoice.amount_paid}."]},
            )
        changed_fields += ["tax_amount", "total_amount"]
    if invoice.due_date < invoice.issue_date:
        raise ValidationError("Due date cannot be before issue date", errors={"due_date": ["Must be on or after issue_date."]})

    with storage_errors("update invoice"), transaction.atomic():
        invoice.save(update_fields=[*changed_fields, "updated_at"])
        if (INVOICE_MONEY_FIELDS | {"status"}) & set(changed_fields):
            refresh_invoice_payment_status(invoice)

    log_activity(
        entity_type="invoice",
        entity_id=invoice.id,
        action="invoice_updated",
        actor=user,
        previous_state=previous_state,
        new_state=model_snapshot(invoice, INVOICE_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return invoice


def refresh_invoice_payment_status(invoice):
    """Re-derive ``amount_paid`` and the payment status from recorded payments."""
    amount_paid = to_money(invoice.payments.aggregate(total=Sum("amount"))["total"] or ZERO)
    invoice.amount_paid = amount_paid

    if invoice.status != Invoice.Status.CANCELLED:
        if invoice.total_amount > 0 and amount_paid >= invoice.total_amount:
            invoice.status = Invoice.Status.PAID
        elif amount_paid > 0:
            invoice.status = Invoice.Status.PARTIAL
        elif invoice.status in {Invoice.Status.PAID, Invoice.Status.PARTIAL}:
            invoice.status = Invoice.Status.SENT

    invoice.save(update_fields=["amount_paid", "status", "updated_at"])
    return invoice


def record_invoice_payment(invoice, data, user, *, request_id=None):
    amount = to_money(data.get("amount"))
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero", errors={"amount": ["Must be greater than zero."]})

    with storage_errors("record invoice payment"), transaction.atomic():
        locked = Invoice.objects.select_for_update().get(pk=invoice.pk)
        if locked.status == Invoice.Status.CANCELLED:
            raise ValidationError("Cannot record a payment on a cancelled invoice")
        paid_so_far = locked.payments.aggregate(total=Sum("amount"))["total"] or ZERO
        if amount > locked.total_amount - paid_so_far:
            raise ValidationError(
                "Payment amount cannot be greater than the remaining balance",
                errors={"amount": [f"Outstanding balance is {to_money(locked.total_amount - paid_so_far)}."]},
            )

        payment = InvoicePayment.objects.create(
            invoice=locked,
            payment_number=generate_code("PAY"),
            payment_date=data.get("payment_date") or timezone.localdate(),
            amount=amount,
            payment_method=data["payment_method"],
            reference_number=data.get("reference_number", ""),
            notes=data.get("notes", ""),
            created_by=user,
        )
        refresh_invoice_payment_status(locked)

    log_activity(
        entity_type="invoice",
        entity_id=locked.id,
        action="invoice_payment_recorded",
        actor=user,
        new_state={
            "payment_id": payment.id,
            "amount": amount,
            "amount_paid": locked.amount_paid,
            "status": locked.status,
        },
        request_id=request_id,
    )
    return payment


def delete_invoice_payment(payment, user, *, request_id=None):
    snapshot = {"payment_id": payment.pk, "amount": payment.amount}
    with storage_errors("delete invoice payment"), transaction.atomic():
        locked = Invoice.objects.select_for_update().get(pk=payment.invoice_id)
        payment.delete()
        refresh_invoice_payment_status(locked)

    log_activity(
        entity_type="invoice",
        entity_id=locked.id,
        action="invoice_payment_deleted",
        actor=user,
        previous_state=snapshot,
        new_state={"amount_paid": locked.amount_paid, "status": locked.status},
        request_id=request_id,
    )
    return locked


# Commissions


def _period_bounds(period):
    if not PERIOD_RE.match(period or ""):
        raise ValidationError("Period must use the YYYY-MM format", errors={"period": ["Expected YYYY-MM."]})
    year, month = (int(part) for part in period.split("-"))
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return start, end


def get_commission_summary(salesperson, period=None):
    """Earned, paid and pending commission for one salesperson.

    ``period`` (``YYYY-MM``) narrows both the orders and the payments
    considered; without it the summary covers all time.
    """
    rate = salesperson.commission_rate
    if rate is None:
        rate = Decimal(str(settings.DEFAULT_COMMISSION_RATE))

    orders = Order.objects.filter(salesperson_id=salesperson.user_id)
    payments = CommissionPayment.objects.filter(salesperson=salesperson)
    if period:
        start, end = _period_bounds(period)
        orders = orders.filter(created_at__date__gte=start, created_at__date__lt=end)
        payments = payments.filter(period=period)

    rows = list(orders.annotate(total=Sum("line_items__line_total")).order_by("created_at"))
    order_totals = [to_money(row.total or ZERO) for row in rows]
    paid_amounts = list(payments.values_list("total_amount", flat=True))

    earned = compute_commission(order_totals, rate)
    pending = compute_pending_commission(order_totals, rate, paid_amounts)
    return {
        "salesperson_id": salesperson.id,
        "period": period,
        "commission_rate": rate,
        "order_count": len(rows),
        "total_sales": to_money(sum(order_totals, ZERO)),
        "commission_earned": earned,
        "commission_paid": to_money(sum(paid_amounts, ZERO)),
        "commission_pending": pending,
        "suggested_payment": max(pending, to_money(ZERO)),
        "orders": [
            {
                "order_id": row.id,
                "order_code": row.order_code,
                "total": total,
                "commission": compute_commission([total], rate),
            }
            for row, total in zip(rows, order_totals)
        ],
    }


COMMISSION_PAYMENT_SNAPSHOT_FIELDS = (
    "payment_number",
    "salesperson_id",
    "payment_date",
    "period",
    "total_amount",
    "payment_method",
    "reference_number",
)
COMMISSION_PAYMENT_UPDATABLE_FIELDS = (
    "salesperson",
    "payment_date",
    "period",
    "total_amount",
    "payment_method",
    "reference_number",
    "notes",
)


def _validate_payment_period(period):
    if not PAYMENT_PERIOD_RE.match(period or ""):
        raise ValidationError("Period must use YYYY-MM or YYYY-Qn", errors={"period": ["Expected YYYY-MM or YYYY-Qn."]})
    return period


def _validate_commission_amount(value):
    amount = to_money(value)
    if amount <= 0:
        raise ValidationError("Payment amount must be greater than zero", errors={"total_amount": ["Must be greater than zero."]})
    return amount


def create_commission_payment(data, user, *, request_id=None):
    period = _validate_payment_period(data.get("period"))
    amount = _validate_commission_amount(data.get("total_amount"))

    with storage_errors("create commission payment"), transaction.atomic():
        payment = CommissionPayment.objects.create(
            salesperson=data["salesperson"],
            payment_number=generate_code("COM"),
            payment_date=data.get("payment_date") or timezone.localdate(),
            period=period,
            total_amount=amount,
            payment_method=data["payment_method"],
            reference_number=data.get("reference_number", ""),
            notes=data.get("notes", ""),
            processed_by=user,
        )

    log_activity(
        entity_type="commission_payment",
        entity_id=payment.id,
        action="commission_payment_created",
        actor=user,
        new_state=model_snapshot(payment, COMMISSION_PAYMENT_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return payment


def update_commission_payment(payment, data, user, *, request_id=None):
    previous_state = model_snapshot(payment, COMMISSION_PAYMENT_SNAPSHOT_FIELDS)
    if "period" in data:
        _validate_payment_period(data["period"])
    if "total_amount" in data:
        data = {**data, "total_amount": _validate_commission_amount(data["total_amount"])}

    changed_fields = [field for field in COMMISSION_PAYMENT_UPDATABLE_FIELDS if field in data]
    if not changed_fields:
        return payment
    for field in changed_fields:
        setattr(payment, field, data[field])

    with storage_errors("update commission payment"):
        payment.save(update_fields=changed_fields)

    log_activity(
        entity_type="commission_payment",
        entity_id=payment.id,
        action="commission_payment_updated",
        actor=user,
        previous_state=previous_state,
        new_state=model_snapshot(payment, COMMISSION_PAYMENT_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return payment


def delete_commission_payment(payment, user, *, request_id=None):
    payment_id = payment.pk
    previous_state = model_snapshot(payment, COMMISSION_PAYMENT_SNAPSHOT_FIELDS)

    with storage_errors("delete commission payment"):
        payment.delete()

    log_activity(
        entity_type="commission_payment",
        entity_id=payment_id,
        action="commission_payment_deleted",
        actor=user,
        previous_state=previous_state,
        request_id=request_id,
    )
