from decimal import Decimal

from rest_framework import serializers

from core.serializers import UserSummarySerializer
from finance.models import CommissionPayment, Invoice, InvoicePayment, Quote, QuoteLineItem
from finance.workflow import QUOTE_WORKFLOW


class QuoteLineItemSerializer(serializers.ModelSerializer):
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"))
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"))

    class Meta:
        model = QuoteLineItem
        fields = [
            "id",
            "quote",
            "item_name",
            "description",
            "quantity",
            "unit_price",
            "line_total",
            "notes",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "quote", "line_total", "created_at", "updated_at"]


class QuoteSerializer(serializers.ModelSerializer):
    line_items = QuoteLineItemSerializer(many=True, required=False)
    salesperson_detail = UserSummarySerializer(source="salesperson", read_only=True)
    organization_name = serializers.CharField(source="organization.name", read_only=True, default=None)
    allowed_next_statuses = serializers.SerializerMethodField()
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    tax_rate = serializers.DecimalField(
        max_digits=6,
        decimal_places=4,
        min_value=Decimal("0"),
        max_value=Decimal("1"),
        required=False,
    )
    status = serializers.CharField(max_length=16, required=False)

    class Meta:
        model = Quote
        fields = [
            "id",
            "quote_code",
            "quote_name",
            "organization",
            "organization_name",
            "salesperson",
            "salesperson_detail",
            "status",
            "valid_until",
            "subtotal",
            "discount",
            "tax_rate",
            "tax_amount",
            "total",
            "notes",
            "internal_notes",
            "terms_and_conditions",
            "line_items",
            "allowed_next_statuses",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "quote_code", "subtotal", "tax_amount", "total", "created_at", "updated_at"]

    def get_allowed_next_statuses(self, obj):
        return QUOTE_WORKFLOW.allowed_next(obj.status)

    def validate(self, attrs):
        if self.instance is None and attrs.get("status") not in (None, Quote.Status.DRAFT):
            raise serializers.ValidationError({"status": "New quotes always start as draft."})
        if self.instance is not None and "line_items" in attrs:
            raise serializers.ValidationError({"line_items": "Use the line-items endpoint to change line items."})
        return attrs


class InvoiceSerializer(serializers.ModelSerializer):
    order_code = serializers.CharField(source="order.order_code", read_only=True, default=None)
    salesperson_detail = UserSummarySerializer(source="salesperson", read_only=True)
    amount_due = serializers.DecimalField(max_digits=12, decimal_places=2, read_only=True)
    subtotal = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=Decimal("0"),
        required=False,
        allow_null=True,
    )
    discount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=Decimal("0"), required=False)
    tax_rate = serializers.DecimalField(
        max_digits=6,
        decimal_places=4,
        min_value=Decimal("0"),
        max_value=Decimal("1"),
        required=False,
    )

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "order",
            "order_code",
            "organization",
            "salesperson",
            "salesperson_detail",
            "issue_date",
            "due_date",
            "status",
            "subtotal",
            "discount",
            "tax_rate",
            "tax_amount",
            "total_amount",
            "amount_paid",
            "amount_due",
            "payment_terms",
            "notes",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = [
            "id",
            "invoice_number",
            "tax_amount",
            "total_amount",
            "amount_paid",
            "created_by",
            "created_at",
            "updated_at",
        ]
        extra_kwargs = {
            "issue_date": {"required": False},
            "due_date": {"required": False},
            "status": {"required": False},
        }

    def validate(self, attrs):
        if self.instance is not None:
            if "order" in attrs and attrs["order"] != self.instance.order:
                raise serializers.ValidationError({"order": "An invoice cannot move to another order."})
            if attrs.get("subtotal", "") is None:
                raise serializers.ValidationError({"subtotal": "This field may not be null."})
        return attrs


class InvoicePaymentSerializer(serializers.ModelSerializer):
    amount = serializers.DecimalField(max_digits=12, decimal_places=2)

    class Meta:
        model = InvoicePayment
        fields = [
            "id",
            "invoice",
            "payment_number",
            "payment_date",
            "amount",
            "payment_method",
            "reference_number",
            "notes",
            "created_by",
            "created_at",
        ]
        read_only_fields = ["id", "invoice", "payment_number", "created_by", "created_at"]
        extra_kwargs = {"payment_date": {"required": False}}


class CommissionPaymentSerializer(serializers.ModelSerializer):
    salesperson_name = serializers.CharField(source="salesperson.user.display_name", read_only=True)

    class Meta:
        model = CommissionPayment
        fields = [
            "id",
            "salesperson",
            "salesperson_name",
            "payment_number",
            "payment_date",
            "period",
            "total_amount",
            "payment_method",
            "reference_number",
            "notes",
            "processed_by",
            "created_at",
        ]
        read_only_fields = ["id", "payment_number", "processed_by", "created_at"]
        extra_kwargs = {"payment_date": {"required": False}}


class CommissionOrderSerializer(serializers.Serializer):
    order_id = serializers.UUIDField()
    order_code = serializers.CharField()
    total = serializers.DecimalField(max_digits=14, decimal_places=2)
    commission = serializers.DecimalField(max_digits=14, decimal_places=2)


class CommissionSummarySerializer(serializers.Serializer):
    salesperson_id = serializers.UUIDField()
    period = serializers.CharField(allow_null=True)
    commission_rate = serializers.DecimalField(max_digits=5, decimal_places=4)
    order_count = serializers.IntegerField()
    total_sales = serializers.DecimalField(max_digits=14, decimal_places=2)
    commission_earned = serializers.DecimalField(max_digits=14, decimal_places=2)
    commission_paid = serializers.DecimalField(max_digits=14, decimal_places=2)
    commission_pending = serializers.DecimalField(max_digits=14, decimal_places=2)
    suggested_payment = serializers.DecimalField(max_digits=14, decimal_places=2)
    orders = CommissionOrderSerializer(many=True)
