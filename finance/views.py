from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import get_request_id
from common.errors import ForbiddenError
from common.permissions import (
    Permission,
    Resource,
    ResourcePermission,
    can_view_all,
    scope_queryset_for_user,
    user_has_permission,
)
from common.utils import get_or_not_found
from core.models import Salesperson
from finance.models import CommissionPayment, Invoice, InvoicePayment, Quote
from finance.serializers import (
    CommissionPaymentSerializer,
    CommissionSummarySerializer,
    InvoicePaymentSerializer,
    InvoiceSerializer,
    QuoteLineItemSerializer,
    QuoteSerializer,
)
from finance.services import (
    add_quote_line_item,
    can_user_modify_quote,
    create_commission_payment,
    create_invoice,
    create_quote,
    delete_commission_payment,
    delete_invoice_payment,
    delete_quote,
    get_commission_summary,
    get_invoice_by_id,
    get_quote_by_id,
    record_invoice_payment,
    remove_quote_line_item,
    update_commission_payment,
    update_invoice,
    update_quote,
    update_quote_line_item,
)
from orders.serializers import StatusChangeSerializer


class QuoteViewSet(viewsets.ModelViewSet):
    serializer_class = QuoteSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.QUOTES
    permission_action_map = {
        "change_status": Permission.WRITE,
        "line_items": Permission.VIEW,
        "add_line_item": Permission.WRITE,
        "line_item_detail": Permission.WRITE,
    }

    def get_queryset(self):
        queryset = Quote.objects.select_related("salesperson", "organization").prefetch_related("line_items")
        queryset = scope_queryset_for_user(queryset, self.request.user, Resource.QUOTES, ("salesperson",))

        status_filter = self.request.query_params.get("status")
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        organization_id = self.request.query_params.get("organization_id")
        if organization_id:
            queryset = queryset.filter(organization_id=organization_id)
        return queryset

    def get_object(self):
        quote = get_quote_by_id(self.kwargs["pk"])
        self.check_object_permissions(self.request, quote)
        user = self.request.user
        if not can_view_all(user, Resource.QUOTES) and quote.salesperson_id != user.pk:
            raise ForbiddenError("You do not have access to this quote")
        return quote

    def _require_modify(self, quote):
        if not can_user_modify_quote(quote, self.request.user):
            raise ForbiddenError("You can only modify your own quotes")

    def perform_create(self, serializer):
        data = dict(serializer.validated_data)
        line_items = data.pop("line_items", [])
        serializer.instance = create_quote(
            data,
            line_items,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_update(self, serializer):
        self._require_modify(serializer.instance)
        serializer.instance = update_quote(
            serializer.instance.pk,
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_destroy(self, instance):
        delete_quote(instance.pk, self.request.user, request_id=get_request_id(self.request))

    @action(detail=True, methods=["post", "patch"], url_path="status")
    def change_status(self, request, pk=None):
        quote = self.get_object()
        self._require_modify(quote)
        serializer = StatusChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        quote = update_quote(
            quote.pk,
            {"status": serializer.validated_data["status"]},
            request.user,
            request_id=get_request_id(request),
        )
        return Response(self.get_serializer(quote).data)

    @action(detail=True, methods=["get"], url_path="line-items", pagination_class=None)
    def line_items(self, request, pk=None):
        quote = self.get_object()
        return Response(QuoteLineItemSerializer(quote.line_items.all(), many=True).data)

    @line_items.mapping.post
    def add_line_item(self, request, pk=None):
        quote = self.get_object()
        self._require_modify(quote)
        serializer = QuoteLineItemSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item = add_quote_line_item(quote, serializer.validated_data, request.user, request_id=get_request_id(request))
        return Response(QuoteLineItemSerializer(item).data, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["patch", "delete"], url_path=r"line-items/(?P<item_id>[^/.]+)")
    def line_item_detail(self, request, pk=None, item_id=None):
        quote = self.get_object()
        self._require_modify(quote)
        item = get_or_not_found(quote.line_items.all(), "Quote line item", item_id)

        if request.method == "DELETE":
            remove_quote_line_item(item, request.user, request_id=get_request_id(request))
            return Response(status=status.HTTP_204_NO_CONTENT)

        serializer = QuoteLineItemSerializer(item, data=request.data, partial=True)
        serializer.is_valid(raise_exception=True)
        item = update_quote_line_item(item, serializer.validated_data, request.user, request_id=get_request_id(request))
        return Response(QuoteLineItemSerializer(item).data)


class InvoiceViewSet(viewsets.ModelViewSet):
    serializer_class = InvoiceSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.FINANCE
    permission_action_map = {
        "payments": Permission.VIEW,
        "add_payment": Permission.WRITE,
    }

    def get_queryset(self):
        queryset = Invoice.objects.select_related("order", "salesperson")
        queryset = scope_queryset_for_user(queryset, self.request.user, Resource.FINANCE, ("salesperson",))

        status_filter = self.request.query_params.get("status")
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        order_id = self.request.query_params.get("order_id")
        if order_id:
            queryset = queryset.filter(order_id=order_id)
        return queryset

    def get_object(self):
        invoice = get_invoice_by_id(self.kwargs["pk"])
        self.check_object_permissions(self.request, invoice)
        user = self.request.user
        if not can_view_all(user, Resource.FINANCE) and invoice.salesperson_id != user.pk:
            raise ForbiddenError("You do not have access to this invoice")
        return invoice

    def perform_create(self, serializer):
        serializer.instance = create_invoice(
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_update(self, serializer):
        serializer.instance = update_invoice(
            serializer.instance,
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    @action(detail=True, methods=["get"], url_path="payments", pagination_class=None)
    def payments(self, request, pk=None):
        invoice = self.get_object()
        return Response(InvoicePaymentSerializer(invoice.payments.all(), many=True).data)

    @payments.mapping.post
    def add_payment(self, request, pk=None):
        invoice = self.get_object()
        serializer = InvoicePaymentSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        payment = record_invoice_payment(
            invoice,
            serializer.validated_data,
            request.user,
            request_id=get_request_id(request),
        )
        return Response(InvoicePaymentSerializer(payment).data, status=status.HTTP_201_CREATED)


class InvoicePaymentViewSet(
    mixins.RetrieveModelMixin,
    mixins.DestroyModelMixin,
    viewsets.GenericViewSet,
):
    queryset = InvoicePayment.objects.select_related("invoice")
    serializer_class = InvoicePaymentSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.FINANCE
    # Payment removal only needs write access.
    permission_action_map = {"destroy": Permission.WRITE}

    def get_object(self):
        payment = get_or_not_found(self.get_queryset(), "Invoice payment", self.kwargs["pk"])
        self.check_object_permissions(self.request, payment)
        return payment

    def perform_destroy(self, instance):
        delete_invoice_payment(instance, self.request.user, request_id=get_request_id(self.request))


class CommissionPaymentViewSet(viewsets.ModelViewSet):
    serializer_class = CommissionPaymentSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.FINANCE
    permission_action_map = {"destroy": Permission.WRITE}

    def get_queryset(self):
        queryset = CommissionPayment.objects.select_related("salesperson__user", "processed_by")
        salesperson_id = self.request.query_params.get("salesperson_id")
        if salesperson_id:
            queryset = queryset.filter(salesperson_id=salesperson_id)
        period = self.request.query_params.get("period")
        if period:
            queryset = queryset.filter(period=period)
        return queryset

    def perform_create(self, serializer):
        serializer.instance = create_commission_payment(
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_update(self, serializer):
        serializer.instance = update_commission_payment(
            serializer.instance,
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_destroy(self, instance):
        delete_commission_payment(instance, self.request.user, request_id=get_request_id(self.request))


class CommissionSummaryView(APIView):
    permission_classes = [IsAuthenticated]

    def get(self, request, salesperson_id):
        salesperson = get_or_not_found(Salesperson.objects.select_related("user"), "Salesperson", salesperson_id)

        is_own = salesperson.user_id == request.user.pk
        if not is_own and not user_has_permission(request.user, Resource.FINANCE, Permission.VIEW):
            raise ForbiddenError("You can only view your own commission summary")

        summary = get_commission_summary(salesperson, request.query_params.get("period"))
        return Response(CommissionSummarySerializer(summary).data)
