from django.urls import path
from rest_framework.routers import DefaultRouter

from finance.views import (
    CommissionPaymentViewSet,
    CommissionSummaryView,
    InvoicePaymentViewSet,
    InvoiceViewSet,
    QuoteViewSet,
)

router = DefaultRouter()
router.register(r"quotes", QuoteViewSet, basename="quote")
router.register(r"invoices", InvoiceViewSet, basename="invoice")
router.register(r"invoice-payments", InvoicePaymentViewSet, basename="invoice-payment")
router.register(r"commission-payments", CommissionPaymentViewSet, basename="commission-payment")

urlpatterns = router.urls + [
    path(
        "commissions/summary/<str:salesperson_id>/",
        CommissionSummaryView.as_view(),
        name="commission-summary",
    ),
]
