from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import (
    AuditLogViewSet,
    NotificationViewSet,
    OrganizationViewSet,
    SalespersonViewSet,
    healthz,
    readyz,
)

router = DefaultRouter()
router.register(r"organizations", OrganizationViewSet, basename="organization")
router.register(r"salespeople", SalespersonViewSet, basename="salesperson")
router.register(r"notifications", NotificationViewSet, basename="notification")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("healthz/", healthz, name="healthz"),
    path("readyz/", readyz, name="readyz"),
]
