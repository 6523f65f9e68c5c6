from rest_framework.routers import DefaultRouter

from orders.views import ManufacturingJobViewSet, OrderViewSet

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="order")
router.register(r"manufacturing", ManufacturingJobViewSet, basename="manufacturing")

urlpatterns = router.urls
