from rest_framework.routers import DefaultRouter

from . import views

router = DefaultRouter()
router.register("orders", views.OrderViewSet, basename="order")
router.register("processings", views.OrderProcessingViewSet, basename="processing")
router.register("transfers", views.WeightTransferViewSet, basename="transfer")
router.register("audit-log", views.AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls
