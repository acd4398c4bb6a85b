from rest_framework.routers import DefaultRouter

from apps.engineers.views import EngineerViewSet

router = DefaultRouter()
router.register("engineers", EngineerViewSet, basename="engineer")

urlpatterns = router.urls
