from rest_framework.routers import DefaultRouter

from apps.clients.views import ClientBlockedDateViewSet, ClientViewSet

router = DefaultRouter()
router.register("clients", ClientViewSet, basename="client")
router.register("blocked-dates", ClientBlockedDateViewSet, basename="client-blocked-date")

urlpatterns = router.urls
