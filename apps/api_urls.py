from django.urls import include, path
from rest_framework_simplejwt.views import TokenObtainPairView, TokenRefreshView

urlpatterns = [
    path("auth/token/", TokenObtainPairView.as_view(), name="token-obtain-pair"),
    path("auth/token/refresh/", TokenRefreshView.as_view(), name="token-refresh"),
    path("", include("apps.clients.urls")),
    path("", include("apps.engineers.urls")),
    path("", include("apps.orders.urls")),
    path("scheduling/", include("apps.scheduling.urls")),
]
