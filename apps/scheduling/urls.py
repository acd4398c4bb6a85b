from django.urls import path

from apps.scheduling.views import DistanceMatrixView, EngineerRecommendationView, SchedulingConflictView

urlpatterns = [
    path("recommendations/", EngineerRecommendationView.as_view(), name="scheduling-recommendations"),
    path("conflicts/", SchedulingConflictView.as_view(), name="scheduling-conflicts"),
    path("distances/", DistanceMatrixView.as_view(), name="scheduling-distances"),
]
