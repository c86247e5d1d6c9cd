"""Reports URLs."""
from django.urls import include, path
from rest_framework.routers import DefaultRouter

from .views import AmendmentViewSet, ReportViewSet

router = DefaultRouter()
router.register(r'reports', ReportViewSet, basename='report')
router.register(r'amendments', AmendmentViewSet, basename='amendment')

urlpatterns = [
    path('', include(router.urls)),
]
