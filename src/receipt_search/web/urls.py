"""
URL configuration for the precision search API.
"""

from django.contrib import admin
from django.urls import path

from . import views

urlpatterns = [
    path("admin/", admin.site.urls),
    path(
        "api/precision-search/trigger",
        views.api_trigger_precision_search,
        name="precision_search_trigger",
    ),
    path(
        "api/precision-search/status",
        views.api_precision_search_status,
        name="precision_search_status",
    ),
    path(
        "api/precision-search/stats",
        views.api_precision_search_stats,
        name="precision_search_stats",
    ),
    path("api/mail-sync/events", views.api_mail_sync_event, name="mail_sync_event"),
]
