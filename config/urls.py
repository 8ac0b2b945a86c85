from django.contrib import admin
from django.urls import include, path

from core.views import health, readyz

urlpatterns = [
    path("admin/", admin.site.urls),
    path("health/", health, name="health"),
    path("readyz/", readyz, name="readyz"),
    path("api/v1/", include("core.urls")),
    path("api/v1/", include("inventory.urls")),
    path("api/v1/", include("sales.urls")),
]
