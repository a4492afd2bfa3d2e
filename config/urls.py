from django.urls import include, path

urlpatterns = [
    path("api/", include("mpesa.urls")),
    path("api/", include("orders.urls")),
]
