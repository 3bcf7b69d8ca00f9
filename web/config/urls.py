from django.urls import include, path

urlpatterns = [
    path("api/cart/", include("apps.cart.urls")),
    path("", include("apps.monitoring.urls")),
]
