from django.urls import path

from .views import CartItemDetailView, CartItemsView, CartView

app_name = "cart"

urlpatterns = [
    path("", CartView.as_view(), name="cart"),  # GET state / DELETE clear
    path("items/", CartItemsView.as_view(), name="cart-items"),
    path("items/<int:product_id>/", CartItemDetailView.as_view(), name="cart-item-detail"),
]
