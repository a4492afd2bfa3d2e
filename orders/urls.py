from django.urls import path
from .views import CheckoutView, PayOnDeliveryView

urlpatterns = [
    path("orders/checkout/", CheckoutView.as_view(), name="orders-checkout"),
    path("orders/<uuid:pk>/pay-on-delivery/", PayOnDeliveryView.as_view(), name="orders-pay-on-delivery"),
]
