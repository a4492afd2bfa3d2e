from django.urls import path
from .views import StkPushView, MpesaCallbackView, MpesaQueryView

urlpatterns = [
    path("mpesa/stk-push/", StkPushView.as_view(), name="mpesa-stk-push"),
    path("mpesa/callback/", MpesaCallbackView.as_view(), name="mpesa-callback"),
    path("mpesa/query/", MpesaQueryView.as_view(), name="mpesa-query"),
]
