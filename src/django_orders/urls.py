"""URL configuration for the orders JSON API."""

from django.urls import path

from . import views

app_name = "django_orders"

urlpatterns = [
    path("orders/", views.orders, name="orders"),
    path("orders/<str:order_id>/", views.order_detail, name="order_detail"),
    path("orders/<str:order_id>/cancel/", views.order_cancel, name="order_cancel"),
    path("orders/<str:order_id>/payment/", views.order_payment, name="order_payment"),
    path("payments/verify/", views.payment_verify, name="payment_verify"),
    path("payments/webhook/", views.payment_webhook, name="payment_webhook"),
]
