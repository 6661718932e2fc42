"""Django app configuration for django-orders."""

from django.apps import AppConfig


class DjangoOrdersConfig(AppConfig):
    """App configuration for django-orders."""

    name = 'django_orders'
    verbose_name = 'Django Orders'
    default_auto_field = 'django.db.models.BigAutoField'
