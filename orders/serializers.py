from rest_framework import serializers

from .models import Order


class OrderItemInputSerializer(serializers.Serializer):
    product_id = serializers.CharField(max_length=64, required=False, allow_null=True, allow_blank=True)
    product_name = serializers.CharField(max_length=255)
    quantity = serializers.IntegerField(min_value=1)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)


class CheckoutSerializer(serializers.Serializer):
    name = serializers.CharField(max_length=100, error_messages={"blank": "Name is required"})
    email = serializers.EmailField(max_length=255, error_messages={"invalid": "Invalid email"})
    phone = serializers.CharField(
        min_length=10,
        max_length=15,
        error_messages={"min_length": "Phone number must be at least 10 digits"},
    )
    address = serializers.CharField(
        min_length=5, max_length=500, error_messages={"min_length": "Address is required"}
    )
    city = serializers.CharField(min_length=2, max_length=100, error_messages={"min_length": "City is required"})
    notes = serializers.CharField(max_length=500, required=False, allow_blank=True, default="")
    payment_method = serializers.ChoiceField(
        choices=Order.PaymentMethod.choices, default=Order.PaymentMethod.MPESA
    )
    items = OrderItemInputSerializer(many=True, allow_empty=False)


def first_error(errors) -> str:
    """Pull a single human readable message out of serializer errors."""
    if isinstance(errors, dict):
        for field, value in errors.items():
            message = first_error(value)
            if message:
                return message if field == "non_field_errors" else f"{field}: {message}"
    elif isinstance(errors, list):
        for value in errors:
            message = first_error(value)
            if message:
                return message
    elif errors:
        return str(errors)
    return ""
