from rest_framework import serializers


class StripeIntentSerializer(serializers.Serializer):
    order_id = serializers.IntegerField(min_value=1)
    currency = serializers.CharField(max_length=3, required=False, default='usd')

    def validate_currency(self, value):
        return value.lower()


class RazorpayVerifySerializer(serializers.Serializer):
    """
    Checkout result posted back by the Razorpay client flow.

    Accepts both the gateway's own field names and the camelCase ``orderId``.
    """
    order_id = serializers.IntegerField(min_value=1, required=False)
    orderId = serializers.IntegerField(min_value=1, required=False, write_only=True)
    razorpay_order_id = serializers.CharField(max_length=255)
    razorpay_payment_id = serializers.CharField(max_length=255)
    razorpay_signature = serializers.CharField(max_length=255)

    def validate(self, attrs):
        alias = attrs.pop('orderId', None)
        attrs['order_id'] = attrs.get('order_id') or alias
        if attrs['order_id'] is None:
            raise serializers.ValidationError({'order_id': 'Order ID is required'})
        return attrs


class RazorpayOrderSerializer(serializers.Serializer):
    order_id = serializers.IntegerField(min_value=1)
    currency = serializers.CharField(max_length=3, required=False, default='INR')

    def validate_currency(self, value):
        return value.upper()
