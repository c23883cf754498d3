from rest_framework import serializers

from .models import Payment

PHONE_REGEX = r'^(\+?254|0)?[17]\d{8}$'
PHONE_ERROR = 'Phone number must be in format 254XXXXXXXXX or 07XXXXXXXX'


class InitiatePaymentSerializer(serializers.Serializer):
    phone_number = serializers.RegexField(PHONE_REGEX, error_messages={'invalid': PHONE_ERROR})
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=1, max_value=150000)
    campaign_id = serializers.IntegerField(required=False, allow_null=True)
    campaign_data = serializers.DictField(required=False, allow_null=True)
    description = serializers.CharField(max_length=500, required=False, allow_blank=True, allow_null=True)


class PaymentIdSerializer(serializers.Serializer):
    payment_id = serializers.IntegerField()


class QueryStatusSerializer(serializers.Serializer):
    payment_id = serializers.IntegerField(required=False)
    checkout_request_id = serializers.CharField(min_length=10, max_length=100, required=False)

    def validate(self, attrs):
        if not attrs.get('payment_id') and not attrs.get('checkout_request_id'):
            raise serializers.ValidationError('Provide payment_id or checkout_request_id.')
        return attrs


class VerifyReceiptSerializer(serializers.Serializer):
    receipt_number = serializers.CharField(max_length=30, trim_whitespace=True)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=1, max_value=150000)
    phone_number = serializers.RegexField(PHONE_REGEX, error_messages={'invalid': PHONE_ERROR})
    payment_id = serializers.IntegerField(required=False, allow_null=True)
    campaign_id = serializers.IntegerField(required=False, allow_null=True)
    campaign_data = serializers.DictField(required=False, allow_null=True)


class ApproveSerializer(serializers.Serializer):
    note = serializers.CharField(max_length=500, required=False, allow_blank=True, allow_null=True)


class RejectSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=500)


class PaymentSerializer(serializers.ModelSerializer):
    reference = serializers.CharField(source='payment_reference', read_only=True)
    mpesa_receipt = serializers.CharField(read_only=True)
    can_retry_stk = serializers.BooleanField(read_only=True)
    is_awaiting_approval = serializers.BooleanField(read_only=True)
    campaign = serializers.SerializerMethodField()

    class Meta:
        model = Payment
        fields = [
            'id', 'reference', 'amount', 'currency', 'status', 'status_message',
            'mpesa_receipt', 'payment_method', 'payment_gateway', 'verification_method',
            'phone_number', 'stk_push_attempts', 'can_retry_stk', 'is_awaiting_approval',
            'initiated_at', 'processed_at', 'completed_at', 'failed_at',
            'campaign', 'metadata',
        ]

    def get_campaign(self, obj):
        if obj.campaign is None:
            return None
        return {'id': obj.campaign.id, 'name': obj.campaign.name, 'status': obj.campaign.status}
