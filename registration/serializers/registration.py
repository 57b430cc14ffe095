import bleach
from rest_framework import serializers


class SubjectSerializer(serializers.Serializer):
    subjectId = serializers.IntegerField(min_value=1)


class PaymentCompleteSerializer(serializers.Serializer):
    subjectId = serializers.IntegerField(min_value=1)
    paymentReference = serializers.CharField(required=False, allow_blank=True, max_length=128)
    process = serializers.BooleanField(required=False, default=True)

    def validate_paymentReference(self, v):
        return bleach.clean((v or '').strip(), strip=True)


class ResetStuckSerializer(serializers.Serializer):
    subjectId = serializers.IntegerField(required=False, allow_null=True, min_value=1)
    olderThanMinutes = serializers.IntegerField(required=False, allow_null=True, min_value=0)


class CircuitResetSerializer(serializers.Serializer):
    operation = serializers.CharField(required=False, allow_blank=True, max_length=128)
