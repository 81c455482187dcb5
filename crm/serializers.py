"""
Inbound field validation for the web form and manual CRM entry events.
"""
from django.conf import settings
from rest_framework import serializers

from crm.services.normalization import normalize_fields, normalize_phone
from crm.services.validation import INVALID_PHONE, MISSING_REQUIRED_FIELD, LeadValidationError


class PhoneField(serializers.CharField):
    """Phone as received; must carry at least ``PHONE_MIN_DIGITS`` digits."""

    default_error_messages = {
        'invalid_phone': 'Invalid phone number: {value}. Expected at least {min_digits} digits.',
    }

    def to_internal_value(self, data):
        value = super().to_internal_value(data)
        min_digits = getattr(settings, 'PHONE_MIN_DIGITS', 10)
        if len(normalize_phone(value)) < min_digits:
            self.fail('invalid_phone', value=value, min_digits=min_digits)
        return value


class WebFormSerializer(serializers.Serializer):
    name = serializers.CharField()
    phone = PhoneField()
    state = serializers.CharField(required=False, allow_blank=True, default='')


class ManualEntrySerializer(serializers.Serializer):
    senderName = serializers.CharField()
    waId = PhoneField()
    remark = serializers.CharField(required=False, allow_blank=True, default='')
    location = serializers.CharField(required=False, allow_blank=True, default='')
    product = serializers.CharField(required=False, allow_blank=True, default='CGI')
    source = serializers.CharField(required=False, allow_blank=True, default='Manual Entry')
    team = serializers.CharField(required=False, allow_blank=True, default='Not Assigned')


def validated_fields(serializer_class, params: dict, handler: str) -> dict:
    """
    Run ``serializer_class`` over ``params``.

    Raises:
        LeadValidationError: for the first invalid field, carrying the handler
    """
    serializer = serializer_class(data=params)
    if serializer.is_valid():
        return normalize_fields(serializer.validated_data)

    field, messages = next(iter(serializer.errors.items()))
    codes = {getattr(message, 'code', '') for message in messages}
    raise LeadValidationError(
        f"{field}: {messages[0]}",
        code=INVALID_PHONE if 'invalid_phone' in codes else MISSING_REQUIRED_FIELD,
        field=field,
        handler=handler,
    )
