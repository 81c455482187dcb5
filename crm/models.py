"""
Data models for Lead Sync Gateway.

The ``Lead`` table is the document store: one row per phone identity, with an
append-only ``history`` list as the audit trail.
"""
from django.db import models


class Lead(models.Model):
    """
    A prospective customer tracked through the sales funnel.
    Identified by ``phone_normalized``; ``business_id`` is the human-facing code.
    """

    class Stage(models.TextChoices):
        NOT_ASSIGNED = 'Not Assigned', 'Not Assigned'
        AGENT_WORKING = 'agent_working', 'Agent Working'
        SALES_REVIEW = 'sales_review', 'Sales Review'
        PAYMENT_PENDING = 'payment_pending', 'Payment Pending'
        DELIVERY = 'delivery', 'Delivery'
        COMPLETED = 'completed', 'Completed'
        DEAD = 'dead', 'Dead'

    business_id = models.CharField(max_length=32, unique=True)
    phone = models.CharField(max_length=32)
    phone_normalized = models.CharField(max_length=32, unique=True, db_index=True)
    country_iso = models.CharField(max_length=2, blank=True, default='')
    country_code = models.CharField(max_length=8, blank=True, default='')
    local_number = models.CharField(max_length=32, blank=True, default='')

    name = models.CharField(max_length=255, blank=True, default='')
    email = models.CharField(max_length=255, blank=True, default='')

    stage = models.CharField(
        max_length=32,
        choices=Stage.choices,
        default=Stage.NOT_ASSIGNED,
        db_index=True
    )
    agent = models.CharField(max_length=255, blank=True, default=Stage.NOT_ASSIGNED)
    status = models.CharField(max_length=255, blank=True, default='Lead')

    location = models.CharField(max_length=255, blank=True, default='')
    product = models.CharField(max_length=255, blank=True, default='CGI')
    source = models.CharField(max_length=255, blank=True, default='')
    message = models.TextField(blank=True, default='')
    remark = models.TextField(blank=True, default='')
    registration_number = models.CharField(max_length=64, blank=True, default='')

    rating = models.CharField(max_length=64, blank=True, default='')
    team_2 = models.CharField(max_length=255, blank=True, default='')
    status_2 = models.CharField(max_length=255, blank=True, default='')
    remark_2 = models.TextField(blank=True, default='')
    community_status = models.CharField(max_length=64, blank=True, default='')

    sheet_row = models.PositiveIntegerField(null=True, blank=True)
    history = models.JSONField(default=list, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"{self.business_id} ({self.phone_normalized}) - {self.stage}"


class LeadCounter(models.Model):
    """Monotonic sequence backing business id generation."""

    name = models.CharField(max_length=64, primary_key=True)
    value = models.PositiveBigIntegerField(default=0)
    updated_at = models.DateTimeField(auto_now=True)

    def __str__(self):
        return f"{self.name}={self.value}"


class SyncFailure(models.Model):
    """
    Persisted record of a backend write that could not be completed.
    Written best-effort for human follow-up; never read back by the pipeline.
    """

    source = models.CharField(max_length=64, db_index=True)
    phone = models.CharField(max_length=32, blank=True, default='')
    payload = models.JSONField(default=dict, blank=True)
    error = models.TextField(blank=True, default='')
    retry_count = models.PositiveIntegerField(default=0)
    resolved = models.BooleanField(default=False)
    created_at = models.DateTimeField(auto_now_add=True, db_index=True)

    class Meta:
        ordering = ['-created_at']

    def __str__(self):
        return f"SyncFailure {self.id} - {self.source} ({self.phone})"
