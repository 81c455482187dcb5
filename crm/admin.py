"""
Django admin configuration for crm app.
"""
from django.contrib import admin
from crm.models import Lead, SyncFailure


@admin.register(Lead)
class LeadAdmin(admin.ModelAdmin):
    """Leads are written by the pipeline only; the admin is for inspection."""

    list_display = ('business_id', 'phone_normalized', 'name', 'stage', 'agent', 'status', 'updated_at')
    list_filter = ('stage', 'source')
    search_fields = ('business_id', 'phone_normalized', 'name')
    readonly_fields = ('business_id', 'phone', 'phone_normalized', 'country_iso', 'country_code',
                       'local_number', 'sheet_row', 'history', 'created_at', 'updated_at')

    fieldsets = (
        ('Identity', {
            'fields': ('business_id', 'phone', 'phone_normalized', 'country_iso', 'country_code',
                       'local_number')
        }),
        ('Pipeline', {
            'fields': ('stage', 'agent', 'status', 'rating')
        }),
        ('Content', {
            'fields': ('name', 'email', 'location', 'product', 'source', 'message', 'remark',
                       'registration_number', 'community_status')
        }),
        ('Second pass', {
            'fields': ('team_2', 'status_2', 'remark_2'),
            'classes': ('collapse',)
        }),
        ('Audit', {
            'fields': ('sheet_row', 'history', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    def has_add_permission(self, request):
        """Leads are created by inbound events only."""
        return False

    def has_delete_permission(self, request, obj=None):
        """Leads are never deleted; ``dead`` is a stage."""
        return False


@admin.register(SyncFailure)
class SyncFailureAdmin(admin.ModelAdmin):
    list_display = ('id', 'source', 'phone', 'retry_count', 'resolved', 'created_at')
    list_filter = ('resolved', 'source')
    search_fields = ('phone',)
    readonly_fields = ('source', 'phone', 'payload', 'error', 'retry_count', 'created_at')

    def has_add_permission(self, request):
        return False
