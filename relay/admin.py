from django.contrib import admin
from django.utils.html import format_html
from import_export.admin import ImportExportModelAdmin
from import_export import resources
from .models import OutboundEmail


class OutboundEmailResource(resources.ModelResource):
    class Meta:
        model = OutboundEmail
        fields = (
            'created_at',
            'kind',
            'subject',
            'recipients',
            'status',
            'error',
        )
        export_order = fields


@admin.register(OutboundEmail)
class OutboundEmailAdmin(ImportExportModelAdmin):
    resource_class = OutboundEmailResource
    list_display = ('created_at', 'kind', 'subject', 'recipient_count', 'status_colored')
    list_filter = ('kind', 'status', 'created_at')
    search_fields = ('subject', 'recipients', 'error')
    date_hierarchy = 'created_at'
    readonly_fields = ('kind', 'recipients', 'subject', 'status', 'error', 'created_at')

    def status_colored(self, obj):
        colors = {
            'SENT': 'green',
            'FAILED': 'red',
        }
        color = colors.get(obj.status, 'black')
        return format_html('<span style="color: {};">{}</span>', color, obj.get_status_display())
    status_colored.short_description = "Status"

    def recipient_count(self, obj):
        return obj.recipient_count
    recipient_count.short_description = "Recipients"

    def has_add_permission(self, request):
        return False
