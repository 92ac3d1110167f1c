import csv

from django.contrib import admin
from django.http import HttpResponse

from .models import (
    AllocationSummary, Billing, Client, Geography, HierarchyGeneration, Invoice, Project, Resource,
    ResourceAssignment, Subproject, SubprojectProductivity, SubprojectRequestType, UploadRun,
)
from .signals import rename_entity


class RenamePropagatingAdmin(admin.ModelAdmin):
    """Name edits made in the admin go through rename_entity so denormalized copies follow"""

    def save_model(self, request, obj, form, change):
        if change and 'name' in form.changed_data:
            new_name = obj.name
            obj.name = form.initial.get('name', obj.name)
            other_fields = [field for field in form.changed_data if field != 'name']
            if other_fields:
                obj.save(update_fields=other_fields)
            rename_entity(obj, new_name)
        else:
            super().save_model(request, obj, form, change)


@admin.register(HierarchyGeneration)
class HierarchyGenerationAdmin(admin.ModelAdmin):
    list_display = ['version', 'status', 'is_active', 'upload_run', 'created_at', 'activated_at']
    list_filter = ['status', 'is_active']
    readonly_fields = ['created_at', 'activated_at']


@admin.register(Geography)
class GeographyAdmin(RenamePropagatingAdmin):
    list_display = ['name', 'generation', 'status', 'created_at']
    list_filter = ['status', 'generation__is_active']
    search_fields = ['name']


@admin.register(Client)
class ClientAdmin(RenamePropagatingAdmin):
    list_display = ['name', 'geography_name', 'status']
    list_filter = ['status', 'geography_name']
    search_fields = ['name', 'geography_name']
    raw_id_fields = ['geography']


@admin.register(Project)
class ProjectAdmin(RenamePropagatingAdmin):
    list_display = ['name', 'client_name', 'geography_name', 'flatrate', 'status']
    list_filter = ['status', 'geography_name']
    search_fields = ['name', 'client_name']
    raw_id_fields = ['client', 'geography']


class SubprojectRequestTypeInline(admin.TabularInline):
    model = SubprojectRequestType
    extra = 0


class SubprojectProductivityInline(admin.TabularInline):
    model = SubprojectProductivity
    fk_name = 'subproject'
    extra = 0
    exclude = ['project']


@admin.register(Subproject)
class SubprojectAdmin(RenamePropagatingAdmin):
    list_display = ['name', 'project_name', 'client_name', 'geography_name', 'flatrate', 'status']
    list_filter = ['status', 'geography_name']
    search_fields = ['name', 'project_name', 'client_name']
    raw_id_fields = ['project', 'client', 'geography']
    inlines = [SubprojectRequestTypeInline, SubprojectProductivityInline]


@admin.register(SubprojectRequestType)
class SubprojectRequestTypeAdmin(admin.ModelAdmin):
    list_display = ['subproject', 'name', 'rate']
    list_filter = ['name']
    search_fields = ['subproject__name']
    raw_id_fields = ['subproject']


@admin.register(SubprojectProductivity)
class SubprojectProductivityAdmin(admin.ModelAdmin):
    list_display = ['subproject', 'project', 'level', 'base_rate']
    list_filter = ['level']
    search_fields = ['subproject__name', 'project__name']
    raw_id_fields = ['subproject', 'project']


class ResourceAssignmentInline(admin.TabularInline):
    model = ResourceAssignment
    extra = 0
    raw_id_fields = ['subproject']


@admin.register(Resource)
class ResourceAdmin(admin.ModelAdmin):
    list_display = ['name', 'email', 'role', 'status']
    list_filter = ['status', 'role']
    search_fields = ['name', 'email']
    inlines = [ResourceAssignmentInline]


@admin.register(AllocationSummary)
class AllocationSummaryAdmin(admin.ModelAdmin):
    list_display = [
        'allocation_date', 'geography_name', 'client_name', 'project_name', 'subproject_name',
        'feed', 'request_type', 'count'
    ]
    list_filter = ['feed', 'year', 'month', 'request_type', 'geography_type']
    search_fields = ['subproject_name', 'project_name', 'client_name']
    date_hierarchy = 'allocation_date'
    raw_id_fields = ['geography', 'client', 'project', 'subproject', 'upload_run']


@admin.register(Billing)
class BillingAdmin(admin.ModelAdmin):
    list_display = [
        'resource', 'subproject_name', 'request_type', 'month', 'year', 'hours', 'rate',
        'costing', 'total_amount', 'billable_status'
    ]
    list_filter = ['year', 'month', 'billable_status', 'request_type', 'productivity_level']
    search_fields = ['resource__name', 'resource__email', 'subproject_name', 'project_name']
    readonly_fields = ['costing', 'total_amount', 'created_at', 'updated_at']
    raw_id_fields = ['resource', 'geography', 'client', 'project', 'subproject']

    actions = ['export_as_csv']

    def export_as_csv(self, request, queryset):
        """Export selected billing records to CSV"""
        response = HttpResponse(content_type='text/csv')
        response['Content-Disposition'] = 'attachment; filename="billing_export.csv"'

        writer = csv.writer(response)
        writer.writerow([
            'Resource', 'Email', 'Geography', 'Client', 'Process Type', 'Location', 'Request Type',
            'Month', 'Year', 'Hours', 'Rate', 'Flat Rate', 'Costing', 'Total Amount', 'Billable Status'
        ])

        for billing in queryset.select_related('resource'):
            writer.writerow([
                billing.resource.name,
                billing.resource.email,
                billing.geography_name,
                billing.client_name,
                billing.project_name,
                billing.subproject_name,
                billing.request_type,
                billing.month,
                billing.year,
                billing.hours,
                f"{billing.rate:.2f}",
                f"{billing.flatrate:.2f}",
                f"{billing.costing:.2f}",
                f"{billing.total_amount:.2f}",
                billing.billable_status,
            ])

        return response

    export_as_csv.short_description = "Export selected to CSV"


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ['invoice_number', 'month', 'year', 'record_count', 'total_billing', 'created_at']
    list_filter = ['year', 'month']
    search_fields = ['invoice_number']

    def has_change_permission(self, request, obj=None):
        return False


@admin.register(UploadRun)
class UploadRunAdmin(admin.ModelAdmin):
    list_display = ['file_name', 'kind', 'mode', 'status', 'rows_read', 'rows_written', 'created_at']
    list_filter = ['kind', 'status', 'dry_run']
    search_fields = ['file_name', 'uploaded_by']
    readonly_fields = ['created_at', 'finished_at']
