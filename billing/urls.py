"""
URL configuration for billing app
"""
from django.urls import path
from billing.views import allocation_views, billing_views, upload_views

app_name = 'billing'

urlpatterns = [
    # Upload endpoints
    path('api/uploads/hierarchy/', upload_views.hierarchy_upload, name='hierarchy_upload'),
    path('api/uploads/allocations/', upload_views.allocation_upload, name='allocation_upload'),
    path('api/uploads/resources/', upload_views.resource_upload, name='resource_upload'),
    path('api/uploads/', upload_views.list_uploads, name='list_uploads'),
    path('api/uploads/<uuid:upload_id>/', upload_views.upload_detail, name='upload_detail'),

    # Allocation report endpoints
    path('api/allocations/', allocation_views.delete_allocation_data, name='delete_allocations'),
    path('api/allocations/summary/', allocation_views.allocation_summary, name='allocation_summary'),
    path('api/allocations/summary/export/', allocation_views.allocation_summary_export,
         name='allocation_summary_export'),
    path('api/allocations/upload-history/', allocation_views.upload_history, name='upload_history'),
    path('api/allocations/latest-upload/', allocation_views.latest_upload, name='latest_upload'),

    # Billing and invoice endpoints
    path('api/billing/', billing_views.billing_upsert, name='billing_upsert'),
    path('api/billing/bulk-update/', billing_views.billing_bulk_update, name='billing_bulk_update'),
    path('api/billing/totals/', billing_views.billing_totals, name='billing_totals'),
    path('api/billing/rate/', billing_views.rate_lookup, name='rate_lookup'),
    path('api/invoices/', billing_views.invoice_create, name='invoice_create'),
]
