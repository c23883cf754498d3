from django.contrib import admin, messages

from . import services
from .exceptions import PaymentError
from .models import CheckoutRequest, Payment

REJECT_REASON = 'receipt not found'


class CheckoutRequestInline(admin.TabularInline):
    model = CheckoutRequest
    extra = 0
    can_delete = False
    readonly_fields = ('checkout_request_id', 'merchant_request_id', 'created_at')

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    list_display = (
        'payment_reference',
        'advertiser',
        'phone_number',
        'amount',
        'status',
        'verification_method',
        'mpesa_receipt_number',
        'requires_admin_approval',
        'stk_push_attempts',
        'created_at',
    )
    list_filter = (
        'status',
        'requires_admin_approval',
        'verification_method',
        'created_at',
    )
    search_fields = (
        'payment_reference',
        'phone_number',
        'mpesa_receipt_number',
        'gateway_transaction_id',
    )
    # Status only moves through the actions below
    readonly_fields = (
        'status', 'status_message', 'verification_method', 'requires_admin_approval',
        'payment_reference', 'gateway_reference', 'gateway_transaction_id',
        'mpesa_receipt_number', 'stk_push_attempts', 'last_stk_push_at', 'last_query_at',
        'admin_approved_at', 'admin_approved_by', 'payment_details',
        'initiated_at', 'processed_at', 'completed_at', 'failed_at', 'created_at', 'updated_at',
    )
    fieldsets = (
        ('Basic Information', {
            'fields': ('payment_reference', 'advertiser', 'campaign', 'amount', 'currency', 'phone_number')
        }),
        ('Status', {
            'fields': ('status', 'status_message', 'verification_method', 'requires_admin_approval',
                       'admin_approved_at', 'admin_approved_by')
        }),
        ('M-Pesa Details', {
            'fields': ('gateway_reference', 'gateway_transaction_id', 'mpesa_receipt_number',
                       'paybill_account_number', 'stk_push_attempts', 'last_stk_push_at', 'last_query_at')
        }),
        ('Raw Data', {
            'fields': ('payment_details', 'metadata')
        }),
        ('Timestamps', {
            'fields': ('initiated_at', 'processed_at', 'completed_at', 'failed_at', 'created_at', 'updated_at')
        }),
    )
    ordering = ('-created_at',)
    inlines = [CheckoutRequestInline]
    actions = ['action_approve', 'action_reject', 'action_cancel', 'action_refund']

    def has_delete_permission(self, request, obj=None):
        # Payments are the financial audit trail
        return False

    def _apply(self, request, queryset, decide, verb):
        count = 0
        for payment in queryset:
            try:
                decide(payment)
            except PaymentError as e:
                self.message_user(request, f"{payment.payment_reference}: {e.detail}", messages.ERROR)
            else:
                count += 1
        if count:
            self.message_user(request, f"{verb} {count} payment(s).", messages.SUCCESS)

    @admin.action(description='Approve selected manual receipts')
    def action_approve(self, request, queryset):
        self._apply(request, queryset, lambda p: services.approve_payment(p, request.user, 'Approved from admin'), 'Approved')

    @admin.action(description=f'Reject selected manual receipts as "{REJECT_REASON}"')
    def action_reject(self, request, queryset):
        self._apply(request, queryset, lambda p: services.reject_payment(p, request.user, REJECT_REASON), 'Rejected')

    @admin.action(description='Cancel selected payments')
    def action_cancel(self, request, queryset):
        self._apply(request, queryset, lambda p: services.cancel_payment(p, request.user, 'cancelled by admin'), 'Cancelled')

    @admin.action(description='Refund selected completed payments')
    def action_refund(self, request, queryset):
        self._apply(request, queryset, lambda p: services.refund_payment(p, request.user, 'refunded by admin'), 'Refunded')
