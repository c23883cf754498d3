from django.conf import settings
from django.db import models
from django.utils import timezone

from campaigns.models import Advertiser, Campaign

TERMINAL_STATUSES = ('completed', 'failed', 'cancelled', 'refunded')


class PaymentQuerySet(models.QuerySet):
    def completed(self):
        return self.filter(status='completed')

    def pending(self):
        return self.filter(status__in=('pending', 'processing'))

    def failed(self):
        return self.filter(status='failed')

    def awaiting_approval(self):
        return self.filter(status='pending_verification', requires_admin_approval=True)

    def stale_pending(self, older_than):
        """
        Pending pushes that got a checkout id but no callback before `older_than`.
        """
        return self.pending().filter(
            gateway_transaction_id__isnull=False,
            last_stk_push_at__lte=older_than,
        )


class Payment(models.Model):
    """
    One M-Pesa payment attempt for a campaign, kept for the audit trail.
    """
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('processing', 'Processing'),
        ('completed', 'Completed'),
        ('failed', 'Failed'),
        ('cancelled', 'Cancelled'),
        ('refunded', 'Refunded'),
        ('pending_verification', 'Pending Verification'),
    ]
    METHOD_CHOICES = [
        ('mpesa', 'M-Pesa'),
        ('bank_transfer', 'Bank Transfer'),
        ('card', 'Card'),
        ('cash', 'Cash'),
        ('cheque', 'Cheque'),
    ]
    VERIFICATION_CHOICES = [
        ('auto_callback', 'STK Push callback'),
        ('manual_receipt', 'Manual receipt'),
        ('query_api', 'Query API'),
        ('admin_approval', 'Admin approval'),
        ('paybill_manual', 'Manual paybill'),
    ]

    campaign = models.ForeignKey(Campaign, on_delete=models.SET_NULL, null=True, blank=True, related_name='payments')
    advertiser = models.ForeignKey(Advertiser, on_delete=models.PROTECT, related_name='payments')
    payment_reference = models.CharField(max_length=50, unique=True)
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    currency = models.CharField(max_length=3, default='KES')
    payment_method = models.CharField(max_length=20, choices=METHOD_CHOICES, default='mpesa')
    payment_gateway = models.CharField(max_length=50, blank=True, null=True)

    # MerchantRequestID / CheckoutRequestID from Daraja
    gateway_reference = models.CharField(max_length=100, blank=True, null=True)
    gateway_transaction_id = models.CharField(max_length=100, blank=True, null=True, db_index=True)
    mpesa_receipt_number = models.CharField(max_length=30, blank=True, null=True, unique=True)

    phone_number = models.CharField(max_length=15, blank=True, null=True, db_index=True)
    paybill_account_number = models.CharField(max_length=50, blank=True, null=True)
    paybill_instructions_sent = models.DateTimeField(blank=True, null=True)

    status = models.CharField(max_length=25, choices=STATUS_CHOICES, default='pending')
    status_message = models.TextField(blank=True, null=True)
    verification_method = models.CharField(max_length=20, choices=VERIFICATION_CHOICES, blank=True, null=True)

    requires_admin_approval = models.BooleanField(default=False, db_index=True)
    admin_approved_at = models.DateTimeField(blank=True, null=True)
    admin_approved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL, on_delete=models.SET_NULL, null=True, blank=True, related_name='+'
    )

    stk_push_attempts = models.PositiveIntegerField(default=0)
    last_stk_push_at = models.DateTimeField(blank=True, null=True)
    last_query_at = models.DateTimeField(blank=True, null=True)

    payment_details = models.JSONField(default=dict, blank=True)
    metadata = models.JSONField(default=dict, blank=True)

    initiated_at = models.DateTimeField(default=timezone.now)
    processed_at = models.DateTimeField(blank=True, null=True)
    completed_at = models.DateTimeField(blank=True, null=True)
    failed_at = models.DateTimeField(blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    objects = PaymentQuerySet.as_manager()

    class Meta:
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status', 'requires_admin_approval'], name='payment_status_approval_idx'),
            models.Index(fields=['verification_method', 'status'], name='payment_verification_idx'),
            models.Index(fields=['created_at'], name='payment_created_idx'),
        ]

    @property
    def is_terminal(self):
        return self.status in TERMINAL_STATUSES

    @property
    def is_completed(self):
        return self.status == 'completed'

    @property
    def is_pending(self):
        return self.status in ('pending', 'processing')

    @property
    def is_failed(self):
        return self.status == 'failed'

    @property
    def is_awaiting_approval(self):
        return self.status == 'pending_verification' and self.requires_admin_approval

    @property
    def is_rejected(self):
        # An admin turned the receipt down; the advertiser has to start over
        return (self.metadata or {}).get('admin_decision') == 'rejected'

    @property
    def can_retry_stk(self):
        return (
            self.stk_push_attempts < settings.MPESA_MAX_STK_ATTEMPTS
            and self.status in ('pending', 'processing', 'failed')
            and not self.requires_admin_approval
            and not self.is_rejected
        )

    @property
    def mpesa_receipt(self):
        if self.mpesa_receipt_number:
            return self.mpesa_receipt_number

        details = self.payment_details or {}
        if details.get('mpesa_receipt'):
            return details['mpesa_receipt']

        # Fall back to the raw callback we stored
        callback = details.get('callback') or {}
        items = (
            callback.get('Body', {})
            .get('stkCallback', {})
            .get('CallbackMetadata', {})
            .get('Item', [])
        )
        for item in items:
            if item.get('Name') == 'MpesaReceiptNumber':
                return item.get('Value')
        return None

    def __str__(self):
        return f"Payment {self.payment_reference} - {self.phone_number} ({self.status})"


class CheckoutRequest(models.Model):
    """
    Every STK push Daraja accepted for a payment. A retry replaces the
    payment's current CheckoutRequestID, but the customer may still complete
    an earlier prompt, so its callback has to find its way back here.
    """
    payment = models.ForeignKey(Payment, on_delete=models.CASCADE, related_name='checkout_requests')
    checkout_request_id = models.CharField(max_length=100, unique=True)
    merchant_request_id = models.CharField(max_length=100, blank=True, null=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ['created_at']

    def __str__(self):
        return f"{self.checkout_request_id} ({self.payment.payment_reference})"
