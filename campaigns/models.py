from django.conf import settings
from django.db import models


class Advertiser(models.Model):
    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
    ]

    user = models.OneToOneField(settings.AUTH_USER_MODEL, on_delete=models.CASCADE, related_name='advertiser')
    company_name = models.CharField(max_length=255)
    phone_number = models.CharField(max_length=15, blank=True)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='pending')
    created_at = models.DateTimeField(auto_now_add=True)

    def __str__(self):
        return self.company_name


class Campaign(models.Model):
    """
    Only the fields the payment flow reads or writes are modelled here.
    """
    STATUS_CHOICES = [
        ('draft', 'Draft'),
        ('pending_payment', 'Pending Payment'),
        ('paid', 'Paid'),
        ('active', 'Active'),
        ('completed', 'Completed'),
        ('cancelled', 'Cancelled'),
    ]
    VERIFICATION_CHOICES = [
        ('not_initiated', 'Not Initiated'),
        ('pending', 'Pending'),
        ('verified', 'Verified'),
        ('failed', 'Failed'),
        ('awaiting_admin', 'Awaiting Admin'),
    ]

    advertiser = models.ForeignKey(Advertiser, on_delete=models.CASCADE, related_name='campaigns')
    name = models.CharField(max_length=255)
    helmet_count = models.PositiveIntegerField(default=1)
    duration_days = models.PositiveIntegerField(default=1)
    status = models.CharField(max_length=20, choices=STATUS_CHOICES, default='draft')
    payment_verification_status = models.CharField(
        max_length=20, choices=VERIFICATION_CHOICES, default='not_initiated'
    )
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    def mark_paid(self):
        self.status = 'paid'
        self.payment_verification_status = 'verified'
        self.save(update_fields=['status', 'payment_verification_status', 'updated_at'])

    def __str__(self):
        return f"{self.name} ({self.helmet_count} helmets / {self.duration_days} days)"
