from django.contrib import admin
from .models import Advertiser, Campaign


@admin.register(Advertiser)
class AdvertiserAdmin(admin.ModelAdmin):
    list_display = ('company_name', 'user', 'phone_number', 'status', 'created_at')
    list_filter = ('status',)
    search_fields = ('company_name', 'phone_number', 'user__username')


@admin.register(Campaign)
class CampaignAdmin(admin.ModelAdmin):
    list_display = ('name', 'advertiser', 'helmet_count', 'duration_days', 'status', 'payment_verification_status')
    list_filter = ('status', 'payment_verification_status')  # Paid vs awaiting verification at a glance
    search_fields = ('name', 'advertiser__company_name')
    ordering = ('-created_at',)
