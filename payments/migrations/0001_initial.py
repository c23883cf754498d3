import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ('campaigns', '0001_initial'),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name='Payment',
            fields=[
                ('id', models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name='ID')),
                ('payment_reference', models.CharField(max_length=50, unique=True)),
                ('amount', models.DecimalField(decimal_places=2, max_digits=12)),
                ('currency', models.CharField(default='KES', max_length=3)),
                ('payment_method', models.CharField(choices=[('mpesa', 'M-Pesa'), ('bank_transfer', 'Bank Transfer'), ('card', 'Card'), ('cash', 'Cash'), ('cheque', 'Cheque')], default='mpesa', max_length=20)),
                ('payment_gateway', models.CharField(blank=True, max_length=50, null=True)),
                ('gateway_reference', models.CharField(blank=True, max_length=100, null=True)),
                ('gateway_transaction_id', models.CharField(blank=True, db_index=True, max_length=100, null=True)),
                ('mpesa_receipt_number', models.CharField(blank=True, max_length=30, null=True, unique=True)),
                ('phone_number', models.CharField(blank=True, db_index=True, max_length=15, null=True)),
                ('paybill_account_number', models.CharField(blank=True, max_length=50, null=True)),
                ('paybill_instructions_sent', models.DateTimeField(blank=True, null=True)),
                ('status', models.CharField(choices=[('pending', 'Pending'), ('processing', 'Processing'), ('completed', 'Completed'), ('failed', 'Failed'), ('cancelled', 'Cancelled'), ('refunded', 'Refunded'), ('pending_verification', 'Pending Verification')], default='pending', max_length=25)),
                ('status_message', models.TextField(blank=True, null=True)),
                ('verification_method', models.CharField(blank=True, choices=[('auto_callback', 'STK Push callback'), ('manual_receipt', 'Manual receipt'), ('query_api', 'Query API'), ('admin_approval', 'Admin approval'), ('paybill_manual', 'Manual paybill')], max_length=20, null=True)),
                ('requires_admin_approval', models.BooleanField(db_index=True, default=False)),
                ('admin_approved_at', models.DateTimeField(blank=True, null=True)),
                ('stk_push_attempts', models.PositiveIntegerField(default=0)),
                ('last_stk_push_at', models.DateTimeField(blank=True, null=True)),
                ('last_query_at', models.DateTimeField(blank=True, null=True)),
                ('payment_details', models.JSONField(blank=True, default=dict)),
                ('metadata', models.JSONField(blank=True, default=dict)),
                ('initiated_at', models.DateTimeField(default=django.utils.timezone.now)),
                ('processed_at', models.DateTimeField(blank=True, null=True)),
                ('completed_at', models.DateTimeField(blank=True, null=True)),
                ('failed_at', models.DateTimeField(blank=True, null=True)),
                ('created_at', models.DateTimeField(auto_now_add=True)),
                ('updated_at', models.DateTimeField(auto_now=True)),
                ('admin_approved_by', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='+', to=settings.AUTH_USER_MODEL)),
                ('advertiser', models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name='payments', to='campaigns.advertiser')),
                ('campaign', models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, related_name='payments', to='campaigns.campaign')),
            ],
            options={
                'ordering': ['-created_at'],
                'indexes': [
                    models.Index(fields=['status', 'requires_admin_approval'], name='payment_status_approval_idx'),
                    models.Index(fields=['verification_method', 'status'], name='payment_verification_idx'),
                    models.Index(fields=['created_at'], name='payment_created_idx'),
                ],
            },
        ),
    ]
