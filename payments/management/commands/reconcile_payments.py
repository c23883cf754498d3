import signal
import time
from datetime import timedelta

from django.core.management.base import BaseCommand
from django.utils import timezone

from payments.exceptions import CooldownActive
from payments.models import Payment
from payments.mpesa_utils import MpesaConfig
from payments.services import query_payment_status


class Command(BaseCommand):
    help = 'Queries M-Pesa for pending STK pushes whose callback never arrived.'

    # Control flag for graceful shutdowns
    is_running = True

    def add_arguments(self, parser):
        parser.add_argument('--once', action='store_true', help='Run a single sweep and exit.')
        parser.add_argument('--interval', type=int, default=60, help='Seconds between sweeps.')

    def handle(self, *args, **options):
        config = MpesaConfig.from_settings()

        if options['once']:
            self.reconcile(config)
            return

        # Register signal handlers for SystemD/Kill commands
        signal.signal(signal.SIGINT, self.shutdown)
        signal.signal(signal.SIGTERM, self.shutdown)

        self.stdout.write(self.style.SUCCESS('Starting payment reconciliation daemon...'))

        while self.is_running:
            self.reconcile(config)

            # Check for shutdown signal every second
            for _ in range(options['interval']):
                if not self.is_running:
                    break
                time.sleep(1)

        self.stdout.write(self.style.SUCCESS('Payment reconciliation stopped gracefully.'))

    def reconcile(self, config):
        """
        Query every pending push that has outlived the browser's own timeout.
        """
        cutoff = timezone.now() - timedelta(seconds=config.client_timeout)
        checked = completed = skipped = 0

        for payment in Payment.objects.stale_pending(cutoff):
            try:
                result = query_payment_status(payment, config=config)
            except CooldownActive:
                skipped += 1
                continue

            checked += 1
            if result['status'] == 'completed':
                completed += 1
                self.stdout.write(f"Payment {payment.payment_reference} confirmed via Query API")

        self.stdout.write(f"Reconciled {checked} payment(s): {completed} completed, {skipped} throttled")
        return checked, completed, skipped

    def shutdown(self, signum, frame):
        """Signal handler for graceful shutdown."""
        self.stdout.write(self.style.WARNING('Received shutdown signal...'))
        self.is_running = False
