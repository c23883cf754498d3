import logging

from asgiref.sync import async_to_sync
from channels.layers import get_channel_layer
from django.utils import timezone

logger = logging.getLogger(__name__)

EVENT_NAME = 'payment.status.updated'

STATUS_MESSAGES = {
    'completed': 'Payment completed successfully',
    'pending': 'Payment is being processed',
    'processing': 'Payment is being processed',
    'pending_verification': 'Payment submitted and awaiting admin verification',
    'cancelled': 'Payment was cancelled',
    'refunded': 'Payment was refunded',
}


def channel_name(advertiser_id):
    return f'payment.{advertiser_id}'


def paybill_details(payment, config):
    return {
        'paybill_number': config.short_code,
        'account_number': payment.paybill_account_number or payment.phone_number,
        'amount': str(payment.amount),
    }


def status_message(payment):
    if payment.status == 'failed':
        return payment.status_message or 'Payment failed'
    return STATUS_MESSAGES.get(payment.status, 'Payment status updated')


def build_status_payload(payment, config):
    failed = payment.status == 'failed'
    return {
        'payment_id': payment.id,
        'reference': payment.payment_reference,
        'amount': str(payment.amount),
        'currency': payment.currency,
        'status': payment.status,
        'message': status_message(payment),
        'mpesa_receipt': payment.mpesa_receipt,
        'timestamp': timezone.now().isoformat(),
        'show_fallback_options': failed,
        'can_retry_stk': payment.can_retry_stk,
        'paybill_details': paybill_details(payment, config) if failed else None,
    }


def notify_payment_status(payment, config):
    """
    Push the payment's current status to every open tab of its advertiser.

    Best effort: the browser runs its own timeout, so a lost event only means
    the fallback options show up a little later.
    """
    payload = build_status_payload(payment, config)
    group = channel_name(payment.advertiser_id)

    layer = get_channel_layer()
    if layer is None:
        logger.warning("No channel layer configured, dropping %s for %s", EVENT_NAME, group)
        return False

    try:
        async_to_sync(layer.group_send)(group, {'type': EVENT_NAME, 'payload': payload})
    except Exception:
        logger.warning("Failed to broadcast %s on %s", EVENT_NAME, group, exc_info=True)
        return False

    logger.info(
        "Broadcast %s on %s: payment=%s status=%s receipt=%s",
        EVENT_NAME, group, payment.id, payment.status, payload['mpesa_receipt'],
    )
    return True
