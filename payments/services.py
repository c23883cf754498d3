"""
M-Pesa payment reconciliation.

A payment can be confirmed four ways: the STK push callback, a pull against
the STK query API, a receipt the advertiser types in, or an admin decision.
Every path ends in `_complete` / `_fail`, which lock the row and refuse to
touch a payment that is already terminal, so racing confirmations are no-ops.
"""
import logging
import math
from datetime import timedelta

from django.db import IntegrityError, transaction
from django.db.models import F, Q
from django.utils import timezone
from django.utils.module_loading import import_string

from . import mpesa_utils
from .exceptions import (
    CooldownActive,
    DuplicateReceipt,
    InvalidPhoneNumber,
    InvalidReceiptFormat,
    InvalidTransition,
    MpesaGatewayError,
    PaymentNotAwaitingApproval,
    RetryLimitReached,
)
from .models import CheckoutRequest, Payment
from .mpesa_utils import MpesaConfig
from .notifications import notify_payment_status, paybill_details

logger = logging.getLogger(__name__)

GATEWAY_NAME = 'safaricom_mpesa'
RETRYABLE_STATUSES = ('pending', 'processing', 'failed')
OPEN_STATUSES = ('pending', 'processing', 'pending_verification')


def _config(config):
    return config or MpesaConfig.from_settings()


def generate_payment_reference(phone_number, now=None):
    """
    Short, human-readable reference: last four phone digits plus a time suffix.
    """
    now = timezone.localtime(now or timezone.now())
    base = f"PAY-{phone_number[-4:]}-{now:%d%H%M%S}"
    reference = base
    suffix = 1
    while Payment.objects.filter(payment_reference=reference).exists():
        suffix += 1
        reference = f"{base}-{suffix}"
    return reference


def _create_payment(advertiser, amount, phone_number, campaign=None, **fields):
    for _ in range(5):
        reference = generate_payment_reference(phone_number)
        try:
            with transaction.atomic():
                return Payment.objects.create(
                    advertiser=advertiser,
                    campaign=campaign,
                    payment_reference=reference,
                    amount=amount,
                    currency='KES',
                    payment_method='mpesa',
                    payment_gateway=GATEWAY_NAME,
                    phone_number=phone_number,
                    paybill_account_number=phone_number,
                    **fields,
                )
        except IntegrityError:
            # Another request took the same reference in the same second
            logger.info("Payment reference %s taken, generating another", reference)
    raise IntegrityError("Could not allocate a unique payment reference")


def _push_result(payment, config, success, message):
    return {
        'success': success,
        'message': message,
        'reference': payment.payment_reference,
        'payment_id': payment.id,
        'checkout_request_id': payment.gateway_transaction_id if success else None,
        'phone_number': payment.phone_number,
        'status': payment.status,
        'stk_push_attempts': payment.stk_push_attempts,
        'can_retry_stk': payment.can_retry_stk,
        'paybill_details': paybill_details(payment, config),
        'client_timeout': config.client_timeout,
    }


def _record_push_attempt(payment, config):
    """
    Count the attempt before calling the gateway. The conditional UPDATE keeps
    two quick retry clicks from both getting through the cap or the cooldown.
    """
    now = timezone.now()
    cooldown_start = now - timedelta(seconds=config.retry_cooldown)
    updated = (
        Payment.objects
        .filter(pk=payment.pk, stk_push_attempts__lt=config.max_stk_attempts)
        .filter(Q(last_stk_push_at__isnull=True) | Q(last_stk_push_at__lte=cooldown_start))
        .update(stk_push_attempts=F('stk_push_attempts') + 1, last_stk_push_at=now, updated_at=now)
    )
    payment.refresh_from_db(fields=['stk_push_attempts', 'last_stk_push_at'])
    if updated:
        return

    if payment.stk_push_attempts >= config.max_stk_attempts:
        raise RetryLimitReached()
    elapsed = (now - payment.last_stk_push_at).total_seconds()
    raise CooldownActive(max(1, math.ceil(config.retry_cooldown - elapsed)), 'retrying the STK push')


def _update_if_retryable(payment, **fields):
    """
    Write push results only while the payment is still open; a callback for an
    earlier checkout may have settled it while we were talking to Daraja.
    """
    fields['updated_at'] = timezone.now()
    updated = Payment.objects.filter(pk=payment.pk, status__in=RETRYABLE_STATUSES).update(**fields)
    payment.refresh_from_db()
    return bool(updated)


def _send_push(payment, config, description):
    try:
        http_status, response = mpesa_utils.send_stk_push(
            config,
            payment.phone_number,
            payment.amount,
            payment.paybill_account_number or payment.phone_number,
            description,
        )
    except MpesaGatewayError as e:
        logger.error("STK push for payment %s could not reach M-Pesa: %s", payment.id, e)
        _update_if_retryable(
            payment, status='failed', status_message=str(e), failed_at=timezone.now()
        )
        return _push_result(payment, config, False, str(e))

    details = dict(payment.payment_details or {})
    details['stk_push'] = response

    if http_status == 200 and str(response.get('ResponseCode')) == '0':
        if payment.gateway_transaction_id:
            details.setdefault('previous_checkout_ids', []).append(payment.gateway_transaction_id)
        sent = _update_if_retryable(
            payment,
            status='pending',
            status_message=response.get('CustomerMessage') or 'Payment request sent to phone',
            gateway_reference=response.get('MerchantRequestID'),
            gateway_transaction_id=response.get('CheckoutRequestID'),
            processed_at=timezone.now(),
            failed_at=None,
            payment_details=details,
        )
        if sent:
            CheckoutRequest.objects.get_or_create(
                checkout_request_id=payment.gateway_transaction_id,
                defaults={'payment': payment, 'merchant_request_id': payment.gateway_reference},
            )
        logger.info(
            "STK push sent for payment %s (attempt %s), checkout %s",
            payment.id, payment.stk_push_attempts, payment.gateway_transaction_id,
        )
        return _push_result(payment, config, True, 'Payment request sent successfully')

    error_message = (
        response.get('errorMessage')
        or response.get('ResponseDescription')
        or 'Payment initiation failed'
    )
    _update_if_retryable(
        payment,
        status='failed',
        status_message=error_message,
        failed_at=timezone.now(),
        payment_details=details,
    )
    logger.error("STK push rejected for payment %s: %s", payment.id, response)
    return _push_result(payment, config, False, error_message)


def initiate_stk_push(advertiser, phone_number, amount, campaign=None, campaign_data=None,
                      description=None, config=None):
    """
    Create a payment and send the STK prompt. Gateway trouble never raises:
    the payment is marked failed and the paybill fallback is returned instead.
    """
    config = _config(config)
    phone = mpesa_utils.format_phone_number(phone_number)
    if not phone:
        raise InvalidPhoneNumber()

    payment = _create_payment(
        advertiser,
        amount,
        phone,
        campaign=campaign,
        status='pending',
        metadata={'campaign_data': campaign_data, 'description': description},
    )
    logger.info(
        "Initiating M-Pesa STK push: payment=%s reference=%s phone=%s amount=%s",
        payment.id, payment.payment_reference, phone, amount,
    )
    _record_push_attempt(payment, config)
    return _send_push(payment, config, description)


def retry_stk_push(payment, config=None):
    """Send a fresh prompt for the same payment and reference."""
    config = _config(config)
    payment.refresh_from_db()
    if (
        payment.requires_admin_approval
        or payment.is_rejected
        or payment.status not in RETRYABLE_STATUSES
    ):
        raise InvalidTransition('This payment can no longer be retried.')

    _record_push_attempt(payment, config)
    logger.info("Retrying STK push for payment %s (attempt %s)", payment.id, payment.stk_push_attempts)
    return _send_push(payment, config, (payment.metadata or {}).get('description'))


def _receipt_in_use(receipt, exclude_pk=None):
    qs = Payment.objects.filter(mpesa_receipt_number=receipt)
    if exclude_pk is not None:
        qs = qs.exclude(pk=exclude_pk)
    return qs.exists()


def _complete(payment_id, verification_method, config, receipt=None, details=None, message=None,
              reopen_failed=False):
    """
    Move an open payment to completed and cascade to its campaign.

    Returns (payment, changed). A payment that is already terminal is left
    alone, except that `reopen_failed` lets money received on an earlier
    checkout settle a failed payment no admin has rejected. A receipt already
    recorded on another payment is never credited twice; the payment goes to
    an admin instead.
    """
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment_id)
        reopened = reopen_failed and payment.is_failed and not payment.is_rejected
        if payment.is_terminal and not reopened:
            logger.info(
                "Payment %s already %s, ignoring %s confirmation",
                payment.id, payment.status, verification_method,
            )
            return payment, False

        payment.payment_details = {**(payment.payment_details or {}), **(details or {})}

        if receipt and _receipt_in_use(receipt, exclude_pk=payment.pk):
            logger.error("Receipt %s for payment %s is already recorded on another payment", receipt, payment.id)
            payment.status = 'pending_verification'
            payment.requires_admin_approval = True
            payment.status_message = f"Receipt {receipt} is already recorded on another payment"
            payment.save()
        else:
            payment.status = 'completed'
            payment.completed_at = timezone.now()
            payment.verification_method = verification_method
            payment.requires_admin_approval = False
            payment.status_message = message or 'Payment completed successfully'
            if receipt:
                payment.mpesa_receipt_number = receipt
            try:
                with transaction.atomic():
                    payment.save()
            except IntegrityError as e:
                raise DuplicateReceipt() from e
            if payment.campaign_id:
                payment.campaign.mark_paid()
            logger.info(
                "Payment %s completed via %s, receipt %s",
                payment.id, verification_method, payment.mpesa_receipt,
            )

    notify_payment_status(payment, config)
    return payment, True


def _fail(payment_id, message, config, details=None):
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment_id)
        # A receipt waiting on an admin outranks a late STK failure
        if not payment.is_pending:
            logger.info("Payment %s is %s, ignoring failure: %s", payment.id, payment.status, message)
            return payment, False

        payment.status = 'failed'
        payment.status_message = message
        payment.failed_at = timezone.now()
        payment.payment_details = {**(payment.payment_details or {}), **(details or {})}
        payment.save()
        logger.warning("Payment %s failed: %s", payment.id, message)

    notify_payment_status(payment, config)
    return payment, True


def _callback_items(stk_callback):
    callback_metadata = stk_callback.get('CallbackMetadata')
    if not isinstance(callback_metadata, dict):
        return []
    items = callback_metadata.get('Item')
    return items if isinstance(items, list) else []


def _receipt_from(payload):
    receipt = payload.get('MpesaReceiptNumber')
    if not receipt:
        receipt = mpesa_utils.extract_callback_metadata(_callback_items(payload)).get('mpesa_receipt_number')
    return mpesa_utils.normalize_receipt(str(receipt)) if receipt else None


def process_callback(body, config=None):
    """
    Apply an STK push callback. Returns False, without touching any payment,
    when the body is malformed or does not match a payment.
    """
    config = _config(config)
    envelope = body.get('Body') if isinstance(body, dict) else None
    stk_callback = envelope.get('stkCallback') if isinstance(envelope, dict) else None
    if not isinstance(stk_callback, dict):
        logger.error("Malformed M-Pesa callback: %s", body)
        return False

    checkout_request_id = stk_callback.get('CheckoutRequestID')
    try:
        result_code = int(stk_callback.get('ResultCode'))
    except (TypeError, ValueError):
        logger.error("Callback %s has no usable ResultCode: %s", checkout_request_id, body)
        return False

    if not checkout_request_id:
        logger.error("Callback missing CheckoutRequestID: %s", body)
        return False

    payment = Payment.objects.filter(gateway_transaction_id=checkout_request_id).first()
    superseded = False
    if payment is None:
        earlier = (
            CheckoutRequest.objects
            .select_related('payment')
            .filter(checkout_request_id=checkout_request_id)
            .first()
        )
        if earlier is not None:
            payment, superseded = earlier.payment, True

    if payment is None:
        logger.error("Payment not found for callback, checkout %s", checkout_request_id)
        return False

    if superseded and result_code != 0:
        # The customer moved on to a newer prompt
        logger.info(
            "Ignoring failure for superseded checkout %s of payment %s", checkout_request_id, payment.id
        )
        return True

    if payment.is_terminal and not (superseded and payment.is_failed and not payment.is_rejected):
        logger.info("Duplicate callback for %s payment %s", payment.status, payment.id)
        return True

    if result_code == 0:
        receipt = _receipt_from(stk_callback)
        if not receipt:
            logger.error("Successful callback for payment %s carries no receipt: %s", payment.id, body)
            return False
        metadata = mpesa_utils.extract_callback_metadata(_callback_items(stk_callback))
        _complete(
            payment.pk,
            'auto_callback',
            config,
            receipt=receipt,
            details={
                'callback': body,
                'mpesa_receipt': receipt,
                'transaction_date': metadata.get('transaction_date'),
                'paid_checkout_id': checkout_request_id,
            },
            reopen_failed=superseded,
        )
    else:
        _fail(
            payment.pk,
            stk_callback.get('ResultDesc') or 'Payment failed',
            config,
            details={'callback': body},
        )
    return True


def _claim_query_slot(payment, config):
    now = timezone.now()
    cutoff = now - timedelta(seconds=config.query_cooldown)
    updated = (
        Payment.objects
        .filter(pk=payment.pk)
        .filter(Q(last_query_at__isnull=True) | Q(last_query_at__lte=cutoff))
        .update(last_query_at=now)
    )
    if not updated:
        payment.refresh_from_db(fields=['last_query_at'])
        elapsed = (now - payment.last_query_at).total_seconds()
        raise CooldownActive(
            max(1, math.ceil(config.query_cooldown - elapsed)), 'checking the payment status again'
        )
    payment.last_query_at = now


def _status_result(payment, success, message):
    return {
        'success': success,
        'payment_id': payment.id,
        'reference': payment.payment_reference,
        'status': payment.status,
        'mpesa_receipt': payment.mpesa_receipt,
        'message': message,
        'can_retry_stk': payment.can_retry_stk,
    }


def query_payment_status(payment, checkout_request_id=None, config=None):
    """
    Pull-based safety net for lost or late callbacks. Throttled per payment.
    """
    config = _config(config)
    _claim_query_slot(payment, config)
    payment.refresh_from_db()

    if payment.is_terminal or payment.is_awaiting_approval:
        return _status_result(payment, payment.is_completed, payment.status_message or payment.get_status_display())

    checkout_request_id = checkout_request_id or payment.gateway_transaction_id
    if not checkout_request_id:
        return _status_result(payment, False, 'Payment has no STK push to query')

    logger.info("Querying M-Pesa status: payment=%s checkout=%s", payment.id, checkout_request_id)
    try:
        http_status, response = mpesa_utils.query_stk_status(config, checkout_request_id)
    except MpesaGatewayError as e:
        logger.error("Payment status query error for payment %s: %s", payment.id, e)
        return _status_result(payment, False, f'Error querying payment: {e}')

    if str(response.get('ResultCode')) == '0':
        payment, _ = _complete(
            payment.pk,
            'query_api',
            config,
            receipt=_receipt_from(response),
            details={'query_result': response},
            message='Payment verified via Query API',
        )
        return _status_result(payment, payment.is_completed, payment.status_message)

    message = response.get('ResultDesc') or response.get('errorMessage') or 'Payment not completed'
    return _status_result(payment, False, message)


def _auto_verify_receipt(config, receipt, amount, phone_number):
    if not config.receipt_verifier:
        return False
    try:
        verifier = import_string(config.receipt_verifier)
        return verifier(receipt, amount, phone_number) is True
    except Exception:
        logger.exception("Automatic verification of receipt %s failed, sending to admin", receipt)
        return False


def verify_manual_receipt(advertiser, receipt_number, amount, phone_number, campaign=None,
                          campaign_data=None, payment=None, config=None):
    """
    Record a receipt the advertiser got from paying outside the STK flow.
    Completes at once when a configured verifier vouches for it, otherwise
    parks the payment for an admin.
    """
    config = _config(config)
    receipt = mpesa_utils.normalize_receipt(receipt_number)
    if not mpesa_utils.is_valid_receipt_format(receipt):
        raise InvalidReceiptFormat()
    if _receipt_in_use(receipt):
        raise DuplicateReceipt()
    phone = mpesa_utils.format_phone_number(phone_number)
    if not phone:
        raise InvalidPhoneNumber()

    logger.info("Manual receipt verification: receipt=%s amount=%s phone=%s", receipt, amount, phone)
    verified = _auto_verify_receipt(config, receipt, amount, phone)
    now = timezone.now()

    try:
        with transaction.atomic():
            if payment is None:
                payment = _create_payment(advertiser, amount, phone, campaign=campaign)
            else:
                payment = Payment.objects.select_for_update().get(pk=payment.pk)
                # A failed push can still be settled by paying through the paybill
                if payment.is_rejected or (payment.is_terminal and not payment.is_failed):
                    raise InvalidTransition('This payment is already closed. Please start a new payment.')
                if campaign is not None and payment.campaign_id is None:
                    payment.campaign = campaign

            payment.mpesa_receipt_number = receipt
            payment.verification_method = 'manual_receipt'
            payment.metadata = {
                **(payment.metadata or {}),
                'campaign_data': campaign_data or (payment.metadata or {}).get('campaign_data'),
                'manual_receipt': {
                    'receipt': receipt,
                    'claimed_amount': str(amount),
                    'phone_number': phone,
                    'submitted_at': now.isoformat(),
                },
            }
            payment.payment_details = {
                **(payment.payment_details or {}),
                'mpesa_receipt': receipt,
                'manual_verification': True,
                'user_submitted': True,
            }
            if verified:
                payment.status = 'completed'
                payment.completed_at = now
                payment.requires_admin_approval = False
                payment.status_message = 'Receipt verified automatically'
            else:
                payment.status = 'pending_verification'
                payment.requires_admin_approval = True
                payment.status_message = 'Manual receipt submitted - pending admin verification'
            payment.save()

            if payment.campaign_id:
                if verified:
                    payment.campaign.mark_paid()
                else:
                    payment.campaign.payment_verification_status = 'awaiting_admin'
                    payment.campaign.save(update_fields=['payment_verification_status', 'updated_at'])
    except IntegrityError as e:
        raise DuplicateReceipt() from e

    logger.info(
        "Manual receipt %s recorded on payment %s, requires approval: %s",
        receipt, payment.id, not verified,
    )
    notify_payment_status(payment, config)

    if verified:
        message = 'Receipt verified. Your payment is complete.'
    else:
        message = 'Receipt submitted successfully. Your payment is pending admin verification.'
    return {
        'success': True,
        'message': message,
        'reference': payment.payment_reference,
        'payment_id': payment.id,
        'receipt_number': receipt,
        'requires_approval': not verified,
        'status': payment.status,
    }


def _locked_for_decision(payment):
    payment = Payment.objects.select_for_update().get(pk=payment.pk)
    if not payment.is_awaiting_approval:
        raise PaymentNotAwaitingApproval()
    return payment


def approve_payment(payment, admin_user, note=None, config=None):
    config = _config(config)
    with transaction.atomic():
        payment = _locked_for_decision(payment)
        now = timezone.now()
        payment.status = 'completed'
        payment.completed_at = now
        payment.admin_approved_at = now
        payment.admin_approved_by = admin_user
        payment.requires_admin_approval = False
        payment.verification_method = 'admin_approval'
        payment.status_message = 'Payment approved by admin'
        payment.metadata = {**(payment.metadata or {}), 'admin_decision': 'approved', 'admin_note': note}
        payment.save()
        if payment.campaign_id:
            payment.campaign.mark_paid()

    logger.info("Payment %s approved by admin %s", payment.id, admin_user.pk)
    notify_payment_status(payment, config)
    return payment


def reject_payment(payment, admin_user, reason, config=None):
    config = _config(config)
    with transaction.atomic():
        payment = _locked_for_decision(payment)
        payment.status = 'failed'
        payment.failed_at = timezone.now()
        payment.status_message = f"Rejected: {reason}"
        payment.admin_approved_by = admin_user
        payment.requires_admin_approval = False
        payment.metadata = {**(payment.metadata or {}), 'admin_decision': 'rejected', 'admin_note': reason}
        payment.save()

    logger.info("Payment %s rejected by admin %s: %s", payment.id, admin_user.pk, reason)
    notify_payment_status(payment, config)
    return payment


def _admin_transition(payment, admin_user, allowed, new_status, message, config):
    with transaction.atomic():
        payment = Payment.objects.select_for_update().get(pk=payment.pk)
        if payment.status not in allowed:
            raise InvalidTransition(f"A {payment.status} payment cannot be {new_status}.")
        payment.status = new_status
        payment.status_message = message
        payment.requires_admin_approval = False
        payment.metadata = {
            **(payment.metadata or {}),
            f'{new_status}_by': admin_user.pk,
            f'{new_status}_at': timezone.now().isoformat(),
        }
        payment.save()

    logger.info("Payment %s %s by admin %s", payment.id, new_status, admin_user.pk)
    notify_payment_status(payment, config)
    return payment


def cancel_payment(payment, admin_user, reason, config=None):
    return _admin_transition(
        payment, admin_user, OPEN_STATUSES, 'cancelled', f"Cancelled: {reason}", _config(config)
    )


def refund_payment(payment, admin_user, reason, config=None):
    return _admin_transition(
        payment, admin_user, ('completed',), 'refunded', f"Refunded: {reason}", _config(config)
    )


def paybill_instructions(payment, config=None):
    config = _config(config)
    details = paybill_details(payment, config)
    Payment.objects.filter(pk=payment.pk).update(paybill_instructions_sent=timezone.now())
    return {
        **details,
        'steps': [
            '1. Go to M-Pesa menu on your phone',
            '2. Select Lipa na M-Pesa',
            '3. Select Pay Bill',
            f"4. Enter Business Number: {details['paybill_number']}",
            f"5. Enter Account Number: {details['account_number']}",
            f"6. Enter Amount: {details['amount']}",
            '7. Enter your M-Pesa PIN',
            '8. Confirm the transaction',
            '9. You will receive an M-Pesa receipt (e.g., SH12ABC34)',
            '10. Enter the receipt number in the form below',
        ],
    }
