from rest_framework import status
from rest_framework.exceptions import APIException


class MpesaGatewayError(Exception):
    """Daraja could not be reached or answered with something unusable."""


class PaymentError(APIException):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = 'Payment request could not be processed.'
    default_code = 'payment_error'


class InvalidPhoneNumber(PaymentError):
    default_detail = 'Invalid phone number format. Use 254XXXXXXXXX'
    default_code = 'invalid_phone_number'


class InvalidReceiptFormat(PaymentError):
    status_code = status.HTTP_422_UNPROCESSABLE_ENTITY
    default_detail = 'Invalid M-Pesa receipt format. Receipt should be like: SH12ABC34'
    default_code = 'invalid_receipt'


class DuplicateReceipt(PaymentError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'This receipt number has already been used for another payment.'
    default_code = 'receipt_already_used'


class RetryLimitReached(PaymentError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_detail = 'Maximum STK push attempts reached. Please use an alternative payment method.'
    default_code = 'retry_limit_reached'


class CooldownActive(PaymentError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    default_code = 'please_wait'

    def __init__(self, wait_seconds, action='trying again'):
        self.wait_seconds = int(wait_seconds)
        super().__init__(f'Please wait {self.wait_seconds} seconds before {action}.')


class PaymentNotAwaitingApproval(PaymentError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Payment is not awaiting admin approval.'
    default_code = 'not_awaiting_approval'


class InvalidTransition(PaymentError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = 'Payment cannot move to the requested status.'
    default_code = 'invalid_transition'
