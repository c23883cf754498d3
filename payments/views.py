import logging
from decimal import Decimal

from django.db.models import Count, Q, Sum
from rest_framework import status
from rest_framework.decorators import api_view, authentication_classes, permission_classes
from rest_framework.exceptions import ParseError, PermissionDenied
from rest_framework.generics import get_object_or_404
from rest_framework.pagination import PageNumberPagination
from rest_framework.permissions import AllowAny, IsAdminUser
from rest_framework.response import Response

from campaigns.models import Campaign
from . import services
from .models import Payment
from .serializers import (
    ApproveSerializer,
    InitiatePaymentSerializer,
    PaymentIdSerializer,
    PaymentSerializer,
    QueryStatusSerializer,
    RejectSerializer,
    VerifyReceiptSerializer,
)

logger = logging.getLogger(__name__)


def _advertiser(request):
    advertiser = getattr(request.user, 'advertiser', None)
    if advertiser is None:
        raise PermissionDenied('You must have an advertiser profile to make payments.')
    return advertiser


def _campaign(advertiser, campaign_id):
    if not campaign_id:
        return None
    return get_object_or_404(Campaign, pk=campaign_id, advertiser=advertiser)


def _own_payment(advertiser, **lookup):
    return get_object_or_404(Payment, advertiser=advertiser, **lookup)


@api_view(['POST'])
def initiate_stk_push(request):
    """
    Initiates an STK push to the advertiser's phone.
    Expects JSON: {
        "phone_number": "2547XXXXXXXX",
        "amount": 5000,
        "campaign_id": 1,
        "campaign_data": {...},
        "description": "Campaign Payment"
    }
    """
    advertiser = _advertiser(request)
    serializer = InitiatePaymentSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    result = services.initiate_stk_push(
        advertiser,
        data['phone_number'],
        data['amount'],
        campaign=_campaign(advertiser, data.get('campaign_id')),
        campaign_data=data.get('campaign_data'),
        description=data.get('description') or 'Campaign Payment',
    )
    return Response(result, status=status.HTTP_200_OK if result['success'] else status.HTTP_400_BAD_REQUEST)


@api_view(['POST'])
def retry_stk_push(request):
    advertiser = _advertiser(request)
    serializer = PaymentIdSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    payment = _own_payment(advertiser, pk=serializer.validated_data['payment_id'])

    result = services.retry_stk_push(payment)
    return Response(result, status=status.HTTP_200_OK if result['success'] else status.HTTP_400_BAD_REQUEST)


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def mpesa_callback(request):
    """
    Handles the M-Pesa STK push callback.
    Always acknowledged so Safaricom stops retrying, even when we ignore it.
    """
    try:
        data = request.data
    except ParseError:
        logger.error("Failed to decode JSON from M-Pesa callback")
        data = None

    logger.info("M-Pesa callback received: %s", data)
    try:
        services.process_callback(data)
    except Exception:
        logger.exception("Critical error in M-Pesa callback")

    return Response({"ResultCode": 0, "ResultDesc": "Accepted"}, status=status.HTTP_200_OK)


@api_view(['POST'])
@authentication_classes([])
@permission_classes([AllowAny])
def mpesa_timeout(request):
    try:
        logger.warning("M-Pesa timeout callback received: %s", request.data)
    except ParseError:
        logger.warning("M-Pesa timeout callback with unreadable body")
    return Response({"ResultCode": 0, "ResultDesc": "Timeout acknowledged"}, status=status.HTTP_200_OK)


@api_view(['POST'])
def query_status(request):
    advertiser = _advertiser(request)
    serializer = QueryStatusSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    lookup = {}
    if data.get('payment_id'):
        lookup['pk'] = data['payment_id']
    if data.get('checkout_request_id'):
        lookup['gateway_transaction_id'] = data['checkout_request_id']
    payment = _own_payment(advertiser, **lookup)

    result = services.query_payment_status(payment, data.get('checkout_request_id'))
    return Response(result)


@api_view(['POST'])
def verify_receipt(request):
    advertiser = _advertiser(request)
    serializer = VerifyReceiptSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    data = serializer.validated_data

    payment = None
    if data.get('payment_id'):
        payment = _own_payment(advertiser, pk=data['payment_id'])

    result = services.verify_manual_receipt(
        advertiser,
        data['receipt_number'],
        data['amount'],
        data['phone_number'],
        campaign=_campaign(advertiser, data.get('campaign_id')),
        campaign_data=data.get('campaign_data'),
        payment=payment,
    )
    return Response(result)


@api_view(['POST'])
def paybill_instructions(request):
    advertiser = _advertiser(request)
    serializer = PaymentIdSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    payment = _own_payment(advertiser, pk=serializer.validated_data['payment_id'])

    return Response({'success': True, 'instructions': services.paybill_instructions(payment)})


@api_view(['GET'])
def payment_list(request):
    advertiser = _advertiser(request)
    payments = Payment.objects.filter(advertiser=advertiser).select_related('campaign')

    params = request.query_params
    if params.get('status'):
        payments = payments.filter(status=params['status'])
    if params.get('payment_method'):
        payments = payments.filter(payment_method=params['payment_method'])
    if params.get('campaign_id'):
        payments = payments.filter(campaign_id=params['campaign_id'])
    if params.get('from_date'):
        payments = payments.filter(initiated_at__date__gte=params['from_date'])
    if params.get('to_date'):
        payments = payments.filter(initiated_at__date__lte=params['to_date'])

    paginator = PageNumberPagination()
    paginator.page_size_query_param = 'per_page'
    paginator.max_page_size = 100
    page = paginator.paginate_queryset(payments, request)
    return paginator.get_paginated_response(PaymentSerializer(page, many=True).data)


@api_view(['GET'])
def payment_stats(request):
    advertiser = _advertiser(request)
    pending = Q(status__in=('pending', 'processing'))
    stats = Payment.objects.filter(advertiser=advertiser).aggregate(
        total_payments=Count('id'),
        completed_payments=Count('id', filter=Q(status='completed')),
        pending_payments=Count('id', filter=pending),
        awaiting_verification=Count('id', filter=Q(status='pending_verification')),
        failed_payments=Count('id', filter=Q(status='failed')),
        total_amount_paid=Sum('amount', filter=Q(status='completed')),
        total_pending_amount=Sum('amount', filter=pending),
    )
    for key in ('total_amount_paid', 'total_pending_amount'):
        stats[key] = str(Decimal(stats[key] or 0).quantize(Decimal('0.01')))
    return Response({'success': True, 'stats': stats})


@api_view(['GET'])
def payment_detail(request, reference):
    advertiser = _advertiser(request)
    payment = _own_payment(advertiser, payment_reference=reference)
    return Response({'success': True, 'payment': PaymentSerializer(payment).data})


@api_view(['POST'])
@permission_classes([IsAdminUser])
def approve_payment(request, payment_id):
    serializer = ApproveSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    payment = get_object_or_404(Payment, pk=payment_id)

    payment = services.approve_payment(payment, request.user, serializer.validated_data.get('note'))
    return Response({'success': True, 'payment': PaymentSerializer(payment).data})


@api_view(['POST'])
@permission_classes([IsAdminUser])
def reject_payment(request, payment_id):
    serializer = RejectSerializer(data=request.data)
    serializer.is_valid(raise_exception=True)
    payment = get_object_or_404(Payment, pk=payment_id)

    payment = services.reject_payment(payment, request.user, serializer.validated_data['reason'])
    return Response({'success': True, 'payment': PaymentSerializer(payment).data})
