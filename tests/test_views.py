"""Tests for the payment HTTP endpoints."""

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from campaigns.models import Advertiser
from payments.models import Payment
from tests.conftest import callback_body, make_payment

pytestmark = pytest.mark.django_db


class TestInitiateEndpoint:

    def test_initiate(self, api_client, campaign, stk_push, notifier):
        response = api_client.post('/api/initiate-stk-push/', {
            'phone_number': '254712345678',
            'amount': 5000,
            'campaign_id': campaign.id,
            'campaign_data': {'helmets': 50},
        }, format='json')

        assert response.status_code == 200
        assert response.data['success'] is True
        assert response.data['checkout_request_id'] == 'ws_CO_0001'
        assert Payment.objects.get().campaign == campaign

    def test_rejected_push_is_400_with_paybill(self, api_client, stk_push):
        stk_push.return_value = (400, {'errorMessage': 'Bad Request - Invalid Amount'})

        response = api_client.post('/api/initiate-stk-push/', {
            'phone_number': '0712345678', 'amount': 5000,
        }, format='json')

        assert response.status_code == 400
        assert response.data['paybill_details']['account_number'] == '254712345678'

    @pytest.mark.parametrize('body', [
        {'phone_number': '12345', 'amount': 5000},
        {'phone_number': '254712345678', 'amount': 0},
        {'phone_number': '254712345678', 'amount': 150001},
        {'amount': 5000},
    ])
    def test_validation(self, api_client, stk_push, body):
        response = api_client.post('/api/initiate-stk-push/', body, format='json')

        assert response.status_code == 400
        stk_push.assert_not_called()

    def test_other_advertisers_campaign_is_404(self, api_client, stk_push):
        other_user = get_user_model().objects.create_user(username='rival', password='secret')
        rival = Advertiser.objects.create(user=other_user, company_name='Rival Ltd')
        rival_campaign = rival.campaigns.create(name='Theirs')

        response = api_client.post('/api/initiate-stk-push/', {
            'phone_number': '254712345678', 'amount': 5000, 'campaign_id': rival_campaign.id,
        }, format='json')

        assert response.status_code == 404

    def test_user_without_advertiser_profile_is_403(self, db, stk_push):
        client = APIClient()
        client.force_authenticate(get_user_model().objects.create_user(username='visitor', password='secret'))

        response = client.post('/api/initiate-stk-push/', {
            'phone_number': '254712345678', 'amount': 5000,
        }, format='json')

        assert response.status_code == 403

    def test_anonymous_is_refused(self, db):
        response = APIClient().post('/api/initiate-stk-push/', {}, format='json')

        assert response.status_code in (401, 403)


class TestRetryEndpoint:

    def test_retry_inside_cooldown_is_429(self, api_client, payment, stk_push):
        response = api_client.post('/api/retry-stk-push/', {'payment_id': payment.id}, format='json')

        assert response.status_code == 429
        assert response.data['detail'].code == 'please_wait'


class TestCallbackEndpoint:

    def test_successful_callback(self, payment, notifier):
        response = APIClient().post('/api/payment-callback/', callback_body(), format='json')

        assert response.status_code == 200
        assert response.data == {'ResultCode': 0, 'ResultDesc': 'Accepted'}
        payment.refresh_from_db()
        assert payment.status == 'completed'

    def test_unparseable_body_is_still_accepted(self, payment):
        response = APIClient().post('/api/payment-callback/', data='{not json', content_type='application/json')

        assert response.status_code == 200
        payment.refresh_from_db()
        assert payment.status == 'pending'

    def test_unknown_checkout_is_still_accepted(self, db):
        response = APIClient().post('/api/payment-callback/', callback_body('ws_CO_UNKNOWN'), format='json')

        assert response.status_code == 200

    def test_timeout_url(self, db):
        response = APIClient().post('/api/payment-timeout/', {'Result': {}}, format='json')

        assert response.status_code == 200


class TestQueryEndpoint:

    def test_query_by_checkout_id(self, api_client, payment, stk_query):
        stk_query.return_value = (500, {'errorMessage': 'The transaction is being processed'})

        response = api_client.post('/api/query-status/', {'checkout_request_id': 'ws_CO_0001'}, format='json')

        assert response.status_code == 200
        assert response.data['status'] == 'pending'

    def test_throttled_query_is_429(self, api_client, payment, stk_query):
        stk_query.return_value = (500, {'errorMessage': 'The transaction is being processed'})
        api_client.post('/api/query-status/', {'payment_id': payment.id}, format='json')

        response = api_client.post('/api/query-status/', {'payment_id': payment.id}, format='json')

        assert response.status_code == 429

    def test_needs_an_identifier(self, api_client):
        response = api_client.post('/api/query-status/', {}, format='json')

        assert response.status_code == 400


class TestVerifyReceiptEndpoint:

    def test_submit_receipt(self, api_client, campaign, notifier):
        response = api_client.post('/api/verify-receipt/', {
            'receipt_number': 'SH99ZZZ11', 'amount': 5000, 'phone_number': '254712345678',
            'campaign_id': campaign.id,
        }, format='json')

        assert response.status_code == 200
        assert response.data['requires_approval'] is True

    def test_duplicate_receipt_is_409(self, api_client, advertiser, notifier):
        make_payment(advertiser, status='completed', mpesa_receipt_number='SH99ZZZ11')

        response = api_client.post('/api/verify-receipt/', {
            'receipt_number': 'SH99ZZZ11', 'amount': 5000, 'phone_number': '254712345678',
        }, format='json')

        assert response.status_code == 409

    def test_bad_receipt_is_422(self, api_client, notifier):
        response = api_client.post('/api/verify-receipt/', {
            'receipt_number': '1234', 'amount': 5000, 'phone_number': '254712345678',
        }, format='json')

        assert response.status_code == 422


class TestAdminEndpoints:

    @pytest.fixture
    def awaiting(self, advertiser):
        return make_payment(
            advertiser, status='pending_verification', requires_admin_approval=True,
            mpesa_receipt_number='SH99ZZZ11', verification_method='manual_receipt',
        )

    def test_admin_can_approve(self, admin_user, awaiting, notifier):
        client = APIClient()
        client.force_authenticate(admin_user)

        response = client.post(f'/api/payments/{awaiting.id}/approve/', {'note': 'ok'}, format='json')

        assert response.status_code == 200
        assert response.data['payment']['status'] == 'completed'

    def test_admin_can_reject(self, admin_user, awaiting, notifier):
        client = APIClient()
        client.force_authenticate(admin_user)

        response = client.post(f'/api/payments/{awaiting.id}/reject/', {'reason': 'receipt not found'}, format='json')

        assert response.status_code == 200
        assert response.data['payment']['status_message'] == 'Rejected: receipt not found'

    def test_reject_needs_reason(self, admin_user, awaiting):
        client = APIClient()
        client.force_authenticate(admin_user)

        response = client.post(f'/api/payments/{awaiting.id}/reject/', {}, format='json')

        assert response.status_code == 400

    def test_advertiser_cannot_approve(self, api_client, awaiting):
        response = api_client.post(f'/api/payments/{awaiting.id}/approve/', {}, format='json')

        assert response.status_code == 403

    def test_approving_twice_is_409(self, admin_user, awaiting, notifier):
        client = APIClient()
        client.force_authenticate(admin_user)
        client.post(f'/api/payments/{awaiting.id}/approve/', {}, format='json')

        response = client.post(f'/api/payments/{awaiting.id}/approve/', {}, format='json')

        assert response.status_code == 409


class TestReadEndpoints:

    def test_list_filters_by_status(self, api_client, advertiser):
        make_payment(advertiser, status='completed')
        make_payment(advertiser, status='failed')

        response = api_client.get('/api/payments/', {'status': 'completed'})

        assert response.status_code == 200
        assert response.data['count'] == 1
        assert response.data['results'][0]['status'] == 'completed'

    def test_list_hides_other_advertisers(self, api_client, advertiser):
        other_user = get_user_model().objects.create_user(username='rival', password='secret')
        rival = Advertiser.objects.create(user=other_user, company_name='Rival Ltd')
        make_payment(rival, status='completed')

        response = api_client.get('/api/payments/')

        assert response.data['count'] == 0

    def test_stats(self, api_client, advertiser):
        make_payment(advertiser, status='completed')
        make_payment(advertiser, status='completed')
        make_payment(advertiser, status='pending')
        make_payment(advertiser, status='pending_verification', requires_admin_approval=True)

        response = api_client.get('/api/payments/stats/')

        stats = response.data['stats']
        assert stats['total_payments'] == 4
        assert stats['completed_payments'] == 2
        assert stats['pending_payments'] == 1
        assert stats['awaiting_verification'] == 1
        assert stats['total_amount_paid'] == '10000.00'
        assert stats['total_pending_amount'] == '5000.00'

    def test_detail_by_reference(self, api_client, payment):
        response = api_client.get(f'/api/payments/{payment.payment_reference}/')

        assert response.status_code == 200
        assert response.data['payment']['reference'] == payment.payment_reference
        assert response.data['payment']['campaign']['name'] == 'Launch'

    def test_paybill_instructions(self, api_client, payment):
        response = api_client.post('/api/paybill-instructions/', {'payment_id': payment.id}, format='json')

        instructions = response.data['instructions']
        assert instructions['paybill_number'] == '174379'
        assert instructions['account_number'] == '254712345678'
        assert len(instructions['steps']) == 10
        payment.refresh_from_db()
        assert payment.paybill_instructions_sent is not None
