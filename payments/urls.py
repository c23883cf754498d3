from django.urls import path
from . import views

urlpatterns = [
    path('initiate-stk-push/', views.initiate_stk_push, name='initiate-stk-push'),
    path('retry-stk-push/', views.retry_stk_push, name='retry-stk-push'),
    path('payment-callback/', views.mpesa_callback, name='mpesa-callback'),
    path('payment-timeout/', views.mpesa_timeout, name='mpesa-timeout'),
    path('query-status/', views.query_status, name='query-status'),
    path('verify-receipt/', views.verify_receipt, name='verify-receipt'),
    path('paybill-instructions/', views.paybill_instructions, name='paybill-instructions'),
    path('payments/', views.payment_list, name='payment-list'),
    path('payments/stats/', views.payment_stats, name='payment-stats'),
    path('payments/<int:payment_id>/approve/', views.approve_payment, name='payment-approve'),
    path('payments/<int:payment_id>/reject/', views.reject_payment, name='payment-reject'),
    path('payments/<str:reference>/', views.payment_detail, name='payment-detail'),
]
