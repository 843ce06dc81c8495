"""
URL routing for payment gateway endpoints.
"""
from django.urls import path
from . import views

app_name = 'payments'

urlpatterns = [
    path('payments/stripe/intent/', views.StripeIntentView.as_view(), name='stripe-intent'),
    path('payments/stripe/webhook/', views.StripeWebhookView.as_view(), name='stripe-webhook'),
    path('payments/razorpay/order/', views.RazorpayOrderView.as_view(), name='razorpay-order'),
    path('payments/razorpay/verify/', views.RazorpayVerifyView.as_view(), name='razorpay-verify'),
]
