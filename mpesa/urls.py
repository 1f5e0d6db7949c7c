from django.urls import include, path
from rest_framework.routers import DefaultRouter

from . import views

router = DefaultRouter()
router.register(r'transactions', views.ExternalTransactionViewSet, basename='mpesa-transaction')

mpesa_urls = [
    path('stkpush/', views.StkPushView.as_view(), name='mpesa-stkpush'),
    path('stkpush/callback/', views.StkCallbackView.as_view(), name='mpesa-stk-callback'),
    path('c2b/validation/', views.C2BValidationView.as_view(), name='mpesa-c2b-validation'),
    path('c2b/confirmation/', views.C2BConfirmationView.as_view(), name='mpesa-c2b-confirmation'),
    path('b2c/result/', views.B2CResultView.as_view(), name='mpesa-b2c-result'),
    path('b2c/timeout/', views.B2CTimeoutView.as_view(), name='mpesa-b2c-timeout'),
    path('health/', views.HealthView.as_view(), name='mpesa-health'),
] + router.urls

urlpatterns = [
    path('mpesa/', include(mpesa_urls)),
]
