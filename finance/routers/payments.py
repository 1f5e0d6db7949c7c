from rest_framework.routers import DefaultRouter
from finance.views import DepositRefundViewSet, PaymentViewSet

router = DefaultRouter()
router.register(r'payments', PaymentViewSet, basename='payment')
router.register(r'deposit-refunds', DepositRefundViewSet, basename='depositrefund')
