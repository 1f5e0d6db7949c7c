from rest_framework.routers import DefaultRouter
from finance.views import UnmatchedPaymentViewSet

router = DefaultRouter()
router.register(r'unmatched-payments', UnmatchedPaymentViewSet, basename='unmatchedpayment')
