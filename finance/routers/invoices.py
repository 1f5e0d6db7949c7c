from rest_framework.routers import DefaultRouter
from finance.views import BalanceViewSet, InvoiceViewSet

router = DefaultRouter()
router.register(r'invoices', InvoiceViewSet, basename='invoice')
router.register(r'balances', BalanceViewSet, basename='balance')
