from finance.routers.invoices import router as invoices_router
from finance.routers.payments import router as payments_router
from finance.routers.reconciliation import router as reconciliation_router

urlpatterns = (
    invoices_router.urls +
    payments_router.urls +
    reconciliation_router.urls
)
