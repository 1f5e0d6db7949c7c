from datetime import date
from decimal import Decimal
from itertools import count

from django.contrib.auth import get_user_model

from finance.models import InvoiceLineItem
from finance.services.invoicing import create_invoice
from property.models import Property, Unit
from tenant.models import Tenant

User = get_user_model()

_sequence = count(1)


def make_user(role='tenant', **extra):
    n = next(_sequence)
    return User.objects.create_user(
        email=f'{role}{n}@example.com',
        username=f'{role}{n}',
        password='Password123!',
        role=role,
        **extra
    )


def make_property(manager=None, landlord=None, **extra):
    return Property.objects.create(
        name=extra.pop('name', f'Property {next(_sequence)}'),
        address='123 Test St',
        manager=manager,
        landlord=landlord,
        **extra
    )


def make_unit(rental_property=None, monthly_rent=Decimal('5000.00'), **extra):
    n = next(_sequence)
    return Unit.objects.create(
        property=rental_property or make_property(),
        name=extra.pop('name', f'Unit {n}'),
        unit_number=extra.pop('unit_number', f'U{n}'),
        monthly_rent=monthly_rent,
        deposit_amount=extra.pop('deposit_amount', monthly_rent),
        **extra
    )


def make_tenant(unit=None, user=None, status=Tenant.TenantStatus.ACTIVE, **extra):
    return Tenant.objects.create(
        user=user or make_user('tenant', phone_number=f'07{next(_sequence):08d}'),
        unit=unit or make_unit(),
        status=status,
        lease_start_date=extra.pop('lease_start_date', date(2024, 1, 1)),
        **extra
    )


def make_invoice(tenant, amount, due_date, opening_balance=Decimal('0.00'), period_start=None):
    period_start = period_start or due_date.replace(day=1)
    period_end = date(period_start.year + (period_start.month == 12), period_start.month % 12 + 1, 1)
    return create_invoice(
        tenant,
        period_start,
        period_end,
        due_date,
        [{
            'item_type': InvoiceLineItem.ItemType.RENT,
            'description': f'Rent {period_start:%B %Y}',
            'unit_price': Decimal(str(amount)),
        }],
        opening_balance=Decimal(str(opening_balance)),
    )


def refresh(obj):
    obj.refresh_from_db()
    return obj