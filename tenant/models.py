from django.db import models
from django.core.validators import MinValueValidator
from django.utils.translation import gettext_lazy as _
from django.core.exceptions import ValidationError
from decimal import Decimal

from a_users.models import CustomUser
from property.models import Unit


class Tenant(models.Model):
    """Tenant model representing a renter in the property management system."""

    class TenantStatus(models.TextChoices):
        ACTIVE = 'active', _('Active')
        INACTIVE = 'inactive', _('Inactive')
        PENDING = 'pending', _('Pending')
        SUSPENDED = 'suspended', _('Suspended')
        MOVED_OUT = 'moved_out', _('Moved Out')

    user = models.OneToOneField(
        CustomUser,
        on_delete=models.CASCADE,
        related_name='tenant_profile',
        limit_choices_to={'role': 'tenant'},
        help_text=_("User associated with this tenant profile")
    )

    unit = models.ForeignKey(
        Unit,
        on_delete=models.PROTECT,
        related_name='tenants',
        help_text=_("Unit assigned to this tenant")
    )

    status = models.CharField(
        max_length=20,
        choices=TenantStatus.choices,
        default=TenantStatus.PENDING,
        help_text=_("Current status of the tenant")
    )

    monthly_rent_override = models.DecimalField(
        _("Monthly rent override"),
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        null=True,
        blank=True,
        help_text=_("Override monthly rent amount (if different from the unit)")
    )

    deposit_amount_override = models.DecimalField(
        _("Security deposit override"),
        max_digits=10,
        decimal_places=2,
        validators=[MinValueValidator(Decimal('0.00'))],
        null=True,
        blank=True,
        help_text=_("Override security deposit amount (if different from the unit)")
    )

    lease_start_date = models.DateField(
        _("Lease start date"),
        help_text=_("Date when the lease begins")
    )

    lease_end_date = models.DateField(
        _("Lease end date"),
        help_text=_("Date when the lease expires"),
        null=True,
        blank=True
    )

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        verbose_name = _('Tenant')
        verbose_name_plural = _('Tenants')
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status']),
        ]
        constraints = [
            models.CheckConstraint(
                check=models.Q(lease_end_date__isnull=True) | models.Q(
                    lease_end_date__gt=models.F('lease_start_date')),
                name='lease_end_after_start'
            ),
        ]

    def __str__(self):
        return f"{self.user.get_full_name()} - {self.unit}"

    def save(self, *args, **kwargs):
        self.full_clean()
        super().save(*args, **kwargs)

    def clean(self):
        super().clean()

        if self.lease_start_date and self.lease_end_date:
            if self.lease_end_date <= self.lease_start_date:
                raise ValidationError({
                    'lease_end_date': _('Lease end date must be after start date.')
                })

    @property
    def monthly_rent(self):
        """Monthly rent, either overridden or taken from the unit."""
        if self.monthly_rent_override is not None:
            return self.monthly_rent_override
        return self.unit.monthly_rent

    @property
    def deposit_amount(self):
        if self.deposit_amount_override is not None:
            return self.deposit_amount_override
        return self.unit.deposit_amount

    @property
    def rental_property(self):
        return self.unit.property

    @property
    def landlord(self):
        return self.unit.property.landlord

    @property
    def is_active(self):
        return self.status == self.TenantStatus.ACTIVE
