from django.core.exceptions import ValidationError
from django.db import models
from django.utils.translation import gettext_lazy as _
from a_users.models import CustomUser


class Property(models.Model):
    name = models.CharField(
        max_length=100,
        verbose_name=_("Property name"),
        help_text=_("Unique identity name of the property"),
        unique=True,
    )

    address = models.CharField(
        max_length=200,
        verbose_name=_("Address"),
        help_text=_("Physical address of the property"),
    )

    landlord = models.ForeignKey(
        CustomUser,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        limit_choices_to={'role': 'landlord'},
        related_name="owned_properties",
        verbose_name=_("Landlord"),
        help_text=_("Owner who receives the rent collected for this property"),
    )

    manager = models.ForeignKey(
        CustomUser,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        limit_choices_to={'role': 'property_manager'},
        related_name="managed_properties",
        verbose_name=_("Property Manager"),
        help_text=_("User assigned to manage this property"),
    )

    paybill_number = models.CharField(
        max_length=20,
        blank=True,
        verbose_name=_("Paybill number"),
        help_text=_("M-Pesa business short code tenants of this property pay into"),
    )

    is_active = models.BooleanField(
        default=True,
        verbose_name=_("Active Status"),
        help_text=_("Whether this property is currently active"),
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        verbose_name=_("Created At"),
        help_text=_("Date and time when the property was created"),
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        verbose_name=_("Updated At"),
        help_text=_("Date and time when the property was last updated"),
    )

    class Meta:
        verbose_name = _('Property')
        verbose_name_plural = _('Properties')
        ordering = ['name']
        indexes = [
            models.Index(fields=['manager']),
            models.Index(fields=['landlord']),
            models.Index(fields=['paybill_number']),
        ]

    def __str__(self):
        return self.name


class Unit(models.Model):

    class OccupiedStatus(models.TextChoices):
        OCCUPIED = "Occupied", _("Occupied")
        VACANT = "Vacant", _("Vacant")
        MAINTENANCE = "Maintenance", _("Maintenance")
        CLOSED = "Closed", _("Closed")

    property = models.ForeignKey(
        'Property',
        on_delete=models.CASCADE,
        verbose_name=_("Property"),
        help_text=_("Property this unit belongs to"),
        related_name="units",
    )

    name = models.CharField(
        max_length=100,
        blank=True,
        verbose_name=_("Unit Name"),
        help_text=_("Full name of the unit e.g., 'Second Floor - Unit 2'"),
    )

    unit_number = models.CharField(
        max_length=50,
        verbose_name=_("Unit Number"),
        help_text=_("Identifier of the unit within its property"),
    )

    payment_account_number = models.CharField(
        max_length=50,
        unique=True,
        null=True,
        blank=True,
        verbose_name=_("Payment account number"),
        help_text=_("Account reference tenants enter when paying by paybill"),
    )

    occupied_status = models.CharField(
        max_length=20,
        choices=OccupiedStatus.choices,
        default=OccupiedStatus.VACANT,
        verbose_name=_("Occupancy Status"),
        help_text=_("Current occupancy status of the unit"),
    )

    monthly_rent = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        verbose_name=_("Monthly Rent"),
        help_text=_("Monthly rent amount for this unit"),
    )

    deposit_amount = models.DecimalField(
        max_digits=10,
        decimal_places=2,
        verbose_name=_("Deposit Amount"),
        help_text=_("Security deposit for this unit"),
        default=0,
    )

    created_at = models.DateTimeField(
        auto_now_add=True,
        verbose_name=_("Created At"),
        help_text=_("Date and time when the unit was created"),
    )

    updated_at = models.DateTimeField(
        auto_now=True,
        verbose_name=_("Updated At"),
        help_text=_("Date and time when the unit was last updated"),
    )

    class Meta:
        verbose_name = _("Unit")
        verbose_name_plural = _("Units")
        ordering = ['property', 'unit_number']
        unique_together = ['property', 'unit_number']
        indexes = [
            models.Index(fields=['unit_number']),
        ]

    def __str__(self):
        return f"{self.property.name} - {self.unit_number}"

    def clean(self):
        super().clean()
        if self.monthly_rent is not None and self.monthly_rent < 0:
            raise ValidationError(
                {'monthly_rent': _("Monthly rent cannot be negative")}
            )
        if self.deposit_amount is not None and self.deposit_amount < 0:
            raise ValidationError(
                {'deposit_amount': _("Deposit amount cannot be negative")}
            )

    def save(self, *args, **kwargs):
        if self.payment_account_number == '':
            self.payment_account_number = None
        self.full_clean()
        super().save(*args, **kwargs)
