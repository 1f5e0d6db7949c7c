from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin, BaseUserManager
from django.core.validators import RegexValidator
from django.db import models
from django.utils.translation import gettext_lazy as _
from utils.common import EnumWithChoices


LEDGER_OPERATOR_ROLES = ('admin', 'landlord', 'property_manager')


class CustomUserManager(BaseUserManager):
    """Custom user manager for CustomUser model."""

    def create_user(self, email, username, password=None, **extra_fields):
        """Create and save a regular user with the given email and password."""
        if not email:
            raise ValueError(_('The Email field must be set'))

        email = self.normalize_email(email)
        if extra_fields.get('phone_number') == '':
            extra_fields['phone_number'] = None

        user = self.model(email=email, username=username, **extra_fields)
        user.set_password(password)
        user.save(using=self._db)
        return user

    def create_superuser(self, email, username, password=None, **extra_fields):
        """Create and save a superuser with the given email and password."""
        extra_fields.setdefault('is_staff', True)
        extra_fields.setdefault('is_superuser', True)
        extra_fields.setdefault('role', 'admin')

        if extra_fields.get('is_staff') is not True:
            raise ValueError(_('Superuser must have is_staff=True.'))
        if extra_fields.get('is_superuser') is not True:
            raise ValueError(_('Superuser must have is_superuser=True.'))

        return self.create_user(email, username, password, **extra_fields)


class CustomUser(AbstractBaseUser, PermissionsMixin):
    """Platform user; the role decides which ledger operations are allowed."""

    ROLE_CHOICES = (
        ('tenant', 'Tenant'),
        ('landlord', 'Landlord'),
        ('property_manager', 'Property Manager'),
        ('agent', 'Agent'),
        ('admin', 'Admin'),
        ('caretaker', 'Caretaker'),
    )

    class UserStatus(EnumWithChoices):
        ACTIVE = "active"
        INACTIVE = "inactive"
        SUSPENDED = "suspended"

    email = models.EmailField(_('email address'), unique=True)
    username = models.CharField(_('username'), max_length=150, unique=True)
    first_name = models.CharField(_('first name'), max_length=150, blank=True)
    last_name = models.CharField(_('last name'), max_length=150, blank=True)

    role = models.CharField(
        max_length=20,
        choices=ROLE_CHOICES,
        default='tenant',
        help_text=_("User's role in the system")
    )

    phone_number = models.CharField(
        _('phone number'),
        max_length=15,
        blank=True,
        null=True,
        unique=True,
        help_text=_("Contact phone number, also used for M-Pesa prompts"),
        validators=[RegexValidator(
            regex=r"^\+?1?\d{9,15}$",
            message=_("Phone number must be entered in the format: '+254...' or '07...'. Up to 15 digits allowed.")
        )]
    )

    user_status = models.CharField(
        max_length=20,
        choices=UserStatus.choices(),
        default=UserStatus.ACTIVE.value,
        help_text=_("Current status of the user account")
    )

    is_active = models.BooleanField(default=True, help_text=_("Designates whether this user should be treated as active"))
    is_staff = models.BooleanField(default=False, help_text=_("Designates whether the user can log into the admin site"))

    date_joined = models.DateTimeField(auto_now_add=True, help_text=_("Date when the user account was created"))
    updated_at = models.DateTimeField(auto_now=True, help_text=_("Date and time when the user was last updated"))

    objects = CustomUserManager()
    USERNAME_FIELD = 'email'
    REQUIRED_FIELDS = ['username']

    class Meta:
        verbose_name = _('user')
        verbose_name_plural = _('users')
        indexes = [
            models.Index(fields=['role']),
            models.Index(fields=['phone_number']),
        ]

    def __str__(self):
        return f"{self.get_full_name()} ({self.email})"

    def get_full_name(self):
        return f"{self.first_name} {self.last_name}".strip() or self.username

    def save(self, *args, **kwargs):
        if self.email:
            self.email = self.email.lower()
        if not self.pk and self.role in ['admin', 'property_manager']:
            self.is_staff = True
        super().save(*args, **kwargs)

    @property
    def can_operate_ledger(self):
        """Allocation, reversal, triage and disbursement are limited to these roles."""
        return self.is_active and self.role in LEDGER_OPERATOR_ROLES
