from enum import Enum
import re


class EnumWithChoices(Enum):

    @classmethod
    def choices(cls):
        return [(key.value, key.name) for key in cls]


def normalize_phone_number(phone):
    """Return a phone number in the 2547XXXXXXXX form expected by M-Pesa."""
    if not phone:
        return ''
    digits = re.sub(r'\D', '', str(phone))
    if digits.startswith('0'):
        digits = '254' + digits[1:]
    elif not digits.startswith('254'):
        digits = '254' + digits
    return digits
