from django.core.exceptions import ValidationError
from django.core.validators import RegexValidator, validate_ipv46_address


validate_dotted_quad = RegexValidator(
    regex=r"^(?:[0-9]{1,3}\.){3}[0-9]{1,3}$",
    message="Enter an address in dotted-quad form, e.g. 192.168.1.10.",
    code="invalid_address",
)


def validate_source_address(value):
    """Accept what a device may be registered with, or any IPv4/IPv6 address."""
    try:
        validate_dotted_quad(value)
    except ValidationError:
        validate_ipv46_address(value)
