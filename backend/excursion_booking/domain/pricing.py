from .errors import FieldError, ValidationError

PRICE_PER_PERSON = 165


def calculate_total_amount(adults: int, children: int = 0, *, price_per_person: int = PRICE_PER_PERSON) -> int:
    """Total in whole currency units. Children are charged the same rate as adults."""
    errors: list[FieldError] = []
    if adults < 0:
        errors.append(FieldError("adults", "adults cannot be negative"))
    if children < 0:
        errors.append(FieldError("children", "children cannot be negative"))
    if errors:
        raise ValidationError(errors)
    return (adults + children) * price_per_person


def to_minor_units(amount: int) -> int:
    return amount * 100
