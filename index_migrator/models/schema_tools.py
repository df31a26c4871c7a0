from typing import Iterable


def exactly_one_of(keys: Iterable[str]):
    """A cerberus `check_with` rule requiring the dict to hold exactly one of `keys`."""
    options = sorted(keys)

    def check(field, value, error):
        present = [key for key in options if key in value]
        if not present:
            error(field, f"Exactly one of {options} is required, none was given")
        elif len(present) > 1:
            error(field, f"Only one of {options} may be given, found {present}")
    return check
