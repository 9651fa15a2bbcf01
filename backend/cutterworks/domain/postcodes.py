import re
from typing import Dict, NamedTuple, Optional, Pattern


class PostcodeRule(NamedTuple):
    pattern: Pattern
    message: str
    example: str


class PostcodeCheck(NamedTuple):
    valid: bool
    message: Optional[str]
    example: str


_US = PostcodeRule(re.compile(r"^[0-9]{5}(-[0-9]{4})?$"), "US ZIP code must be 5 digits or ZIP+4 format", "12345")
_UK = PostcodeRule(
    re.compile(r"^[A-Z]{1,2}[0-9R][0-9A-Z]? [0-9][A-Z]{2}$", re.I),
    "UK postcode must be in valid format",
    "SW1A 1AA",
)

POSTCODE_RULES: Dict[str, PostcodeRule] = {
    "Australia": PostcodeRule(re.compile(r"^[0-9]{4}$"), "Australian postcode must be 4 digits", "2000"),
    "United States": _US,
    "USA": _US,
    "Canada": PostcodeRule(
        re.compile(r"^[A-Z][0-9][A-Z] [0-9][A-Z][0-9]$", re.I),
        "Canadian postal code must be in A1A 1A1 format",
        "K1A 0A6",
    ),
    "United Kingdom": _UK,
    "UK": _UK,
    "Germany": PostcodeRule(re.compile(r"^[0-9]{5}$"), "German postcode must be 5 digits", "10115"),
    "France": PostcodeRule(re.compile(r"^[0-9]{5}$"), "French postal code must be 5 digits", "75001"),
    "Netherlands": PostcodeRule(
        re.compile(r"^[0-9]{4} [A-Z]{2}$", re.I),
        "Dutch postcode must be in 1234 AB format",
        "1012 AB",
    ),
}


def validate_postcode(postcode: Optional[str], country: str) -> PostcodeCheck:
    """Check `postcode` against the format rule for `country`.

    Countries without a rule only require a non-empty value.
    """
    value = (postcode or "").strip()
    rule = POSTCODE_RULES.get((country or "").strip())
    if rule is None:
        if not value:
            return PostcodeCheck(False, "Postal code is required", f"Enter postal code for {country}")
        return PostcodeCheck(True, None, f"Enter postal code for {country}")
    if rule.pattern.match(value):
        return PostcodeCheck(True, None, rule.example)
    return PostcodeCheck(False, rule.message, rule.example)
