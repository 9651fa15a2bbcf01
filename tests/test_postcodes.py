import pytest

from cutterworks.domain.postcodes import POSTCODE_RULES, validate_postcode


@pytest.mark.parametrize("postcode", ["2000", "0800", " 2200 "])
def test_australian_postcodes(postcode):
    assert validate_postcode(postcode, "Australia").valid


@pytest.mark.parametrize("postcode", ["200", "20000", "ABCD", "20a0", ""])
def test_australian_postcodes_rejected(postcode):
    check = validate_postcode(postcode, "Australia")
    assert not check.valid
    assert check.message == "Australian postcode must be 4 digits"


@pytest.mark.parametrize("country", sorted(POSTCODE_RULES))
def test_every_rule_accepts_its_example(country):
    rule = POSTCODE_RULES[country]
    assert validate_postcode(rule.example, country).valid


@pytest.mark.parametrize("country,bad", [
    ("United States", "1234"),
    ("Canada", "123 456"),
    ("United Kingdom", "12345"),
    ("Germany", "ABCDE"),
    ("France", "7500"),
    ("Netherlands", "AB 1234"),
])
def test_malformed_postcodes_rejected(country, bad):
    assert not validate_postcode(bad, country).valid


def test_zip_plus_four():
    assert validate_postcode("12345-6789", "USA").valid


def test_unknown_country_only_requires_a_value():
    assert validate_postcode("anything", "Kenya").valid
    check = validate_postcode("  ", "Kenya")
    assert not check.valid
    assert check.message == "Postal code is required"
