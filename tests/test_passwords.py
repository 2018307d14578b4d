import re

from passwords import generate_secure_password, generate_tracking_token, validate_password_strength


def test_secure_password_format():
    for _ in range(50):
        password = generate_secure_password()
        assert re.fullmatch(r"Ekm-[A-HJ-NP-Z2-9]{4}-[A-HJ-NP-Z2-9]{4}", password)


def test_generated_password_passes_strength_rules():
    for _ in range(50):
        assert validate_password_strength(generate_secure_password()) == (True, [])


def test_tracking_token():
    assert re.fullmatch(r"[0-9a-f]{32}", generate_tracking_token())


def test_password_strength():
    assert validate_password_strength("Groceries1") == (True, [])
    ok, errors = validate_password_strength("abc")
    assert ok is False
    assert "Password must be at least 8 characters long" in errors
    assert len(errors) == 3
