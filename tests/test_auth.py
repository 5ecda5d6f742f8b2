from hyperfleet_controller.auth import (
    hash_token,
    new_callback_token,
    secure_compare_token,
)


def test_token_hash_and_compare():
    token = "abc123"
    hashed = hash_token(token)
    assert secure_compare_token(token, hashed)
    assert not secure_compare_token("wrong", hashed)


def test_missing_hash_never_matches():
    assert not secure_compare_token("abc123", None)
    assert not secure_compare_token("abc123", "")


def test_new_callback_token_returns_matching_hash():
    token, token_hash = new_callback_token()
    other, _ = new_callback_token()
    assert token != other
    assert secure_compare_token(token, token_hash)
