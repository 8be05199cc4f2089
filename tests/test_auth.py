from auth import hash_password, issue_token, read_token, verify_password


def test_password_hash_round_trip() -> None:
    hashed = hash_password("segredo1")
    assert hashed != "segredo1"
    assert verify_password("segredo1", hashed)
    assert not verify_password("segredo2", hashed)


def test_token_carries_user_id() -> None:
    assert read_token(issue_token(7)) == 7


def test_tampered_or_expired_tokens_are_rejected() -> None:
    token = issue_token(7)
    assert read_token(token[:-2] + "xx") is None
    assert read_token("garbage") is None
    assert read_token(token, max_age_hours=-1) is None
