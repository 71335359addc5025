from backend.app.security import hash_session_token


def test_session_token_is_hashed_with_prefix():
    h = hash_session_token("abc")
    assert h.startswith("sha256:")
    assert len(h) > 10


def test_session_token_hash_is_stable_and_distinct():
    assert hash_session_token("abc") == hash_session_token("abc")
    assert hash_session_token("abc") != hash_session_token("abd")
    assert "abc" not in hash_session_token("abc")
