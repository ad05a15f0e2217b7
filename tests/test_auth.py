"""Unit tests for token decoding and session ownership."""
import pytest
import jwt
from datetime import timedelta

from codementor.core.auth import (
    ALGORITHM,
    OWNERSHIP_ENFORCE,
    OWNERSHIP_WARN,
    SECRET_KEY,
    check_session_ownership,
    create_access_token,
    decode_token,
)
from codementor.core.exceptions import SessionOwnershipError


class TestJWTTokens:
    """Test JWT token creation and decoding."""

    def test_create_access_token(self):
        """Test creating JWT token."""
        token = create_access_token("42", email="learner@codementor.dev")

        assert isinstance(token, str)
        assert len(token) > 50

    def test_decode_valid_token(self, user_token):
        token_data = decode_token(user_token)

        assert token_data.sub == "42"
        assert token_data.email == "learner@codementor.dev"
        assert token_data.exp is not None

    def test_decode_expired_token(self):
        """Expired tokens decode to None when verified."""
        expired_token = create_access_token("42", expires_delta=timedelta(hours=-1))

        assert decode_token(expired_token) is None

    def test_unverified_decode_ignores_expiry(self):
        expired_token = create_access_token("42", expires_delta=timedelta(hours=-1))

        assert decode_token(expired_token, verify=False).sub == "42"

    def test_decode_invalid_token(self):
        assert decode_token("not.a.valid.jwt.token") is None
        assert decode_token("not.a.valid.jwt.token", verify=False) is None

    def test_wrong_signature_rejected_when_verified(self):
        forged = jwt.encode({"sub": "42"}, "another-secret", algorithm=ALGORITHM)

        assert decode_token(forged) is None
        assert decode_token(forged, verify=False).sub == "42"

    def test_user_id_claim_accepted(self):
        token = jwt.encode({"user_id": 42}, SECRET_KEY, algorithm=ALGORITHM)

        assert decode_token(token).sub == "42"

    def test_token_without_subject(self):
        token = jwt.encode({"email": "x@y.z"}, SECRET_KEY, algorithm=ALGORITHM)

        assert decode_token(token) is None

    def test_token_contains_required_claims(self, user_token):
        payload = jwt.decode(user_token, SECRET_KEY, algorithms=[ALGORITHM])

        assert "sub" in payload
        assert "exp" in payload
        assert "iat" in payload


class TestSessionOwnership:
    """Test the ownership policy."""

    def test_matching_owner(self, user_token):
        assert check_session_ownership("42", user_token, policy=OWNERSHIP_ENFORCE) is True

    def test_numeric_owner_matches_string_subject(self, user_token):
        assert check_session_ownership(42, user_token, policy=OWNERSHIP_ENFORCE) is True

    def test_mismatch_warns(self, user_token):
        assert check_session_ownership("99", user_token, policy=OWNERSHIP_WARN) is False

    def test_mismatch_enforced(self, user_token):
        with pytest.raises(SessionOwnershipError) as exc_info:
            check_session_ownership("99", user_token, policy=OWNERSHIP_ENFORCE)

        assert exc_info.value.session_user_id == "99"
        assert exc_info.value.token_user_id == "42"

    def test_undecodable_token_is_unknown_owner(self):
        assert check_session_ownership("42", "garbage", policy=OWNERSHIP_ENFORCE) is False
