"""
Access control tests: token decoding and role checks.
"""
import pytest
from datetime import timedelta

from exam_results.errors import AuthorizationError, UnauthorizedError, ErrorCode
from exam_results.security.rbac import (
    CallerIdentity, Role, create_access_token, decode_caller,
    require_role, require_attempt_owner_or_controller
)


def test_token_round_trip_for_candidate():
    token = create_access_token({"sub": "42", "role": "candidate", "candidate_id": 7})
    caller = decode_caller(token)

    assert caller == CallerIdentity(user_id=42, role=Role.CANDIDATE, candidate_id=7)


def test_expired_token_is_rejected():
    token = create_access_token({"sub": "1", "role": "exam_controller"}, expires_delta=timedelta(seconds=-5))

    with pytest.raises(UnauthorizedError):
        decode_caller(token)


def test_garbage_token_is_rejected():
    with pytest.raises(UnauthorizedError) as exc_info:
        decode_caller("not-a-token")
    assert exc_info.value.status_code == 401


def test_unknown_role_cannot_be_issued():
    with pytest.raises(ValueError):
        create_access_token({"sub": "1", "role": "janitor"})


def test_require_role_accepts_matching_role():
    caller = CallerIdentity(user_id=1, role=Role.EXAM_CONTROLLER)
    assert require_role(caller, Role.EXAM_CONTROLLER) is caller


def test_require_role_refuses_other_roles():
    with pytest.raises(AuthorizationError) as exc_info:
        require_role(CallerIdentity(user_id=1, role=Role.CANDIDATE, candidate_id=3), Role.EXAM_CONTROLLER)

    assert exc_info.value.status_code == 403
    assert exc_info.value.details == {"required_roles": ["exam_controller"], "role": "candidate"}


def test_require_role_refuses_missing_caller():
    with pytest.raises(AuthorizationError):
        require_role(None, Role.EXAM_CONTROLLER)


def test_owner_or_controller():
    controller = CallerIdentity(user_id=1, role=Role.EXAM_CONTROLLER)
    owner = CallerIdentity(user_id=2, role=Role.CANDIDATE, candidate_id=10)
    other = CallerIdentity(user_id=3, role=Role.CANDIDATE, candidate_id=11)

    assert require_attempt_owner_or_controller(controller, 10) is controller
    assert require_attempt_owner_or_controller(owner, 10) is owner
    with pytest.raises(AuthorizationError) as exc_info:
        require_attempt_owner_or_controller(other, 10)
    assert exc_info.value.code == ErrorCode.OWNERSHIP_VIOLATION
