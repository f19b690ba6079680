"""Tests for bearer-token caller resolution."""

import pytest

from errors import Unauthorized
from identity import ApiKeyIdentitySource, Caller, bearer_token, require_caller


@pytest.fixture
def source(participants):
    return ApiKeyIdentitySource(participants, admin_token="root-token")


class TestBearer:
    def test_parses_bearer(self):
        assert bearer_token("Bearer abc ") == "abc"

    def test_rejects_other_schemes(self):
        assert bearer_token("Basic abc") == ""
        assert bearer_token(None) == ""


class TestApiKeyIdentitySource:
    def test_participant_key(self, source, participants):
        participant, key = participants.register("agent-1")
        caller = source.current_caller(f"Bearer {key}")
        assert caller == Caller(participant_id=participant.participant_id)
        assert caller.actor == f"participant:{participant.participant_id}"

    def test_admin_token(self, source):
        caller = source.current_caller("Bearer root-token")
        assert caller.is_admin is True
        assert caller.actor == "admin:root"

    def test_missing_token(self, source):
        with pytest.raises(Unauthorized) as exc:
            source.current_caller(None)
        assert exc.value.code == "unauthenticated"

    def test_unknown_key(self, source):
        with pytest.raises(Unauthorized) as exc:
            source.current_caller("Bearer bl_not-a-key")
        assert exc.value.code == "unauthenticated"

    def test_deactivated_participant(self, source, participants):
        participant, key = participants.register("agent-2")
        participants.set_active(participant.participant_id, False)
        with pytest.raises(Unauthorized) as exc:
            source.current_caller(f"Bearer {key}")
        assert exc.value.code == "unauthorized"

    def test_rotated_key_invalidates_old(self, source, participants):
        participant, old = participants.register("agent-3")
        new = participants.rotate_key(participant.participant_id)
        with pytest.raises(Unauthorized):
            source.current_caller(f"Bearer {old}")
        assert source.current_caller(f"Bearer {new}").participant_id == participant.participant_id

    def test_empty_admin_token_never_matches(self, participants):
        source = ApiKeyIdentitySource(participants, admin_token="")
        with pytest.raises(Unauthorized):
            source.current_caller("Bearer ")


def test_require_caller():
    assert require_caller(Caller(participant_id="agt_1")) == "agt_1"
    with pytest.raises(Unauthorized):
        require_caller(Caller(is_admin=True))
