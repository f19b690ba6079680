# Bountyline caller identity
# Resolves "Authorization: Bearer <key>" to a Caller. Participant keys are
# looked up by SHA-256 hash; the admin token is compared in constant time.

import hmac
import os
from dataclasses import dataclass
from typing import Optional

from errors import Unauthorized
from listings import ParticipantRegistry


@dataclass(frozen=True)
class Caller:
    participant_id: Optional[str] = None
    is_admin: bool = False

    @property
    def actor(self) -> str:
        if self.is_admin:
            return f"admin:{self.participant_id or 'root'}"
        return f"participant:{self.participant_id}"


def require_caller(caller: Optional[Caller]) -> str:
    """participant_id of an authenticated participant, or Unauthorized."""
    if caller is None or not caller.participant_id:
        raise Unauthorized("Authentication required", code="unauthenticated")
    return caller.participant_id


class IdentitySource:
    def current_caller(self, authorization: Optional[str]) -> Caller:
        raise NotImplementedError


def bearer_token(authorization: Optional[str]) -> str:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:].strip()
    return ""


class ApiKeyIdentitySource(IdentitySource):
    def __init__(self, participants: Optional[ParticipantRegistry] = None,
                 admin_token: Optional[str] = None):
        self.participants = participants or ParticipantRegistry()
        self.admin_token = (
            admin_token if admin_token is not None
            else os.environ.get("BOUNTYLINE_ADMIN_TOKEN", "")
        )

    def current_caller(self, authorization):
        token = bearer_token(authorization)
        if not token:
            raise Unauthorized("Missing bearer token", code="unauthenticated")
        if self.admin_token and hmac.compare_digest(token, self.admin_token):
            return Caller(is_admin=True)
        participant = self.participants.find_by_api_key(token)
        if not participant:
            raise Unauthorized("Invalid API key", code="unauthenticated")
        if not participant.is_active:
            raise Unauthorized("Participant is deactivated")
        return Caller(participant_id=participant.participant_id)
