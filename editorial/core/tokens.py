"""
Reviewer invitation tokens.

Reviewers answer from a link in their invitation email, without logging
in. The link carries a signed token naming the invitation id plus a
random nonce; the signature makes it tamper-evident and the nonce makes
every issued token unique.

The token is also stored on the invitation row, so a valid signature is
necessary but not sufficient: the row must still hold that exact token.
"""

import secrets
from typing import Optional
from uuid import UUID

from itsdangerous import BadSignature, URLSafeSerializer

TOKEN_SALT = "reviewer-invitation-v1"


class InvitationTokenIssuer:
    """Issues and reads invitation tokens signed with the workflow secret."""

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ValueError("secret_key is required to sign invitation tokens")
        self._serializer = URLSafeSerializer(secret_key=secret_key, salt=TOKEN_SALT)

    def issue(self, invitation_id: UUID) -> str:
        return self._serializer.dumps({"iid": str(invitation_id), "n": secrets.token_hex(8)})

    def read(self, token: str) -> Optional[UUID]:
        """Return the invitation id a token names, or None if it is forged or malformed."""
        if not token:
            return None
        try:
            data = self._serializer.loads(token)
            return UUID(str(data["iid"]))
        except (BadSignature, KeyError, TypeError, ValueError):
            return None
