import time

import jwt  # PyJWT
from pydantic import BaseModel

JWT_ALGORITHM = 'HS256'


class InvalidToken(Exception):
    """Raised when a token cannot be verified or lacks the expected claims."""


class CapabilityClaims(BaseModel):
    member_id: str
    project_id: str


def _encode(payload: dict, secret: str) -> str:
    token = jwt.encode(payload, secret, algorithm=JWT_ALGORITHM)
    # PyJWT returns str in v2, bytes in v1; ensure str
    if isinstance(token, bytes):
        token = token.decode('utf-8')
    return token


def _decode(token: str, secret: str) -> dict:
    try:
        return jwt.decode(token, secret, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError as exc:
        raise InvalidToken('Token expired') from exc
    except jwt.InvalidTokenError as exc:
        raise InvalidToken('Invalid token') from exc


def issue_capability_token(member_id: str, project_id: str, secret: str, ttl_seconds: int | None = None) -> str:
    """Sign a token granting ``member_id`` access to ``project_id``.

    Without ``ttl_seconds`` the token carries no expiry and stays valid as long
    as the secret does."""
    payload = {'memberId': member_id, 'projectId': project_id}
    if ttl_seconds:
        payload['exp'] = int(time.time()) + ttl_seconds
    return _encode(payload, secret)


def decode_capability_token(token: str, secret: str) -> CapabilityClaims:
    payload = _decode(token, secret)
    member_id = payload.get('memberId')
    project_id = payload.get('projectId')
    if not member_id or not project_id:
        raise InvalidToken('Not a capability token')
    return CapabilityClaims(member_id=member_id, project_id=project_id)


def annotate_tokens(project: dict, secret: str, ttl_seconds: int | None = None) -> int:
    """Mint a fresh token on every member reference of every assignment.

    Returns the number of tokens issued."""
    issued = 0
    for assignment in project.get('assignments') or []:
        for ref in assignment.get('members') or []:
            ref['token'] = issue_capability_token(ref['ref'], project['id'], secret, ttl_seconds)
            issued += 1
    return issued


def issue_session_token(email: str, secret: str, ttl_seconds: int = 7 * 24 * 3600) -> str:
    now = int(time.time())
    return _encode({'sub': email, 'kind': 'session', 'iat': now, 'exp': now + ttl_seconds}, secret)


def decode_session_token(token: str, secret: str) -> str:
    """Return the admin e-mail address carried by a session token."""
    payload = _decode(token, secret)
    if payload.get('kind') != 'session' or not payload.get('sub'):
        raise InvalidToken('Not a session token')
    return payload['sub']
