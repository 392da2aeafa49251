"""Request dependencies: database session and the calling player."""

from fastapi import HTTPException, Request

from basecore.db import get_db
from nebula_core.identity import PLAYER_ID_HEADER, HeaderIdentity

__all__ = ["get_db", "get_current_player_id"]


def get_current_player_id(request: Request) -> int:
    """
    Player id forwarded by the auth gateway.

    A missing header means the request never went through the gateway.
    """
    if PLAYER_ID_HEADER not in request.headers:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return HeaderIdentity(request.headers).current_player_id()
