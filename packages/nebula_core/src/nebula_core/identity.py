"""
Identity of the calling player.

Authentication happens upstream; the engines only need an authenticated
player id. The gateway forwards it in the `X-Player-Id` header.
"""

from typing import Mapping, Protocol

from nebula_core.errors import InvalidArgument

PLAYER_ID_HEADER = "X-Player-Id"


class IdentityProvider(Protocol):
    def current_player_id(self) -> int: ...


class StaticIdentity:
    """Fixed player id, used by the CLI and tests."""

    def __init__(self, player_id: int):
        self.player_id = player_id

    def current_player_id(self) -> int:
        return self.player_id


class HeaderIdentity:
    """Reads the player id forwarded by the auth gateway."""

    def __init__(self, headers: Mapping[str, str], header_name: str = PLAYER_ID_HEADER):
        self.headers = headers
        self.header_name = header_name

    def current_player_id(self) -> int:
        raw = self.headers.get(self.header_name)
        if raw is None:
            raise InvalidArgument(f"Missing {self.header_name} header")
        try:
            player_id = int(raw)
        except ValueError as e:
            raise InvalidArgument(f"Malformed {self.header_name} header: {raw!r}") from e
        if player_id <= 0:
            raise InvalidArgument(f"Malformed {self.header_name} header: {raw!r}")
        return player_id
