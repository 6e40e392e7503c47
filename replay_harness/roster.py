"""
replay_harness/roster.py - Player Roster Decoding

The engine receives its roster as `--players=<base64>`. The encoded text has
existed in two shapes:

- delimited: name, decklist and id per player, every field separated by 'µ'
- structured: a JSON array of player objects

Both decode to the same list of PlayerIdentity, so session bootstrap never
sees the format.
"""
import base64
import binascii
import json
from dataclasses import dataclass
from typing import Any, Optional

from .errors import MalformedReplay

FIELD_SEPARATOR = "µ"
FIELDS_PER_PLAYER = 3  # name, decklist, id
PLAYER_COUNT = 2


@dataclass(frozen=True)
class PlayerIdentity:
    name: str
    id: str

    @property
    def handshake_bytes(self) -> bytes:
        return self.id.encode("utf-8")


def decode_roster(descriptor: str) -> list[PlayerIdentity]:
    """
    Decode a base64 roster descriptor into one PlayerIdentity per player.

    Parameters:
        descriptor (str): The value of the `--players=` launch argument.

    Returns:
        list[PlayerIdentity]: Exactly two identities, in roster order.

    Raises:
        MalformedReplay: If the descriptor is not base64/UTF-8, matches neither
            roster format, or does not describe exactly two players.
    """
    try:
        text = base64.b64decode(descriptor, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise MalformedReplay(f"Players descriptor is not base64 UTF-8 text: {e}") from e

    if text.lstrip().startswith("["):
        players = _decode_structured(text)
    else:
        players = _decode_delimited(text)

    if len(players) != PLAYER_COUNT:
        raise MalformedReplay(
            f"Players descriptor lists {len(players)} player(s), expected {PLAYER_COUNT}",
            details={"players": len(players)},
        )
    return players


def encode_roster(players: list[PlayerIdentity], decklists: Optional[list[str]] = None) -> str:
    """Encode identities in the delimited format (used to build fixtures)."""
    decklists = decklists or [""] * len(players)
    fields: list[str] = []
    for player, decklist in zip(players, decklists):
        fields.extend([player.name, decklist, player.id])
    return base64.b64encode(FIELD_SEPARATOR.join(fields).encode("utf-8")).decode("ascii")


def _decode_delimited(text: str) -> list[PlayerIdentity]:
    parts = text.split(FIELD_SEPARATOR)
    if len(parts) < FIELDS_PER_PLAYER * PLAYER_COUNT:
        raise MalformedReplay(
            f"Delimited players descriptor has {len(parts)} field(s), "
            f"expected {FIELDS_PER_PLAYER * PLAYER_COUNT}",
            details={"fields": len(parts)},
        )
    return [
        PlayerIdentity(name=parts[i], id=parts[i + 2])
        for i in range(0, FIELDS_PER_PLAYER * PLAYER_COUNT, FIELDS_PER_PLAYER)
    ]


def _decode_structured(text: str) -> list[PlayerIdentity]:
    try:
        entries = json.loads(text)
    except json.JSONDecodeError as e:
        raise MalformedReplay(f"Structured players descriptor is not JSON: {e}") from e
    if not isinstance(entries, list):
        raise MalformedReplay("Structured players descriptor must be a JSON array")
    return [_identity_from_entry(entry, position) for position, entry in enumerate(entries)]


def _identity_from_entry(entry: Any, position: int) -> PlayerIdentity:
    if not isinstance(entry, dict):
        raise MalformedReplay(f"Player entry {position} is not an object")
    # Older rosters use PascalCase keys
    player_id = entry.get("id", entry.get("Id"))
    name = entry.get("name", entry.get("Name", ""))
    if not isinstance(player_id, str) or not player_id:
        raise MalformedReplay(f"Player entry {position} has no id", details={"position": position})
    return PlayerIdentity(name=str(name), id=player_id)
