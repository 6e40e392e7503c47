"""
replay_harness/replay.py - Replay Store

Loads and persists the golden record of one game session.

Invariants:
- `actions` order is the wire order; it is never sorted, merged or batched
- Loading then saving without mutation yields an equal Replay
- Writes are fire-and-forget (no temp file, no rollback)
"""
import base64
import binascii
import json
import logging
from pathlib import Path
from typing import Any, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_serializer,
    field_validator,
    model_validator,
)

from .errors import MalformedReplay
from .framing import FrameCodec, codec_from_settings
from .roster import PlayerIdentity, decode_roster

logger = logging.getLogger(__name__)

PLAYERS_ARG = "--players="
PORT_ARG = "--port="


def _decode_bytes(value: Any) -> bytes:
    """Accept base64 text, a list of byte values, or raw bytes."""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except binascii.Error as e:
            raise ValueError(f"invalid base64: {e}") from e
    if isinstance(value, list):
        if not all(isinstance(b, int) and 0 <= b <= 255 for b in value):
            raise ValueError("byte arrays must contain integers in 0..255")
        return bytes(value)
    raise ValueError(f"cannot decode bytes from {type(value).__name__}")


class GameAction(BaseModel):
    """One framed message exchanged with one player."""
    player: int = Field(..., ge=0, le=1)
    client_to_server: bool = Field(..., alias="clientToServer")
    type_tag: int = Field(..., alias="type", ge=0, le=255)
    payload: bytes = b""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _split_legacy_packet(cls, data: Any) -> Any:
        # Older recordings store the whole message as `packet`, type byte first
        if isinstance(data, dict) and "packet" in data and "type" not in data:
            data = dict(data)
            packet = _decode_bytes(data.pop("packet"))
            if not packet:
                raise ValueError("packet must contain at least the type byte")
            data["type"] = packet[0]
            data["payload"] = packet[1:]
        return data

    @field_validator("payload", mode="before")
    @classmethod
    def _decode_payload(cls, value: Any) -> bytes:
        return _decode_bytes(value)

    @field_serializer("payload")
    def _encode_payload(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    def message_bytes(self) -> bytes:
        """Type tag followed by payload, as it appears inside a frame."""
        return bytes([self.type_tag]) + self.payload

    def content_bytes(self) -> bytes:
        return self.payload

    def full_frame(self, codec: Optional[FrameCodec] = None) -> bytes:
        """The exact bytes written to the wire for this action."""
        codec = codec or codec_from_settings()
        return codec.encode(self.message_bytes())

    def with_observed(self, message: bytes) -> "GameAction":
        """Copy of this action whose golden message is `message`."""
        return self.model_copy(update={"type_tag": message[0], "payload": message[1:]})


class Replay(BaseModel):
    """Golden record: launch parameters plus the ordered action log."""
    cmdline_args: list[str] = Field(..., alias="cmdlineArgs")
    seed: int
    actions: list[GameAction]

    model_config = ConfigDict(populate_by_name=True)

    def _launch_value(self, prefix: str) -> Optional[str]:
        for arg in self.cmdline_args:
            if arg.startswith(prefix):
                return arg[len(prefix):]
        return None

    def players_descriptor(self) -> str:
        value = self._launch_value(PLAYERS_ARG)
        if value is None:
            raise MalformedReplay(f"Launch arguments lack a {PLAYERS_ARG} descriptor")
        return value

    def port(self) -> int:
        value = self._launch_value(PORT_ARG)
        if value is None:
            raise MalformedReplay(f"Launch arguments lack a {PORT_ARG} argument")
        try:
            port = int(value)
        except ValueError as e:
            raise MalformedReplay(f"Port is not an integer: {value!r}") from e
        if not 0 < port < 65536:
            raise MalformedReplay(f"Port out of range: {port}")
        return port

    def roster(self) -> list[PlayerIdentity]:
        return decode_roster(self.players_descriptor())


def load(path: Union[str, Path]) -> Replay:
    """
    Load a replay file.

    Parameters:
        path (str | Path): Path to the replay JSON file.

    Returns:
        Replay: The parsed replay, with launch arguments validated.

    Raises:
        MalformedReplay: If the file cannot be read or parsed, a required field is
            missing or mistyped, or the launch arguments lack a decodable players
            descriptor or a port.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise MalformedReplay(f"Cannot read replay {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise MalformedReplay(f"Replay {path} is not valid JSON: {e}") from e

    try:
        replay = Replay.model_validate(data)
    except ValidationError as e:
        raise MalformedReplay(
            f"Replay {path} failed schema validation ({e.error_count()} error(s))",
            details={"errors": e.errors(include_url=False, include_context=False)},
        ) from e

    # Fail on launch parameters now rather than after the engine has started
    replay.port()
    replay.roster()

    logger.debug("Loaded %s: %d action(s), seed %d", path, len(replay.actions), replay.seed)
    return replay


def dumps(replay: Replay) -> str:
    return replay.model_dump_json(by_alias=True, indent=2)


def save(path: Union[str, Path], replay: Replay) -> None:
    """Write `replay` back to `path` in the replay file format."""
    Path(path).write_text(dumps(replay), encoding="utf-8")
    logger.info("Saved replay %s", path)
