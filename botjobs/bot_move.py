"""
The bot_move job kind: play a bot's turn in a game room.

The engine knows nothing about rooms or game rules. The session store and
the bot decision engine are passed in as two callables:

    load_room(room_code) -> dict or None
        with at least 'turn_number' and 'current_turn', optionally 'bot_seed'
    play_move(room_code, player_id, seed) -> Any
        computes and commits the bot's move
"""
import time
from typing import Any, Callable, Dict, Optional

from loguru import logger

from botjobs.exceptions import ActionFailed, StaleJobError
from botjobs.models import Job
from botjobs.registry import ActionHandler, ActionRegistry
from botjobs.storage import Storage

BOT_MOVE = "bot_move"

RoomLoader = Callable[[str], Optional[Dict[str, Any]]]
MovePlayer = Callable[[str, int, str], Any]


def dedupe_key(room_code: str, player_id: int, expected_turn: int) -> str:
    return f"{room_code}:{player_id}:{expected_turn}"


def schedule_bot_move(storage: Storage, room_code: str, player_id: int, expected_turn: int) -> Job:
    """
    Enqueue a bot_move job for one bot turn.

    Idempotent: scheduling the same (room, player, turn) again returns the
    job that is already queued.
    """
    return storage.enqueue_job(
        BOT_MOVE,
        {'room_code': room_code, 'player_id': player_id, 'expected_turn': expected_turn},
        dedupe_key=dedupe_key(room_code, player_id, expected_turn),
    )


def make_bot_move_handler(load_room: RoomLoader, play_move: MovePlayer, slow_after: float = 4.0) -> ActionHandler:
    """Build the bot_move handler around a room loader and a move player."""

    def handle(payload: Dict[str, Any]) -> None:
        try:
            room_code = payload['room_code']
            player_id = int(payload['player_id'])
            expected_turn = int(payload['expected_turn'])
        except (KeyError, TypeError, ValueError) as e:
            raise ActionFailed(f"Invalid bot_move payload: {e!r}") from e

        room = load_room(room_code)
        if room is None:
            raise ActionFailed("Room not found")

        # The turn advanced (someone moved, or a duplicate job already played it)
        if room['turn_number'] != expected_turn:
            raise StaleJobError(f"Turn mismatch: expected {expected_turn}, got {room['turn_number']}")

        if room['current_turn'] != player_id:
            raise StaleJobError(f"Not this bot's turn (expected {player_id}, got {room['current_turn']})")

        start = time.monotonic()
        play_move(room_code, player_id, room.get('bot_seed') or "default")
        elapsed = time.monotonic() - start

        if elapsed > slow_after:
            logger.warning(
                f"Bot move took {elapsed * 1000:.0f}ms: room={room_code}, player={player_id}"
            )

    return handle


def register_bot_move(registry: ActionRegistry, load_room: RoomLoader, play_move: MovePlayer,
                      slow_after: float = 4.0) -> ActionRegistry:
    registry.register(BOT_MOVE, make_bot_move_handler(load_room, play_move, slow_after))
    return registry
