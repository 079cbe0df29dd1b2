"""
Board sync — optimistic lane moves on the client side of the kanban.

The board applies a move locally before the server has answered. Each
card carries a monotonically increasing sequence token; a move bumps the
token and remembers it. A server response is applied only while the
card's token still equals the one captured when the move started;
anything older is stale and dropped. A failed move rolls the card back
to its pre-move snapshot.

Everything is expressed as messages dispatched into ``BoardState``:

    MoveRequested(change_id, target_lane)          → PendingMove
    MoveSucceeded(change_id, token, lane, item)    → bool (applied?)
    MoveFailed(change_id, token, error)            → bool (applied?)

``LaneMoveCoordinator`` wires a BoardState to a transport (the lane
engine in-process, or an HTTP client) for the common synchronous case and
also exposes begin()/complete() for responses that arrive out of order.

Usage:
    board = BoardState.from_board(change_lane_engine.compute_board(pid, actor))
    coordinator = LaneMoveCoordinator(board, transport)
    outcome = coordinator.move(42, "analysis")
"""

import logging
from dataclasses import dataclass, field

from docledger.core.exceptions import NotFoundError, StateError
from docledger.models.change_request import LANE_TRANSITIONS, canonical_lane

logger = logging.getLogger(__name__)


# ── Messages ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MoveRequested:
    change_id: int
    target_lane: str


@dataclass(frozen=True)
class MoveSucceeded:
    change_id: int
    token: int
    lane: str
    item: dict | None = None


@dataclass(frozen=True)
class MoveFailed:
    change_id: int
    token: int
    error: str


@dataclass(frozen=True)
class PendingMove:
    change_id: int
    token: int
    from_lane: str
    to_lane: str
    snapshot: dict


@dataclass
class MoveOutcome:
    change_id: int
    token: int
    applied: bool
    lane: str
    error: str | None = None
    wip_warning: dict | None = field(default=None)


# ── Board state ──────────────────────────────────────────────────────────────


class BoardState:
    """Local copy of the board: card id → card dict, plus sequence tokens."""

    def __init__(self, cards=None):
        self.cards: dict[int, dict] = {}
        self._tokens: dict[int, int] = {}
        self._pending: dict[int, PendingMove] = {}
        for card in cards or ():
            self.cards[card["id"]] = dict(card)

    @classmethod
    def from_board(cls, board: dict) -> "BoardState":
        """Build from ``change_lane_engine.compute_board`` output."""
        cards = [item for lane in board.get("lanes", []) for item in lane.get("items", [])]
        return cls(cards)

    def lane_of(self, change_id: int) -> str:
        return self._card(change_id)["delivery_lane"]

    def token_for(self, change_id: int) -> int:
        return self._tokens.get(change_id, 0)

    def pending_for(self, change_id: int) -> PendingMove | None:
        return self._pending.get(change_id)

    def lanes(self) -> dict[str, list[int]]:
        grouped: dict[str, list[int]] = {}
        for cid, card in self.cards.items():
            grouped.setdefault(card["delivery_lane"], []).append(cid)
        return grouped

    def _card(self, change_id: int) -> dict:
        card = self.cards.get(change_id)
        if card is None:
            raise NotFoundError("ChangeRequest", change_id)
        return card

    def dispatch(self, message):
        if isinstance(message, MoveRequested):
            return self._on_requested(message)
        if isinstance(message, MoveSucceeded):
            return self._on_succeeded(message)
        if isinstance(message, MoveFailed):
            return self._on_failed(message)
        raise TypeError(f"Unknown board message: {message!r}")

    def _on_requested(self, msg: MoveRequested) -> PendingMove:
        card = self._card(msg.change_id)
        target = canonical_lane(msg.target_lane)
        current = card["delivery_lane"]
        # Same rules as the server, checked before touching local state
        if card.get("decision_status") == "submitted":
            raise StateError("ChangeRequest", msg.change_id, "move", current,
                             "card is locked while awaiting a decision")
        if target not in LANE_TRANSITIONS.get(current, ()):
            raise StateError("ChangeRequest", msg.change_id, "move", current,
                             f"cannot move from '{current}' to '{target}'")

        token = self.token_for(msg.change_id) + 1
        self._tokens[msg.change_id] = token
        pending = PendingMove(
            change_id=msg.change_id,
            token=token,
            from_lane=current,
            to_lane=target,
            snapshot=dict(card),
        )
        self._pending[msg.change_id] = pending
        card["delivery_lane"] = target
        return pending

    def _is_stale(self, change_id: int, token: int) -> bool:
        return token != self.token_for(change_id)

    def _on_succeeded(self, msg: MoveSucceeded) -> bool:
        if self._is_stale(msg.change_id, msg.token):
            logger.debug("Stale move response dropped: card=%s token=%s", msg.change_id, msg.token)
            return False
        card = self._card(msg.change_id)
        if msg.item:
            card.update(msg.item)
        card["delivery_lane"] = msg.lane
        self._pending.pop(msg.change_id, None)
        return True

    def _on_failed(self, msg: MoveFailed) -> bool:
        if self._is_stale(msg.change_id, msg.token):
            logger.debug("Stale move failure dropped: card=%s token=%s", msg.change_id, msg.token)
            return False
        pending = self._pending.pop(msg.change_id, None)
        if pending is not None:
            self.cards[msg.change_id] = dict(pending.snapshot)
        return True


# ── Coordinator ──────────────────────────────────────────────────────────────


class LaneMoveCoordinator:
    """Runs optimistic moves against a transport.

    ``transport(change_id, lane)`` performs the server call and returns
    the server's view of the card: either a card dict or a dict with an
    ``item`` key (the lane engine's ``LaneMove.to_dict()``). It raises on
    failure.
    """

    def __init__(self, board: BoardState, transport):
        self.board = board
        self.transport = transport

    def begin(self, change_id: int, lane: str) -> PendingMove:
        return self.board.dispatch(MoveRequested(change_id, lane))

    def complete(self, pending: PendingMove, response=None, error=None) -> MoveOutcome:
        """Feed a server response (or error) for ``pending`` back into the board."""
        if error is not None:
            applied = self.board.dispatch(
                MoveFailed(pending.change_id, pending.token, str(error))
            )
            return MoveOutcome(
                change_id=pending.change_id,
                token=pending.token,
                applied=applied,
                lane=self.board.lane_of(pending.change_id),
                error=str(error),
            )

        response = response or {}
        item = response.get("item", response) if isinstance(response, dict) else {}
        lane = item.get("delivery_lane", pending.to_lane)
        applied = self.board.dispatch(
            MoveSucceeded(pending.change_id, pending.token, lane, item or None)
        )
        return MoveOutcome(
            change_id=pending.change_id,
            token=pending.token,
            applied=applied,
            lane=self.board.lane_of(pending.change_id),
            wip_warning=response.get("wip_warning") if isinstance(response, dict) else None,
        )

    def move(self, change_id: int, lane: str) -> MoveOutcome:
        """Optimistically move, call the transport, then settle the result."""
        pending = self.begin(change_id, lane)
        try:
            response = self.transport(change_id, pending.to_lane)
        except Exception as exc:
            logger.warning("Lane move failed, rolling back card %s: %s", change_id, exc)
            return self.complete(pending, error=exc)
        return self.complete(pending, response=response)
