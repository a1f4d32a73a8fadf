"""
Booking state machine as a directed graph.

The graph lives in the booking_states / booking_state_transitions tables and
is loaded into an adjacency map (state -> event -> state) plus a terminal set.
Queries are dict lookups against the cached map; anything not present as an
edge is rejected.
"""
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, Optional

from sqlalchemy.exc import SQLAlchemyError

from models import db
from models.booking_state import BookingState, BookingStateTransition
from services.errors import StateGraphUnavailable
from utils.ttl_cache import CachedValue

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60


@dataclass(frozen=True)
class TransitionGraph:
    edges: Dict[str, Dict[str, str]] = field(default_factory=dict)
    terminal: FrozenSet[str] = frozenset()
    states: FrozenSet[str] = frozenset()


def load_graph_from_db() -> TransitionGraph:
    states = db.session.query(BookingState.id, BookingState.name, BookingState.is_terminal).all()
    transitions = db.session.query(
        BookingStateTransition.from_state_id,
        BookingStateTransition.event,
        BookingStateTransition.to_state_id,
    ).all()
    return build_graph(states, transitions)


def build_graph(states, transitions) -> TransitionGraph:
    """states: (id, name, is_terminal) rows; transitions: (from_id, event, to_id) rows."""
    id_to_name = {}
    terminal = set()
    for state_id, name, is_terminal in states:
        id_to_name[state_id] = name
        if is_terminal:
            terminal.add(name)

    edges: Dict[str, Dict[str, str]] = {}
    for from_id, event, to_id in transitions:
        from_name = id_to_name.get(from_id)
        to_name = id_to_name.get(to_id)
        if from_name is None or to_name is None:
            logger.warning("skipping transition %s -(%s)-> %s with unknown state", from_id, event, to_id)
            continue
        edges.setdefault(from_name, {})[event] = to_name

    return TransitionGraph(edges=edges, terminal=frozenset(terminal), states=frozenset(id_to_name.values()))


class BookingStateMachine:
    def __init__(self, loader: Callable[[], TransitionGraph] = load_graph_from_db,
                 ttl_seconds: float = DEFAULT_TTL_SECONDS, clock_fn=time.monotonic):
        self._loader = loader
        self._clock = clock_fn
        self._cache = CachedValue(ttl_seconds, clock=clock_fn)

    def init_app(self, app):
        ttl = app.config.get("STATE_MACHINE_TTL_SECONDS", DEFAULT_TTL_SECONDS)
        self._cache = CachedValue(ttl, clock=self._clock)
        app.extensions["booking_state_machine"] = self

    def _graph(self) -> TransitionGraph:
        graph = self._cache.get()
        if graph is not None:
            return graph
        try:
            graph = self._loader()
        except SQLAlchemyError as exc:
            logger.exception("failed to load booking state graph")
            raise StateGraphUnavailable("Booking state graph could not be loaded") from exc
        if not graph.edges:
            # an empty graph would reject everything silently; treat as a broken store
            raise StateGraphUnavailable("Booking state graph is empty")
        self._cache.set(graph)
        return graph

    def can_transition(self, state: str, event: str) -> bool:
        return event in self._graph().edges.get(state, {})

    def next_state(self, state: str, event: str) -> Optional[str]:
        return self._graph().edges.get(state, {}).get(event)

    def is_terminal(self, state: str) -> bool:
        return state in self._graph().terminal

    def events_from(self, state: str) -> FrozenSet[str]:
        return frozenset(self._graph().edges.get(state, {}))

    def states(self) -> FrozenSet[str]:
        return self._graph().states

    def invalidate(self) -> None:
        self._cache.invalidate()


state_machine = BookingStateMachine()
