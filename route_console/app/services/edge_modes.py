from __future__ import annotations

from typing import Dict, List, Sequence, Tuple

from ..models import Hop, LinkMode, Route

DEFAULT_LINK_MODE: LinkMode = "direct"

Edge = Tuple[str, str]


def edge_map(route: Route) -> Dict[Edge, LinkMode]:
    """Key every edge of `route` by its endpoint identities (from_key, to_key).

    A link-mode array shorter than the hop list leaves the trailing edges at
    the default mode.
    """
    out: Dict[Edge, LinkMode] = {}
    hops = route.hops
    for idx in range(len(hops) - 1):
        mode = route.link_modes[idx] if idx < len(route.link_modes) else DEFAULT_LINK_MODE
        out[(hops[idx].key, hops[idx + 1].key)] = mode
    return out


def edges_of(hops: Sequence[Hop]) -> List[Edge]:
    return [(hops[i].key, hops[i + 1].key) for i in range(len(hops) - 1)]


def preserve_link_modes(old: Route, new_hops: Sequence[Hop]) -> Tuple[LinkMode, ...]:
    """Link modes for `new_hops`, carried over from `old` by adjacency.

    An edge keeps its mode as long as the same two hops stay adjacent in the
    same direction; every new adjacency starts as `direct`.
    """
    known = edge_map(old)
    return tuple(known.get(edge, DEFAULT_LINK_MODE) for edge in edges_of(new_hops))


def rebuild(old: Route, new_hops: Sequence[Hop]) -> Route:
    return Route(hops=tuple(new_hops), link_modes=preserve_link_modes(old, new_hops))
