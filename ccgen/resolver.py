"""ccgen/resolver.py – Close register usage over the delegation graph.

After every convention has been synthesized, each one knows the
registers it names directly and the conventions it delegates to.  A
convention's *closed* usage is its direct usage plus the closed usage of
every convention it delegates to, transitively.  Primary and auxiliary
usage are closed independently over the same graph.

The closure is a Kahn-style propagation:

* ``outstanding[c]`` counts the delegation targets of ``c`` that are not
  resolved yet;
* ``referrers[t]`` lists the conventions delegating to ``t``;
* a convention whose count reaches zero is resolved, and its closed sets
  are merged into every referrer.

Conventions left unresolved when the ready queue drains sit on or behind
a delegation cycle, which is reported as ``CircularDelegationError``.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Mapping, Optional, Set, Tuple

from ccgen.errors import CircularDelegationError

__all__ = [
    "ResolvedUsage",
    "resolve",
]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResolvedUsage:
    """Closed usage sets, keyed by convention name.

    Register names inside each entry are sorted lexicographically so
    that every consumer sees one canonical order.
    """

    primary: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    auxiliary: Dict[str, Tuple[str, ...]] = field(default_factory=dict)

    def registers(self, name: str) -> Tuple[str, ...]:
        return self.primary.get(name, ())

    def aux_registers(self, name: str) -> Tuple[str, ...]:
        return self.auxiliary.get(name, ())

    def to_json(self) -> Dict[str, Dict[str, List[str]]]:
        return {
            "primary": {k: list(v) for k, v in self.primary.items()},
            "auxiliary": {k: list(v) for k, v in self.auxiliary.items() if v},
        }


def _find_cycle(unresolved: Set[str], delegations: Mapping[str, Iterable[str]]) -> List[str]:
    """Return one delegation cycle among *unresolved*, closed at both ends.

    Every unresolved convention still waits on an unresolved target, so
    following such targets from any start must revisit a convention.
    """
    node = min(unresolved)
    path: List[str] = []
    index: Dict[str, int] = {}
    while node not in index:
        index[node] = len(path)
        path.append(node)
        node = min(t for t in delegations[node] if t in unresolved)
    return path[index[node]:] + [node]


def resolve(
    direct: Mapping[str, Iterable[str]],
    delegations: Mapping[str, Iterable[str]],
    auxiliary: Optional[Mapping[str, Iterable[str]]] = None,
    order: Optional[Iterable[str]] = None,
) -> ResolvedUsage:
    """Compute closed usage sets for every convention.

    Parameters
    ----------
    direct:
        Registers each convention names itself (primary partition).
    delegations:
        Conventions each convention delegates to.
    auxiliary:
        Registers each convention names in auxiliary mode.
    order:
        Key order of the result; conventions not listed follow in
        sorted order.

    Raises
    ------
    CircularDelegationError
        When the delegation graph is not acyclic.
    """
    auxiliary = auxiliary or {}
    nodes: Set[str] = set(direct) | set(auxiliary) | set(delegations)
    for targets in delegations.values():
        nodes.update(targets)

    outstanding: Dict[str, int] = {c: 0 for c in nodes}
    referrers: Dict[str, List[str]] = {c: [] for c in nodes}
    for c, targets in delegations.items():
        for t in sorted(set(targets)):
            outstanding[c] += 1
            referrers[t].append(c)

    closed: Dict[str, Set[str]] = {c: set(direct.get(c, ())) for c in nodes}
    closed_aux: Dict[str, Set[str]] = {c: set(auxiliary.get(c, ())) for c in nodes}

    ready: Deque[str] = deque(sorted(c for c in nodes if outstanding[c] == 0))
    resolved = 0
    while ready:
        c = ready.popleft()
        resolved += 1
        for r in referrers[c]:
            closed[r] |= closed[c]
            closed_aux[r] |= closed_aux[c]
            outstanding[r] -= 1
            logger.debug("merged %s into %s (%d outstanding)", c, r, outstanding[r])
            if outstanding[r] == 0:
                ready.append(r)

    if resolved < len(nodes):
        unresolved = {c for c in nodes if outstanding[c] > 0}
        raise CircularDelegationError(_find_cycle(unresolved, delegations))

    keys: List[str] = []
    for name in order or ():
        if name in nodes and name not in keys:
            keys.append(name)
    keys.extend(sorted(nodes - set(keys)))

    return ResolvedUsage(
        primary={c: tuple(sorted(closed[c])) for c in keys},
        auxiliary={c: tuple(sorted(closed_aux[c])) for c in keys},
    )
