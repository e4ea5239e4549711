"""
Fact Merger

Reconciles candidate facts from several extraction strategies. Sets are
applied in strategy priority order (rule-based first, LLM second) and the
first writer of a signature wins.
"""

from typing import Dict, Iterable, List, Set, Tuple

from tutor_personalization.facts import EphemeralState, Fact


def merge_facts(fact_sets: Iterable[Iterable[Fact]]) -> List[Fact]:
    """
    Order-preserving union of fact sets, deduplicated by signature.

    Args:
        fact_sets: Fact lists in strategy priority order

    Returns:
        Facts whose lowercase (type, key, value) triple was seen first
    """
    merged: List[Fact] = []
    seen: Set[Tuple[str, str, str]] = set()
    for facts in fact_sets:
        for fact in facts:
            sig = fact.signature()
            if sig in seen:
                continue
            seen.add(sig)
            merged.append(fact)
    return merged


def merge_ephemerals(ephemeral_sets: Iterable[Iterable[EphemeralState]]) -> List[EphemeralState]:
    """One value per ephemeral key; the earliest strategy keeps it."""
    by_key: Dict[str, EphemeralState] = {}
    for ephemerals in ephemeral_sets:
        for state in ephemerals:
            if state.key not in by_key:
                by_key[state.key] = state
    return list(by_key.values())
