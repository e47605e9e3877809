"""
Prefix cache bookkeeping.

Tracks, per sequence id, the tokens whose state is resident in a context's
memory so a new prompt can reuse the longest shared prefix instead of
recomputing it.
"""

from typing import Dict, List, Sequence


class PrefixCache:
    """Resident-token ledger with reuse statistics."""

    def __init__(self):
        self._resident: Dict[int, List[int]] = {}
        self.hits = 0
        self.misses = 0
        self.tokens_reused = 0

    def tokens(self, seq_id: int) -> List[int]:
        """Tokens currently resident for ``seq_id``."""
        return list(self._resident.get(seq_id, ()))

    def longest_prefix(self, seq_id: int, tokens: Sequence[int]) -> int:
        """Length of the common prefix of ``tokens`` and the resident tokens."""
        resident = self._resident.get(seq_id)
        if not resident:
            return 0
        n = 0
        for a, b in zip(resident, tokens):
            if a != b:
                break
            n += 1
        return n

    def lookup(self, seq_id: int, tokens: Sequence[int], limit: int) -> int:
        """Reusable prefix length, capped at ``limit``, recorded in the stats."""
        n = min(self.longest_prefix(seq_id, tokens), max(limit, 0))
        if n > 0:
            self.hits += 1
            self.tokens_reused += n
        else:
            self.misses += 1
        return n

    def set(self, seq_id: int, tokens: Sequence[int]) -> None:
        self._resident[seq_id] = list(tokens)

    def append(self, seq_id: int, tokens: Sequence[int]) -> None:
        self._resident.setdefault(seq_id, []).extend(tokens)

    def truncate(self, seq_id: int, n: int) -> None:
        """Keep only the first ``n`` resident tokens of ``seq_id`` (-1 = all)."""
        targets = list(self._resident) if seq_id < 0 else [seq_id]
        for s in targets:
            if s in self._resident:
                del self._resident[s][max(n, 0):]

    def forget(self, seq_id: int) -> None:
        """Drop the ledger of ``seq_id`` (-1 = all)."""
        if seq_id < 0:
            self._resident.clear()
        else:
            self._resident.pop(seq_id, None)

    def keep_only(self, seq_id: int) -> None:
        self._resident = {s: t for s, t in self._resident.items() if s == seq_id}

    def clear(self) -> None:
        self._resident.clear()

    def get_stats(self) -> Dict:
        """Get cache statistics."""
        total = self.hits + self.misses
        hit_rate = self.hits / total if total > 0 else 0.0
        return {
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": hit_rate,
            "tokens_reused": self.tokens_reused,
            "sequences": len(self._resident),
            "resident_tokens": sum(len(t) for t in self._resident.values()),
        }
