"""Integer histogram with exponentially growing bucket sizes.

Buckets are grouped into blocks of n = 1 << bits equal sized buckets. The
first block has a bucket width of 1 and the width doubles with every block,
so the relative width of any bucket is at most 1/n. Memory is fixed at
construction and adding a value is O(log max).

Used for request latencies in milliseconds: bits=7, max=300_000 covers five
minutes with better than 1% resolution in about 1.6k counters.
"""

from __future__ import annotations

from typing import Iterable, NamedTuple, Sequence

DEFAULT_BITS = 7
DEFAULT_MAX = 300_000  # ms
# Width of the bars in str()
BAR_WIDTH = 30


class Bucket(NamedTuple):
    """Values in [left, right) counted count times."""

    left: int
    right: int
    count: int


class LogHist:
    """Histogram of non-negative integers over [0, max].

    Values below 0 are counted in ``underflow``, values beyond the last
    bucket in ``overflow``; neither contributes to percentiles or average.
    """

    __slots__ = ("n", "max", "counts", "overflow", "underflow")

    def __init__(self, bits: int = DEFAULT_BITS, max: int = DEFAULT_MAX) -> None:
        if bits < 0:
            raise ValueError("bits must be >= 0")
        if max < 0:
            raise ValueError("max must be >= 0")
        self.n = 1 << bits
        last = self.bucket(max)
        _, upper = self.cover(last)
        # max is rounded up to the end of the bucket containing it
        self.max = upper
        self.counts = [0] * (last + 1)
        self.overflow = 0
        self.underflow = 0

    @property
    def bits(self) -> int:
        return self.n.bit_length() - 1

    def bucket(self, v: int) -> int:
        """Index of the bucket containing v (v >= 0)."""
        n = self.n
        if v < n:
            return v
        # block p covers [n*2^p - n, n*2^(p+1) - n)
        p = ((v + n) // n).bit_length() - 1
        low = n * (1 << p) - n
        return n * p + (v - low) // (1 << p)

    def cover(self, bucket: int) -> tuple[int, int]:
        """Half-open value interval [a, b) covered by bucket."""
        n = self.n
        u, p = bucket % n, bucket // n
        w = 1 << p
        a = n * (1 << p) - n + u * w
        return a, a + w

    def add(self, v: int) -> None:
        if v < 0:
            self.underflow += 1
            return
        if v >= self.max:
            self.overflow += 1
            return
        self.counts[self.bucket(v)] += 1

    def add_all(self, values: Iterable[int]) -> None:
        for v in values:
            self.add(v)

    @property
    def total(self) -> int:
        """Number of counted (non over/underflowing) values."""
        return sum(self.counts)

    def percentile(self, p: float) -> int:
        """Approximate p-quantile, p in [0, 1]. 0 for an empty histogram."""
        return self.quantiles([p])[0]

    def quantiles(self, ps: Sequence[float]) -> list[int]:
        """Approximate sample quantiles for each probability in ps.

        The value is interpolated linearly inside the cover of the bucket
        where the cumulative fraction crosses p; with wide buckets this
        overestimates the true sample quantile by at most one bucket width.
        """
        total = self.total
        if total == 0:
            return [0 for _ in ps]
        cum: list[int] = []
        s = 0
        for c in self.counts:
            s += c
            cum.append(s)
        out: list[int] = []
        for p in ps:
            if p < 0 or p > 1:
                raise ValueError(f"probability {p} not in [0, 1]")
            target = p * total
            i = 0
            if p == 0:
                while self.counts[i] == 0:
                    i += 1
                out.append(self.cover(i)[0])
                continue
            while cum[i] < target:
                i += 1
            a, b = self.cover(i)
            before = cum[i - 1] if i > 0 else 0
            f = (target - before) / (cum[i] - before)
            out.append(a + int((b - a) * f))
        return out

    def average(self) -> int:
        """Approximate average from bucket midpoints. 0 if empty."""
        acc = 0
        n = 0
        for i, c in enumerate(self.counts):
            if c == 0:
                continue
            left, right = self.cover(i)
            # midpoint of the integers left .. right-1, kept doubled
            acc += (left + right - 1) * c
            n += c
        if n == 0:
            return 0
        return acc // (2 * n)

    def data(self) -> list[Bucket]:
        """All non-empty buckets in increasing order."""
        out: list[Bucket] = []
        for i, c in enumerate(self.counts):
            if c:
                a, b = self.cover(i)
                out.append(Bucket(a, b, c))
        return out

    def merge(self, other: "LogHist") -> None:
        """Add all counts of other, which must have the same parameters."""
        if other.n != self.n or other.max != self.max:
            raise ValueError("cannot merge histograms with different parameters")
        for i, c in enumerate(other.counts):
            self.counts[i] += c
        self.overflow += other.overflow
        self.underflow += other.underflow

    def __str__(self) -> str:
        """Bucket ranges with counts, '#' for raw count and '*' scaled by width."""
        buckets = self.data()
        if not buckets:
            return ""
        cmax = max(b.count for b in buckets)
        rmax = max(b.count / (b.right - b.left) for b in buckets)
        lines = []
        for b in buckets:
            bar = "#" * (b.count * BAR_WIDTH // cmax)
            t = b.count / (rmax * (b.right - b.left))
            rbar = "*" * int(t * BAR_WIDTH)
            lines.append(f"{b.left:5d}- {b.right:5d}: {b.count:5d} {bar:<{BAR_WIDTH}} {rbar:<{BAR_WIDTH}}")
        return "\n".join(lines) + "\n"

    def __repr__(self) -> str:
        return f"LogHist(bits={self.bits}, max={self.max}, total={self.total})"
