"""
Bounded byte-level edit distance.

Counts the insertions and removals of a shortest edit script between two
byte strings using Myers' O(ND) greedy algorithm. Runs of equal bytes
(the "snakes") are matched by comparing slices rather than single bytes,
so that large, nearly identical binaries only cost time proportional to
the number of edits.
"""

from dataclasses import dataclass

DIFF_EDIT_LIMIT = 1000  # Give up (and report a lower bound) past this many edits
MAX_EDIT_LIMIT = 10000  # Search cost grows with the square of the limit

_MIN_CHUNK = 64


@dataclass(frozen=True)
class EditSummary:
    insertions: int
    removals: int
    capped: bool = False

    @property
    def total(self):
        return self.insertions + self.removals


def _common_prefix(a, b, i, j):
    """Length of the common run of a[i:] and b[j:]."""
    limit = min(len(a) - i, len(b) - j)
    matched = 0
    step = _MIN_CHUNK
    while matched < limit:
        size = min(step, limit - matched)
        if a[i + matched:i + matched + size] == b[j + matched:j + matched + size]:
            matched += size
            step *= 2
        elif size == 1:
            break
        else:
            step = size // 2
    return matched


def _common_suffix(a, b, limit):
    matched = 0
    while matched < limit:
        size = min(_MIN_CHUNK, limit - matched)
        if a[len(a) - matched - size:len(a) - matched] == b[len(b) - matched - size:len(b) - matched]:
            matched += size
            continue
        while size and a[len(a) - matched - 1] == b[len(b) - matched - 1]:
            matched += 1
            size -= 1
        break
    return matched


def _myers_distance(a, b, max_d):
    n, m = len(a), len(b)
    offset = max_d + 1
    v = [0] * (2 * max_d + 3)
    for d in range(max_d + 1):
        for k in range(-d, d + 1, 2):
            if k == -d or (k != d and v[offset + k - 1] < v[offset + k + 1]):
                x = v[offset + k + 1]
            else:
                x = v[offset + k - 1] + 1
            y = x - k
            if x < n and y < m:
                snake = _common_prefix(a, b, x, y)
                x += snake
                y += snake
            v[offset + k] = x
            if x >= n and y >= m:
                return d
    return None


def _split(distance, delta):
    # delta = insertions - removals
    insertions = (distance + delta) // 2
    return insertions, distance - insertions


def edit_summary(old, new, limit=DIFF_EDIT_LIMIT):
    """Return the EditSummary turning old into new.

    When more than limit edits are needed the search stops and the summary
    is marked capped; its counts are then a lower bound. limit may not
    exceed MAX_EDIT_LIMIT.
    """
    if limit < 0 or limit > MAX_EDIT_LIMIT:
        raise ValueError(f"Edit limit must be between 0 and {MAX_EDIT_LIMIT}, not {limit}")

    a = memoryview(old)
    b = memoryview(new)

    prefix = _common_prefix(a, b, 0, 0)
    a, b = a[prefix:], b[prefix:]
    suffix = _common_suffix(a, b, min(len(a), len(b)))
    a, b = a[:len(a) - suffix], b[:len(b) - suffix]

    delta = len(b) - len(a)
    if not a or not b:
        return EditSummary(*_split(abs(delta), delta))

    max_d = min(limit, len(a) + len(b))
    distance = _myers_distance(a, b, max_d)
    if distance is not None:
        return EditSummary(*_split(distance, delta))

    lower = max(limit + 1, abs(delta))
    if (lower - delta) % 2:
        lower += 1
    return EditSummary(*_split(lower, delta), capped=True)
