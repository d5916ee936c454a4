# --- ppaper_lib/ids.py ---
import logging
import re
import uuid

from .errors import IdExhaustedError

log_merge = logging.getLogger("ppaper.merge")

SAFE_ID_RE = re.compile(r"^[\w-]{1,64}$")


def is_safe_id(value) -> bool:
    """True for ids that can be used as a file name: word characters and dashes only."""
    return isinstance(value, str) and bool(SAFE_ID_RE.match(value))


class IdRegistry:
    """
    The set of identifiers already handed out during one parse run.

    A registry is owned by a single run and is never shared between documents.
    """

    MAX_SUFFIX = 1000

    def __init__(self):
        self._used = set()

    def __contains__(self, block_id) -> bool:
        return block_id in self._used

    def __len__(self) -> int:
        return len(self._used)

    def allocate(self, prefix: str) -> str:
        """Creates a fresh `{prefix}-{uuid8}` id, adding a counter on collision."""
        base = f"{prefix or 'block'}-{uuid.uuid4().hex[:8]}"
        if base not in self._used:
            self._used.add(base)
            return base
        for counter in range(1, self.MAX_SUFFIX + 1):
            candidate = f"{base}-{counter}"
            if candidate not in self._used:
                self._used.add(candidate)
                return candidate
        raise IdExhaustedError(f"Could not allocate a unique id for prefix '{prefix}'.")

    def claim(self, candidate, prefix: str) -> str:
        """Keeps `candidate` if it is non-empty and unused, otherwise allocates."""
        candidate = str(candidate).strip() if candidate else ""
        if candidate and candidate not in self._used:
            self._used.add(candidate)
            return candidate
        if candidate:
            log_merge.debug("Duplicate id '%s' replaced.", candidate)
        return self.allocate(prefix)
