"""Port interface for pushing tally updates to live viewers.

Constraints:
- broadcast() is fire-and-forget and MUST NOT block or raise into the
  commit path; slow subscribers lose intermediate snapshots instead
- A new subscriber receives the current snapshot first
"""

from typing import Protocol

from tallyflow.domain.models.tally_state import TallyState


class UpdatePublisherPort(Protocol):
    """Port for broadcasting committed tally snapshots."""

    def broadcast(self, state: TallyState) -> int:
        """Offer ``state`` to every current subscriber without blocking.

        Args:
            state: Committed snapshot.

        Returns:
            Number of subscribers the snapshot was offered to.
        """
        ...
