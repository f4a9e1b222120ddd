"""
Room occupancy tracker.

Decides when an empty room should be abandoned. Occupancy is defined only by
participant connect/disconnect events; track subscriptions are tracked for
diagnostics and never arm or cancel the idle timer.
"""

import asyncio
from typing import Callable, Dict, Iterable, Optional, Set

from .logger import get_logger


class OccupancyTracker:
    """
    Arms a single idle timer whenever the room is empty.

    A room that has been empty since we joined gets the long starting grace
    period; a room that became empty after its last participant left gets the
    short ending grace period. A participant connecting cancels the timer.
    """

    def __init__(
        self,
        on_idle: Callable[[], None],
        starting_timeout: float = 600.0,
        ending_timeout: float = 60.0
    ):
        """
        Args:
            on_idle: Called once when the idle timer fires.
            starting_timeout: Seconds to wait in a room that has been empty since joining.
            ending_timeout: Seconds to wait after the last participant left.
        """
        self.on_idle = on_idle
        self.starting_timeout = starting_timeout
        self.ending_timeout = ending_timeout

        self._participants: Set[str] = set()
        self._tracks: Dict[str, Set[str]] = {}
        self._timer: Optional[asyncio.TimerHandle] = None
        self._armed_timeout: Optional[float] = None
        self._stopped = False
        self._logger = get_logger('occupancy')

    @property
    def participant_count(self) -> int:
        return len(self._participants)

    @property
    def is_armed(self) -> bool:
        return self._timer is not None

    @property
    def armed_timeout(self) -> Optional[float]:
        """Grace period of the armed timer, None when no timer is armed."""
        return self._armed_timeout if self._timer is not None else None

    def room_joined(self, identities: Iterable[str]) -> None:
        """Record the participants present when we joined."""
        self._participants = set(identities)
        if not self._participants:
            self._logger.info('There are no RemoteParticipants in the Room.')
            self._logger.info(
                f"I will wait for {self.starting_timeout:g} seconds before I give up and leave."
            )
            self._arm(self.starting_timeout)

    def participant_connected(self, identity: str) -> None:
        self._participants.add(identity)
        if self._timer is not None:
            self._logger.info(f"RemoteParticipant {identity} connected, no longer leaving.")
        self.cancel()

    def participant_disconnected(self, identity: str) -> None:
        self._participants.discard(identity)
        self._tracks.pop(identity, None)
        if not self._participants:
            self._logger.info(
                f"The last participant left. Will disconnect in {self.ending_timeout:g} seconds"
            )
            self._arm(self.ending_timeout)

    def track_subscribed(self, identity: str, track_id: str) -> None:
        self._tracks.setdefault(identity, set()).add(track_id)

    def track_unsubscribed(self, identity: str, track_id: str) -> None:
        tracks = self._tracks.get(identity)
        if tracks is None:
            return
        tracks.discard(track_id)
        if not tracks:
            self._logger.debug(f"RemoteParticipant {identity} has no subscribed tracks left.")

    def track_count(self, identity: str) -> int:
        return len(self._tracks.get(identity, ()))

    def cancel(self) -> None:
        """Cancel the idle timer if one is armed."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
            self._armed_timeout = None

    def stop(self) -> None:
        """Cancel the timer and never arm it again."""
        self._stopped = True
        self.cancel()

    def _arm(self, timeout: float) -> None:
        if self._stopped:
            return
        self.cancel()
        loop = asyncio.get_running_loop()
        handle = None

        def fire() -> None:
            # A cancelled or replaced handle must not close the session.
            if self._timer is not handle:
                return
            self._timer = None
            self._armed_timeout = None
            self._logger.info(f"Room has been empty for {timeout:g} seconds, requesting close.")
            self.on_idle()

        handle = loop.call_later(timeout, fire)
        self._timer = handle
        self._armed_timeout = timeout
