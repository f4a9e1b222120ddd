"""Tests for the room occupancy tracker."""

import asyncio

from roomrecorder.occupancy import OccupancyTracker


class TestOccupancyTracker(object):
    """Tests for idle timer arming and cancellation."""

    def test_empty_room_arms_starting_timeout(self) -> None:
        async def scenario():
            tracker = OccupancyTracker(lambda: None, starting_timeout=600.0, ending_timeout=60.0)

            tracker.room_joined([])

            assert tracker.is_armed
            assert tracker.armed_timeout == 600.0
            tracker.stop()

        asyncio.run(scenario())

    def test_occupied_room_does_not_arm(self) -> None:
        async def scenario():
            tracker = OccupancyTracker(lambda: None)

            tracker.room_joined(['alice'])

            assert not tracker.is_armed
            assert tracker.participant_count == 1

        asyncio.run(scenario())

    def test_last_participant_leaving_arms_ending_timeout(self) -> None:
        async def scenario():
            tracker = OccupancyTracker(lambda: None, starting_timeout=600.0, ending_timeout=60.0)
            tracker.room_joined(['alice', 'bob'])

            tracker.participant_disconnected('alice')
            assert not tracker.is_armed

            tracker.participant_disconnected('bob')
            assert tracker.armed_timeout == 60.0
            tracker.stop()

        asyncio.run(scenario())

    def test_connect_cancels_timer(self) -> None:
        async def scenario():
            fired = []
            tracker = OccupancyTracker(lambda: fired.append(True), starting_timeout=0.02)
            tracker.room_joined([])

            tracker.participant_connected('alice')
            await asyncio.sleep(0.05)

            assert fired == []
            assert not tracker.is_armed

        asyncio.run(scenario())

    def test_timer_fires_once(self) -> None:
        async def scenario():
            fired = []
            tracker = OccupancyTracker(lambda: fired.append(True), ending_timeout=0.01)
            tracker.room_joined(['alice'])

            tracker.participant_disconnected('alice')
            await asyncio.sleep(0.05)

            assert fired == [True]
            assert not tracker.is_armed

        asyncio.run(scenario())

    def test_rearming_replaces_timer(self) -> None:
        """Only the newest timer may fire."""
        async def scenario():
            fired = []
            tracker = OccupancyTracker(lambda: fired.append(True), starting_timeout=0.01, ending_timeout=0.2)
            tracker.room_joined([])

            tracker.participant_connected('alice')
            tracker.participant_disconnected('alice')
            await asyncio.sleep(0.05)

            assert fired == []
            assert tracker.armed_timeout == 0.2
            tracker.stop()

        asyncio.run(scenario())

    def test_track_events_do_not_affect_occupancy(self) -> None:
        async def scenario():
            tracker = OccupancyTracker(lambda: None)
            tracker.room_joined(['alice'])

            tracker.track_subscribed('alice', 'TR1')
            tracker.track_unsubscribed('alice', 'TR1')

            assert not tracker.is_armed
            assert tracker.track_count('alice') == 0
            assert tracker.participant_count == 1

        asyncio.run(scenario())

    def test_stopped_tracker_never_arms(self) -> None:
        async def scenario():
            fired = []
            tracker = OccupancyTracker(lambda: fired.append(True), ending_timeout=0.01)
            tracker.room_joined(['alice'])

            tracker.stop()
            tracker.participant_disconnected('alice')
            await asyncio.sleep(0.05)

            assert fired == []
            assert not tracker.is_armed

        asyncio.run(scenario())
