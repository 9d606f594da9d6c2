"""Tests for the descriptor dedup state."""

from __future__ import annotations

import threading

import pytest

from provtrace.fd_state import DescriptorStateTracker, Direction

READ, WRITE = Direction.READ, Direction.WRITE


class TestMarkAndCheck:
    def test_first_observation_only_once(self, tracker):
        assert tracker.mark_and_check(10, 3, READ) is True
        assert tracker.mark_and_check(10, 3, READ) is False
        assert tracker.is_reported(10, 3, READ)

    def test_directions_are_independent(self, tracker):
        assert tracker.mark_and_check(10, 3, READ)
        assert tracker.mark_and_check(10, 3, WRITE)
        assert not tracker.mark_and_check(10, 3, WRITE)

    def test_pids_are_independent(self, tracker):
        assert tracker.mark_and_check(10, 3, READ)
        assert tracker.mark_and_check(11, 3, READ)

    def test_fresh_key_has_no_entry(self, tracker):
        assert len(tracker) == 0
        assert not tracker.is_reported(10, 3, READ)


class TestInvalidate:
    def test_clears_both_directions(self, tracker):
        tracker.mark_and_check(10, 3, READ)
        tracker.mark_and_check(10, 3, WRITE)
        tracker.invalidate(10, 3)
        assert len(tracker) == 0
        assert tracker.mark_and_check(10, 3, READ)

    def test_absent_key_is_noop(self, tracker):
        tracker.invalidate(10, 99)
        assert len(tracker) == 0

    def test_other_descriptors_untouched(self, tracker):
        tracker.mark_and_check(10, 3, READ)
        tracker.mark_and_check(10, 4, READ)
        tracker.invalidate(10, 3)
        assert tracker.is_reported(10, 4, READ)


class TestInvalidateAll:
    def test_drops_only_that_pid(self, tracker):
        for fd in range(5):
            tracker.mark_and_check(10, fd, READ)
            tracker.mark_and_check(10, fd, WRITE)
        tracker.mark_and_check(11, 0, READ)

        assert tracker.invalidate_all(10) == 10
        assert tracker.pids() == {11}

    def test_reused_pid_starts_fresh(self, tracker):
        tracker.mark_and_check(10, 3, READ)
        tracker.invalidate_all(10)
        assert tracker.mark_and_check(10, 3, READ) is True

    def test_unknown_pid(self, tracker):
        assert tracker.invalidate_all(404) == 0

    def test_repeated_purge(self, tracker):
        tracker.mark_and_check(10, 3, READ)
        assert tracker.invalidate_all(10) == 1
        assert tracker.invalidate_all(10) == 0


class TestConcurrency:
    def test_exactly_one_first_observation_per_key(self, tracker):
        winners = []
        barrier = threading.Barrier(16)

        def reader():
            barrier.wait()
            if tracker.mark_and_check(10, 3, READ):
                winners.append(threading.get_ident())

        threads = [threading.Thread(target=reader) for _ in range(16)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(winners) == 1

    def test_purge_races_with_same_pid_marks(self):
        tracker = DescriptorStateTracker(stripes=4)
        stop = threading.Event()

        def marker():
            fd = 0
            while not stop.is_set():
                tracker.mark_and_check(10, fd % 64, READ)
                tracker.invalidate(10, (fd + 7) % 64)
                fd += 1

        def purger():
            for _ in range(200):
                tracker.invalidate_all(10)

        markers = [threading.Thread(target=marker) for _ in range(4)]
        for t in markers:
            t.start()
        purger()
        stop.set()
        for t in markers:
            t.join()

        # no marker is left blocked and the table stays consistent
        tracker.invalidate_all(10)
        assert 10 not in tracker.pids()
        assert len(tracker) == 0

    def test_other_pids_survive_a_purge_storm(self, tracker):
        for fd in range(32):
            tracker.mark_and_check(20, fd, WRITE)

        threads = [
            threading.Thread(target=tracker.invalidate_all, args=(pid,))
            for pid in range(100, 116)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(tracker.is_reported(20, fd, WRITE) for fd in range(32))


def test_stripes_must_be_positive():
    with pytest.raises(ValueError):
        DescriptorStateTracker(stripes=0)
