"""Tests for probe_scheduler: eligibility, selection and the scheduling tick."""

import random
from collections import Counter
from unittest.mock import Mock

import pytest

import database
import probe_scheduler
from probe_scheduler import CATEGORY_COLD, CATEGORY_STALE
from tests.helpers import HOUR_MS, SECOND_MS, create_test_node, store_traceroute

LOCAL = 1


@pytest.mark.unit
class TestClassifyCandidate:
    """Tests for classify_candidate() pure logic."""

    NOW = 1_700_000_000_000

    def test_never_requested_without_result_is_cold(self):
        node = {'last_traceroute_request': None}
        assert probe_scheduler.classify_candidate(node, False, self.NOW) == CATEGORY_COLD

    def test_never_requested_with_result_is_ineligible(self):
        node = {'last_traceroute_request': None}
        assert probe_scheduler.classify_candidate(node, True, self.NOW) is None

    def test_cold_cutoff_exact_boundary_is_ineligible(self):
        node = {'last_traceroute_request': self.NOW - 3 * HOUR_MS}
        assert probe_scheduler.classify_candidate(node, False, self.NOW) is None

    def test_stale_cutoff_exact_boundary_is_ineligible(self):
        node = {'last_traceroute_request': self.NOW - 24 * HOUR_MS}
        assert probe_scheduler.classify_candidate(node, True, self.NOW) is None


class TestSelectNextProbeTarget:
    """Tests for select_next_probe_target() against the database."""

    def test_local_node_never_selected(self, test_db, seeded_rng, now):
        create_test_node(LOCAL)
        for _ in range(50):
            assert probe_scheduler.select_next_probe_target(LOCAL, rng=seeded_rng, now=now) is None

    def test_local_node_excluded_among_others(self, test_db, seeded_rng, now):
        for num in (LOCAL, 2, 3, 4):
            create_test_node(num)
        for _ in range(100):
            target = probe_scheduler.select_next_probe_target(LOCAL, rng=seeded_rng, now=now)
            assert target['node_num'] != LOCAL

    def test_empty_mesh_returns_none(self, test_db, now):
        assert probe_scheduler.select_next_probe_target(LOCAL, now=now) is None

    def test_cold_retry_just_past_cooldown_is_eligible(self, test_db, now):
        create_test_node(2, last_traceroute_request=now - 3 * HOUR_MS - SECOND_MS)
        target = probe_scheduler.select_next_probe_target(LOCAL, now=now)
        assert target['node_num'] == 2
        assert target['category'] == CATEGORY_COLD

    def test_cold_retry_inside_cooldown_is_ineligible(self, test_db, now):
        create_test_node(2, last_traceroute_request=now - 3 * HOUR_MS + SECOND_MS)
        assert probe_scheduler.select_next_probe_target(LOCAL, now=now) is None

    def test_stale_retry_just_past_cooldown_is_eligible(self, test_db, now):
        create_test_node(2, last_traceroute_request=now - 24 * HOUR_MS - SECOND_MS)
        store_traceroute(LOCAL, 2, route=[], route_back=[])
        target = probe_scheduler.select_next_probe_target(LOCAL, now=now)
        assert target['node_num'] == 2
        assert target['category'] == CATEGORY_STALE

    def test_stale_retry_inside_cooldown_is_ineligible(self, test_db, now):
        create_test_node(2, last_traceroute_request=now - 24 * HOUR_MS + SECOND_MS)
        store_traceroute(LOCAL, 2, route=[], route_back=[])
        assert probe_scheduler.select_next_probe_target(LOCAL, now=now) is None

    def test_result_in_other_direction_does_not_count(self, test_db, now):
        """Only local -> candidate results move a node to the long cooldown."""
        create_test_node(2, last_traceroute_request=now - 4 * HOUR_MS)
        store_traceroute(2, LOCAL, route=[], route_back=[])
        target = probe_scheduler.select_next_probe_target(LOCAL, now=now)
        assert target['category'] == CATEGORY_COLD

    def test_failed_result_uses_short_cooldown(self, test_db, now):
        create_test_node(2, last_traceroute_request=now - 4 * HOUR_MS)
        store_traceroute(LOCAL, 2, route=None, route_back=None)
        target = probe_scheduler.select_next_probe_target(LOCAL, now=now)
        assert target['node_num'] == 2
        assert target['category'] == CATEGORY_COLD

    def test_unreadable_result_uses_short_cooldown(self, test_db, now):
        create_test_node(2, last_traceroute_request=now - 4 * HOUR_MS)
        database.upsert_traceroute(LOCAL, 2, route='{"oops": 1}', route_back='"garbage"')
        target = probe_scheduler.select_next_probe_target(LOCAL, now=now)
        assert target['node_num'] == 2
        assert target['category'] == CATEGORY_COLD

    def test_one_readable_direction_counts_as_result(self, test_db, now):
        create_test_node(2, last_traceroute_request=now - 4 * HOUR_MS)
        database.upsert_traceroute(LOCAL, 2, route='[1, "x"]', route_back='[]')
        assert probe_scheduler.select_next_probe_target(LOCAL, now=now) is None

    def test_fair_selection_across_candidates(self, test_db, now):
        for num in (2, 3, 4):
            create_test_node(num)
        rng = random.Random(42)
        counts = Counter(
            probe_scheduler.select_next_probe_target(LOCAL, rng=rng, now=now)['node_num']
            for _ in range(3000)
        )
        assert set(counts) == {2, 3, 4}
        for num in (2, 3, 4):
            assert 800 < counts[num] < 1200

    def test_seeded_selection_is_repeatable(self, test_db, now):
        for num in range(2, 10):
            create_test_node(num)
        first = [probe_scheduler.select_next_probe_target(LOCAL, rng=random.Random(7), now=now)['node_num']
                 for _ in range(5)]
        second = [probe_scheduler.select_next_probe_target(LOCAL, rng=random.Random(7), now=now)['node_num']
                  for _ in range(5)]
        assert first == second


class TestNodeFilter:
    """Tests for the auto-traceroute node filter."""

    def test_filter_limits_candidates(self, test_db, seeded_rng, now):
        for num in (2, 3, 4):
            create_test_node(num)
        probe_scheduler.set_node_filter(True, [3])
        for _ in range(20):
            assert probe_scheduler.select_next_probe_target(LOCAL, rng=seeded_rng, now=now)['node_num'] == 3

    def test_enabled_filter_with_empty_list_allows_all(self, test_db, now):
        create_test_node(2)
        probe_scheduler.set_node_filter(True, [])
        assert probe_scheduler.get_node_filter() is None
        assert probe_scheduler.select_next_probe_target(LOCAL, now=now)['node_num'] == 2

    def test_disabled_filter_keeps_saved_list(self, test_db):
        probe_scheduler.set_node_filter(True, [5, 3])
        probe_scheduler.set_node_filter(False)
        assert probe_scheduler.get_node_filter() is None
        assert database.get_setting('traceroute_node_nums') == '[3, 5]'


class TestRecordProbeRequested:
    """Tests for record_probe_requested()."""

    def test_sets_timestamp(self, test_db, now):
        create_test_node(2)
        assert probe_scheduler.record_probe_requested(2, now=now) == 1
        assert database.get_node(2)['last_traceroute_request'] == now

    def test_unknown_node_updates_nothing(self, test_db, now):
        assert probe_scheduler.record_probe_requested(99, now=now) == 0


class TestRunSchedulingTick:
    """Tests for run_scheduling_tick()."""

    def test_tick_sends_and_records(self, test_db, now):
        create_test_node(2)
        send_probe = Mock(return_value=True)

        result = probe_scheduler.run_scheduling_tick(LOCAL, send_probe, now=now)

        send_probe.assert_called_once_with(LOCAL, 2)
        assert result['sent'] is True
        assert result['category'] == CATEGORY_COLD
        assert database.get_node(2)['last_traceroute_request'] == now
        events = database.get_events(event_types=[database.EVENT_TRACEROUTE_REQUESTED])
        assert len(events) == 1

    def test_rejected_send_still_records_request(self, test_db, now):
        create_test_node(2)
        result = probe_scheduler.run_scheduling_tick(LOCAL, Mock(return_value=False), now=now)
        assert result['sent'] is False
        assert database.get_node(2)['last_traceroute_request'] == now
        # Asked recently, so the next tick skips it
        assert probe_scheduler.select_next_probe_target(LOCAL, now=now + HOUR_MS) is None

    def test_send_exception_still_records_request(self, test_db, now):
        create_test_node(2)
        with pytest.raises(RuntimeError):
            probe_scheduler.run_scheduling_tick(LOCAL, Mock(side_effect=RuntimeError("radio")), now=now)
        assert database.get_node(2)['last_traceroute_request'] == now

    def test_no_candidates_does_not_send(self, test_db, now):
        send_probe = Mock()
        result = probe_scheduler.run_scheduling_tick(LOCAL, send_probe, now=now)
        assert result['selected'] is None
        send_probe.assert_not_called()

    def test_unknown_local_node_skips(self, test_db, now):
        create_test_node(2)
        send_probe = Mock()
        result = probe_scheduler.run_scheduling_tick(None, send_probe, now=now)
        assert result['selected'] is None
        send_probe.assert_not_called()


class TestEndToEnd:
    """First probe of a remote node moves it from the short to the long cooldown."""

    def test_successful_direct_result_moves_node_to_stale_category(self, test_db, now):
        create_test_node(LOCAL)
        create_test_node(2)

        first = probe_scheduler.run_scheduling_tick(LOCAL, Mock(return_value=True), now=now)
        assert first['selected']['node_num'] == 2
        assert first['category'] == CATEGORY_COLD

        store_traceroute(LOCAL, 2, route=[], route_back=[], timestamp=now + SECOND_MS)

        # Past the short cooldown but inside the long one: not eligible
        assert probe_scheduler.select_next_probe_target(LOCAL, now=now + 4 * HOUR_MS) is None

        later = probe_scheduler.select_next_probe_target(LOCAL, now=now + 24 * HOUR_MS + SECOND_MS)
        assert later['node_num'] == 2
        assert later['category'] == CATEGORY_STALE

    def test_scheduler_summary_counts(self, test_db, now):
        create_test_node(2)
        create_test_node(3, last_traceroute_request=now - 25 * HOUR_MS)
        store_traceroute(LOCAL, 3, route=[7], route_back=[7])
        summary = probe_scheduler.get_scheduler_summary(LOCAL, now=now)
        assert summary['eligible'] == 2
        assert summary['cold'] == 1
        assert summary['stale'] == 1
