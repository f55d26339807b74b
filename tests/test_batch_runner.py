"""Unit tests for BatchRunner and BatchState."""
import threading
from unittest.mock import Mock, call

import pytest

from orchestrator.batch_runner import BatchAlreadyRunningError, BatchRunner, BatchState
from processor.models import DiscoveryResult, DiscoveryState, MunicipalitySite
from scraper.exceptions import ScrapeError


def make_sites(count, **kwargs):
    return [
        MunicipalitySite(id=f"muni-{i}", name=f"Gemeinde {i}", **kwargs)
        for i in range(1, count + 1)
    ]


@pytest.fixture
def store():
    return Mock()


@pytest.fixture
def sleep():
    return Mock()


def make_runner(store, scraper=None, discoverer=None, state=None, sleep=None):
    return BatchRunner(
        store=store,
        scraper=scraper or Mock(),
        discoverer=discoverer or Mock(),
        state=state,
        delay_seconds=2.0,
        sleep=sleep or Mock()
    )


class TestBatchState:
    """Test cases for the single-slot run state."""

    def test_run_tracks_mode(self):
        """Test the running mode and timestamps are recorded."""
        state = BatchState()

        with state.run('scrape'):
            assert state.is_running
            assert state.running_mode == 'scrape'

        assert not state.is_running
        assert state.running_mode is None
        assert state.last_finished >= state.last_started

    def test_second_run_rejected(self):
        """Test a second run is rejected while one is active."""
        state = BatchState()

        with state.run('scrape'):
            with pytest.raises(BatchAlreadyRunningError, match='scrape'):
                with state.run('discover'):
                    pass

        with state.run('discover'):
            assert state.running_mode == 'discover'

    def test_released_after_exception(self):
        """Test the slot is freed when the batch raises."""
        state = BatchState()

        with pytest.raises(RuntimeError):
            with state.run('scrape'):
                raise RuntimeError('boom')

        assert not state.is_running


class TestScrapeBatch:
    """Test cases for scrape batches."""

    def test_failure_is_isolated(self, store, sleep):
        """Test a failing site does not abort the batch."""
        store.get_sites_due_for_scrape.return_value = make_sites(3)
        scraper = Mock()
        scraper.scrape_site.side_effect = [
            ['e1', 'e2'],
            ScrapeError('DynamoDB write failed'),
            ['e3'],
        ]

        result = make_runner(store, scraper=scraper, sleep=sleep).scrape_batch(limit=3, max_distance_km=25)

        store.get_sites_due_for_scrape.assert_called_once_with(3, 25)
        assert result.success_count == 2
        assert result.failed_count == 1
        assert result.total_events == 3
        assert [s.success for s in result.sites] == [True, False, True]
        assert result.sites[1].error == 'DynamoDB write failed'
        assert result.sites[0].events == 2
        assert sleep.call_args_list == [call(2.0), call(2.0)]

    def test_empty_batch(self, store, sleep):
        """Test no due sites yields an empty result without pauses."""
        store.get_sites_due_for_scrape.return_value = []

        result = make_runner(store, sleep=sleep).scrape_batch()

        assert result.success_count == 0
        assert result.sites == []
        sleep.assert_not_called()

    def test_concurrent_batch_rejected(self, store):
        """Test a batch started from another thread is rejected while one runs."""
        store.get_sites_due_for_scrape.return_value = make_sites(1)
        started = threading.Event()
        release = threading.Event()

        def slow_scrape(site):
            started.set()
            release.wait(timeout=5)
            return []

        scraper = Mock()
        scraper.scrape_site.side_effect = slow_scrape
        state = BatchState()
        runner = make_runner(store, scraper=scraper, state=state)
        results = []

        worker = threading.Thread(target=lambda: results.append(runner.scrape_batch()))
        worker.start()
        try:
            assert started.wait(timeout=5)
            with pytest.raises(BatchAlreadyRunningError):
                runner.scrape_batch()
            with pytest.raises(BatchAlreadyRunningError):
                runner.discover_batch()
        finally:
            release.set()
            worker.join(timeout=5)

        assert results[0].success_count == 1
        assert not state.is_running


class TestDiscoverBatch:
    """Test cases for discovery batches."""

    def test_discovery_persists_outcomes(self, store, sleep):
        """Test found and exhausted outcomes are stored and counted."""
        sites = make_sites(2, website_url='https://www.gemeinde.ch')
        store.get_sites_needing_discovery.return_value = sites
        found = DiscoveryResult(state=DiscoveryState.FOUND, event_page_url='https://www.gemeinde.ch/agenda')
        exhausted = DiscoveryResult(state=DiscoveryState.EXHAUSTED, error='No candidates discovered')
        discoverer = Mock()
        discoverer.discover_event_page.side_effect = [found, exhausted]

        result = make_runner(store, discoverer=discoverer, sleep=sleep).discover_batch(limit=2)

        assert result.success_count == 1
        assert result.failed_count == 1
        assert result.sites[1].error == 'No candidates discovered'
        store.update_site_after_discovery.assert_has_calls([
            call('muni-1', found),
            call('muni-2', exhausted),
        ])
        discoverer.find_website.assert_not_called()
        assert sleep.call_count == 1

    def test_website_guessed_first(self, store):
        """Test sites without a website get one guessed and stored."""
        site = MunicipalitySite(id='muni-1', name='Musterdorf')
        store.get_sites_needing_discovery.return_value = [site]
        discoverer = Mock()
        discoverer.find_website.return_value = 'https://www.musterdorf.ch'
        discoverer.discover_event_page.return_value = DiscoveryResult(state=DiscoveryState.EXHAUSTED)

        make_runner(store, discoverer=discoverer).discover_batch()

        store.update_site_website.assert_called_once_with('muni-1', 'https://www.musterdorf.ch')
        assert discoverer.discover_event_page.call_args.args[0].website_url == 'https://www.musterdorf.ch'

    def test_no_website_found(self, store):
        """Test discovery still runs and records exhaustion without a website."""
        store.get_sites_needing_discovery.return_value = [MunicipalitySite(id='muni-1', name='Nirgendwo')]
        discoverer = Mock()
        discoverer.find_website.return_value = None
        discoverer.discover_event_page.return_value = DiscoveryResult(
            state=DiscoveryState.EXHAUSTED, error='Missing website URL'
        )

        result = make_runner(store, discoverer=discoverer).discover_batch()

        store.update_site_website.assert_not_called()
        assert result.failed_count == 1

    def test_store_failure_is_isolated(self, store):
        """Test a persistence error on one site is counted, not raised."""
        store.get_sites_needing_discovery.return_value = make_sites(2, website_url='https://www.gemeinde.ch')
        store.update_site_after_discovery.side_effect = [RuntimeError('write failed'), None]
        discoverer = Mock()
        discoverer.discover_event_page.return_value = DiscoveryResult(state=DiscoveryState.FOUND)

        result = make_runner(store, discoverer=discoverer).discover_batch()

        assert result.failed_count == 1
        assert result.success_count == 1
        assert result.sites[0].error == 'write failed'
