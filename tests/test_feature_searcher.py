"""Tests for the background feature searcher."""

import logging
import threading
import time

import pytest

from gsearch.database.genome import Genome
from gsearch.database.search import FeatureSearcher, SearchOutcome, MAX_INT
from gsearch.database.ufeature import UFeature


def make_feature(chrom, start, end, name="f"):
    return UFeature(chrom=chrom, start=start, end=end, feature_type="gene", name=name)


class RecordingSource:
    """Feature source that answers from a dict of windows and records queries."""

    def __init__(self, hits=None, on_query=None):
        self.hits = hits or {}
        self.on_query = on_query
        self.queries = []

    def stream(self, chrom, start, end):
        self.queries.append((chrom, start, end))
        if self.on_query:
            self.on_query(chrom, start, end)
        return iter(self.hits.get((chrom, start, end), []))


class BlockingSource(RecordingSource):
    """Blocks every query until released."""

    def __init__(self, hits=None):
        super().__init__(hits)
        self.entered = threading.Event()
        self.release = threading.Event()

    def stream(self, chrom, start, end):
        self.entered.set()
        assert self.release.wait(5)
        return super().stream(chrom, start, end)


class FailingSource:
    def __init__(self):
        self.calls = 0

    def stream(self, chrom, start, end):
        self.calls += 1
        raise OSError("disk went away")


class Track:
    def __init__(self, features):
        self.features = features
        self.queries = []

    def get_features(self, chrom, start, end):
        self.queries.append((chrom, start, end))
        return [f for f in self.features if f.chrom == chrom and f.overlaps(start, end)]


def test_requires_a_source():
    with pytest.raises(ValueError):
        FeatureSearcher(None, None, "1", 0)


def test_rejects_bad_window_size():
    with pytest.raises(ValueError):
        FeatureSearcher(RecordingSource(), None, "1", 0, window_size=0)
    searcher = FeatureSearcher(RecordingSource(), None, "1", 0)
    with pytest.raises(ValueError):
        searcher.set_window_size(-5)


def test_initial_window():
    searcher = FeatureSearcher(RecordingSource(), None, "1", 1234)
    assert (searcher.chrom, searcher.start, searcher.end) == ("1", 1234, 101234)
    assert not searcher.is_running()
    assert searcher.get_result() is None
    assert searcher.outcome is None


def test_finds_in_first_window():
    feats = [make_feature("1", 10, 20, "a"), make_feature("1", 30, 40, "b")]
    source = RecordingSource({("1", 0, 100000): feats})
    searcher = FeatureSearcher(source, None, "1", 0)

    searcher.run()

    assert not searcher.is_running()
    assert searcher.outcome is SearchOutcome.FOUND
    assert list(searcher.get_result()) == feats
    assert source.queries == [("1", 0, 100000)]


def test_result_keeps_the_peeked_feature():
    def gen():
        for i in range(3):
            yield make_feature("1", i * 10, i * 10 + 5, f"f{i}")

    class GenSource:
        def stream(self, chrom, start, end):
            return gen()

    searcher = FeatureSearcher(GenSource(), None, "1", 0)
    searcher.run()

    assert [f.name for f in searcher.get_result()] == ["f0", "f1", "f2"]


def test_crosses_into_next_chromosome():
    genome = Genome({"chr1": 500000, "chr2": 300000})
    hit = make_feature("chr2", 150000, 150500)
    source = RecordingSource({("chr2", 100000, 200000): [hit]})

    searcher = FeatureSearcher(source, genome, "chr1", 450000, window_size=100000)
    searcher.run()

    assert source.queries == [
        ("chr1", 450000, 500000),
        ("chr2", 0, 100000),
        ("chr2", 100000, 200000),
    ]
    assert searcher.outcome is SearchOutcome.FOUND
    assert list(searcher.get_result()) == [hit]
    assert (searcher.chrom, searcher.start, searcher.end) == ("chr2", 100000, 200000)


def test_window_starts_increase_by_window_size():
    genome = Genome({"1": 10500})
    source = RecordingSource()

    searcher = FeatureSearcher(source, genome, "1", 0, window_size=1000)
    searcher.run()

    starts = [q[1] for q in source.queries]
    assert starts == list(range(0, 10001, 1000))
    assert all(e - s == 1000 for _, s, e in source.queries[:-1])
    # last window clipped at the chromosome end
    assert source.queries[-1] == ("1", 10000, 10500)


def test_exhausts_every_chromosome():
    genome = Genome({"1": 250000, "2": 120000, "3": 50000})
    source = RecordingSource()

    searcher = FeatureSearcher(source, genome, "1", 0)
    searcher.run()

    assert [q[0] for q in source.queries] == ["1", "1", "1", "2", "2", "3"]
    assert searcher.get_result() is None
    assert not searcher.is_running()
    assert searcher.start == searcher.end == -1
    assert searcher.outcome is SearchOutcome.EXHAUSTED
    assert searcher.is_cancelled()


def test_exhausts_integer_range_without_genome():
    source = RecordingSource()

    searcher = FeatureSearcher(source, None, "1", 0, window_size=100000)
    searcher.run()

    ceiling = MAX_INT - 100000
    assert len(source.queries) == 21474
    assert source.queries[-1] == ("1", 2147300000, ceiling)
    assert all(s < ceiling for _, s, _ in source.queries)
    assert searcher.get_result() is None
    assert searcher.start == searcher.end == -1
    assert searcher.outcome is SearchOutcome.EXHAUSTED


def test_unknown_chromosome_falls_back_to_ceiling():
    genome = Genome({"1": 1000})
    source = RecordingSource({("7", 200000, 300000): [make_feature("7", 250000, 250010)]})

    searcher = FeatureSearcher(source, genome, "7", 0)
    searcher.run()

    assert searcher.outcome is SearchOutcome.FOUND
    assert len(source.queries) == 3


def test_cancel_before_run():
    source = RecordingSource()
    searcher = FeatureSearcher(source, None, "1", 0)

    searcher.cancel()
    searcher.run()

    assert source.queries == []
    assert searcher.get_result() is None
    assert searcher.outcome is SearchOutcome.CANCELLED


def test_cancel_during_query_stops_after_it():
    source = BlockingSource()
    searcher = FeatureSearcher(source, None, "1", 0)

    future = searcher.submit()
    assert source.entered.wait(5)
    assert searcher.is_running()

    searcher.cancel()
    source.release.set()
    assert searcher.wait(5)
    future.result()

    assert len(source.queries) == 1
    assert not searcher.is_running()
    assert searcher.get_result() is None
    assert searcher.outcome is SearchOutcome.CANCELLED


def test_cancel_after_completion_is_noop():
    source = RecordingSource({("1", 0, 100000): [make_feature("1", 5, 6)]})
    searcher = FeatureSearcher(source, None, "1", 0)
    searcher.run()

    searcher.cancel()

    assert searcher.outcome is SearchOutcome.FOUND
    assert searcher.get_result() is not None


def test_no_result_while_running():
    source = BlockingSource({("1", 0, 100000): [make_feature("1", 5, 6)]})
    searcher = FeatureSearcher(source, None, "1", 0)

    searcher.submit()
    assert source.entered.wait(5)
    assert searcher.is_running()
    assert searcher.get_result() is None
    assert searcher.outcome is None

    source.release.set()
    assert searcher.wait(5)
    assert not searcher.is_running()
    assert len(list(searcher.get_result())) == 1


def test_set_window_size_mid_run():
    searcher = None
    seen = []

    def shrink(chrom, start, end):
        if len(source.queries) == 1:
            searcher.set_window_size(50000)
            seen.append((searcher.start, searcher.end))

    source = RecordingSource({("1", 100000, 150000): [make_feature("1", 120000, 120001)]},
                             on_query=shrink)
    searcher = FeatureSearcher(source, None, "1", 0)
    searcher.run()

    assert seen == [(0, 50000)]
    assert source.queries == [("1", 0, 100000), ("1", 50000, 100000), ("1", 100000, 150000)]
    assert searcher.outcome is SearchOutcome.FOUND


def test_io_failure_is_logged_and_ends_search(caplog):
    source = FailingSource()
    searcher = FeatureSearcher(source, None, "1", 0)

    with caplog.at_level(logging.ERROR, logger="gsearch"):
        searcher.run()

    assert source.calls == 1
    assert not searcher.is_running()
    assert searcher.get_result() is None
    assert searcher.outcome is SearchOutcome.FAILED
    assert "Error searching for feature" in caplog.text


def test_missing_source_is_a_configuration_error():
    searcher = FeatureSearcher(RecordingSource(), None, "1", 0)
    searcher.source = None

    with pytest.raises(RuntimeError):
        searcher.run()
    assert not searcher.is_running()
    assert searcher.outcome is SearchOutcome.FAILED


def test_runs_only_once():
    searcher = FeatureSearcher(RecordingSource({("1", 0, 100000): [make_feature("1", 0, 1)]}),
                               None, "1", 0)
    searcher.run()

    with pytest.raises(RuntimeError):
        searcher.run()
    with pytest.raises(RuntimeError):
        searcher.submit()
    assert not searcher.is_running()


def test_track_takes_precedence():
    hit = make_feature("1", 150000, 150010)
    track = Track([hit])
    source = RecordingSource()

    searcher = FeatureSearcher(source, None, "1", 0, track=track)
    searcher.run()

    assert source.queries == []
    assert track.queries == [("1", 0, 100000), ("1", 100000, 200000)]
    assert list(searcher.get_result()) == [hit]


def test_submit_on_given_executor():
    from concurrent.futures import ThreadPoolExecutor

    source = RecordingSource({("1", 200000, 300000): [make_feature("1", 250000, 250001)]})
    searcher = FeatureSearcher(source, None, "1", 0)

    with ThreadPoolExecutor(max_workers=1) as executor:
        future = searcher.submit(executor)
        assert searcher.is_running() or searcher.outcome is not None
        future.result(timeout=5)

    assert searcher.outcome is SearchOutcome.FOUND
    assert searcher.queries == 3
    assert searcher.start == 200000
    assert (searcher.chrom, searcher.end) == ("1", 300000)


def test_polling_until_done():
    source = RecordingSource({("1", 500000, 600000): [make_feature("1", 500100, 500200)]})
    searcher = FeatureSearcher(source, None, "1", 0)

    searcher.submit()
    deadline = time.time() + 5
    while searcher.is_running() and time.time() < deadline:
        time.sleep(0.001)

    assert not searcher.is_running()
    assert len(list(searcher.get_result())) == 1


def test_unexpected_error_is_logged_when_submitted(caplog):
    class BrokenSource:
        def stream(self, chrom, start, end):
            raise RuntimeError("boom")

    searcher = FeatureSearcher(BrokenSource(), None, "1", 0)

    with caplog.at_level(logging.ERROR, logger="gsearch"):
        future = searcher.submit()
        assert searcher.wait(5)

    assert searcher.outcome is SearchOutcome.FAILED
    assert not searcher.is_running()
    assert "Feature search from 1:0-100000 failed" in caplog.text
    assert "boom" in caplog.text
    with pytest.raises(RuntimeError):
        future.result(timeout=5)


def test_track_returning_empty_generator_is_no_match():
    class GenTrack:
        def __init__(self):
            self.calls = 0

        def get_features(self, chrom, start, end):
            self.calls += 1
            if start == 200000:
                return (f for f in [make_feature("1", 250000, 250001)])
            return (f for f in [])

    track = GenTrack()
    searcher = FeatureSearcher(None, None, "1", 0, track=track)
    searcher.run()

    assert track.calls == 3
    assert searcher.outcome is SearchOutcome.FOUND
    assert searcher.start == 200000
    assert [f.start for f in searcher.get_result()] == [250000]
