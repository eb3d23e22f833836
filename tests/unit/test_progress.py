"""
Unit Tests for ProgressStore

Offset and resume-point bookkeeping on a SQLite store.
"""

import pytest

from file_pipeline.shared.models import FileChunk
from file_pipeline.shared.progress import ProgressStore
from file_pipeline.shared.retry import Applied, Skip


def _advance(executor, partition, offset):
    def unit(scope):
        ProgressStore.advance_offset(scope, partition, offset)
        return Applied()

    executor.run(unit)


# ==============================================================================
# PARTITION OFFSETS
# ==============================================================================


@pytest.mark.unit
def test_last_applied_offset_absent_for_new_partition(executor):
    outcome = executor.run(lambda scope: Skip(str(ProgressStore.last_applied_offset(scope, 0))))

    assert outcome.reason == "None"


@pytest.mark.unit
def test_advance_offset_is_monotonic(executor, progress):
    _advance(executor, 0, 5)
    _advance(executor, 0, 3)
    _advance(executor, 1, 2)

    assert progress.partition_offsets() == {0: 5, 1: 2}


@pytest.mark.unit
def test_last_applied_offset_reads_inside_transaction(executor):
    _advance(executor, 4, 42)

    outcome = executor.run(lambda scope: Applied(ProgressStore.last_applied_offset(scope, 4)))

    assert outcome.value == 42


# ==============================================================================
# RESUME POINTS
# ==============================================================================


@pytest.mark.unit
def test_resume_position_defaults_to_zero(progress):
    assert progress.load_resume_position("never-published.txt") == 0


@pytest.mark.unit
def test_resume_position_round_trip(progress):
    progress.save_resume_position("a.txt", 3)
    progress.save_resume_position("b.txt", 8)

    assert progress.load_resume_position("a.txt") == 3
    assert progress.load_resume_position("b.txt") == 8


@pytest.mark.unit
def test_resume_position_never_moves_back(progress):
    progress.save_resume_position("a.txt", 6)
    progress.save_resume_position("a.txt", 2)

    assert progress.load_resume_position("a.txt") == 6


# ==============================================================================
# REPORTING
# ==============================================================================


@pytest.mark.unit
def test_chunk_summary_empty(progress):
    assert progress.chunk_summary() == {"chunks": 0, "bytes": 0, "max_line": 0}


@pytest.mark.unit
def test_chunk_summary_per_source(executor, progress):
    def unit(scope):
        for name, line, length in (("a.txt", 1, 100), ("a.txt", 2, 40), ("b.txt", 1, 7)):
            scope.upsert(
                FileChunk,
                {
                    "name": name,
                    "line": line,
                    "length": length,
                    "partition_id": 0,
                    "log_offset": line,
                },
            )
        return Applied()

    executor.run(unit)

    assert progress.chunk_summary() == {"chunks": 3, "bytes": 147, "max_line": 2}
    assert progress.chunk_summary("a.txt") == {"chunks": 2, "bytes": 140, "max_line": 2}
    assert progress.chunk_summary("b.txt") == {"chunks": 1, "bytes": 7, "max_line": 1}
