from spokable.assembler import assemble, summarize
from spokable.chunker import chunk_text
from spokable.models import BatchState, BatchStatus


def _status(batch, output=None, error=None):
    state = BatchState.SUCCESS if output is not None else BatchState.FAILED
    return BatchStatus(
        batch_id=batch.id,
        sequence_number=batch.sequence_number,
        state=state,
        output=output,
        error=error,
    )


def test_outputs_join_in_sequence_order_regardless_of_completion_order():
    batches = chunk_text("w" * 1_200, 100, 0)
    completed = {}
    for batch in reversed(batches):
        completed[batch.id] = _status(batch, output=f"part {batch.sequence_number}")

    assert assemble(batches, completed) == "part 1\n\npart 2\n\npart 3"


def test_failed_batches_are_left_out_and_summarized():
    batches = chunk_text("w" * 1_600, 100, 0)
    completed = {batches[0].id: _status(batches[0], "one"), batches[3].id: _status(batches[3], "four")}
    failed = {
        batches[2].id: _status(batches[2], error="500: overloaded"),
        batches[1].id: _status(batches[1], error="429: quota"),
    }

    text = assemble(batches, completed)
    summary = summarize(batches, completed, failed)

    assert text == "one\n\nfour"
    assert summary.total == 4
    assert summary.success == 2
    assert summary.failure == 2
    assert summary.success_rate == 50.0
    assert [item.sequence_number for item in summary.failed] == [2, 3]
    assert summary.to_dict()["failed"][0]["error"] == "429: quota"


def test_empty_job_summary():
    summary = summarize([], {}, {})

    assert assemble([], {}) == ""
    assert summary.success_rate == 0.0
    assert summary.to_dict()["total"] == 0
