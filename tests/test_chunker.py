import pytest

from spokable.chunker import assign_images_to_batches, chunk_text, iter_windows
from spokable.models import ImagePart


def _sequential_ids():
    counter = iter(range(1000))
    return lambda: f"batch-{next(counter)}"


def test_two_batches_with_overlap_for_long_text():
    text = "a" * 45_000

    batches = chunk_text(text, 10_000, 200)

    assert [(b.start_offset, b.end_offset) for b in batches] == [(0, 40_000), (39_200, 45_000)]
    assert [b.sequence_number for b in batches] == [1, 2]
    assert batches[0].approx_tokens == 10_000
    assert batches[1].text == text[39_200:]


def test_windows_cover_whole_text_and_overlap_neighbours():
    text = "".join(chr(97 + (i % 26)) for i in range(12_345))

    batches = chunk_text(text, 500, 50)

    assert batches[0].start_offset == 0
    assert batches[-1].end_offset == len(text)
    for previous, current in zip(batches, batches[1:]):
        assert current.start_offset == previous.end_offset - 200
        assert current.sequence_number == previous.sequence_number + 1
        assert previous.start_offset < previous.end_offset
    for batch in batches:
        assert batch.text == text[batch.start_offset:batch.end_offset]


def test_chunking_is_deterministic():
    text = "The quick brown fox. " * 900

    first = chunk_text(text, 300, 20, id_factory=_sequential_ids())
    second = chunk_text(text, 300, 20, id_factory=_sequential_ids())

    assert first == second


def test_overlap_as_wide_as_window_still_terminates():
    windows = list(iter_windows(100, 5, 5))

    assert windows == [(0, 20), (20, 40), (40, 60), (60, 80), (80, 100)]


def test_overlap_wider_than_window_is_clamped():
    windows = list(iter_windows(50, 5, 50))

    assert windows[-1][1] == 50
    assert all(end > start for start, end in windows)
    assert [start for start, _ in windows] == [0, 20, 40]


def test_empty_text_yields_no_batches():
    assert chunk_text("", 100, 10) == []


def test_short_text_is_single_batch():
    batches = chunk_text("hello world", 100, 10)

    assert len(batches) == 1
    assert batches[0].text == "hello world"
    assert batches[0].approx_tokens == 3


@pytest.mark.parametrize("size, overlap", [(0, 0), (-1, 0), (10, -1)])
def test_invalid_sizes_raise(size, overlap):
    with pytest.raises(ValueError):
        chunk_text("text", size, overlap)


def test_batch_ids_are_unique_by_default():
    batches = chunk_text("x" * 4_000, 100, 10)

    assert len({b.id for b in batches}) == len(batches)


def test_images_are_spread_evenly_across_batches():
    batches = chunk_text("y" * 2_000, 100, 0)
    images = [ImagePart(page=1, data="AAA"), ImagePart(page=3, data="BBB")]

    assigned = assign_images_to_batches(batches, images)

    assert len(batches) == 5
    pages = [[image.page for image in batch.images] for batch in assigned]
    assert pages == [[1], [1], [1], [3], [3]]
    assert [b.id for b in assigned] == [b.id for b in batches]
    assert batches[0].images == ()


def test_no_images_leaves_batches_untouched():
    batches = chunk_text("z" * 900, 100, 0)

    assert assign_images_to_batches(batches, []) == batches
